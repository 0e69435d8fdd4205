# bulkstore/main.py
#
# Batch entry point: materialize the given resources into the configured
# database.
#
#     python -m bulkstore.main hg38 aa_substitutions
#
# Without arguments the available resource ids are listed and nothing is
# downloaded.
from __future__ import annotations

import sys
from collections.abc import Sequence

from bulkstore.config import StoreConfig, load_config
from bulkstore.log import log
from bulkstore.session import Session


def run(config: StoreConfig, resource_ids: Sequence[str], *, session: Session | None = None) -> dict[str, str]:
    """Ensure every resource in *resource_ids* is loaded.

    Args:
        config:       Store configuration.
        resource_ids: Logical ids to materialize, in order.
        session:      Session to use; a new one (closed afterwards) when omitted.

    Returns:
        Mapping of logical id -> table name.
    """
    owned = session is None
    active = session if session is not None else Session(config)
    try:
        if not resource_ids:
            log("Available resources:")
            for logical_id in active.list_available():
                log(f"  {logical_id}")
            return {}

        tables: dict[str, str] = {}
        for logical_id in resource_ids:
            log(f"Ensuring {logical_id}...")
            tables[logical_id] = active.ensure_loaded(logical_id)
        log(f"Done. {len(tables)} resources available in {config.db_path}")
        return tables
    finally:
        if owned:
            active.close()


if __name__ == "__main__":
    run(load_config(), sys.argv[1:])
