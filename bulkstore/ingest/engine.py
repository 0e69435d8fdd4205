# bulkstore/ingest/engine.py
#
# Ingestion Engine: cached file -> DuckDB table, exactly once per content version.
#
# Design decisions:
#   - The materialization ledger is an append-only DuckDB table living in the
#     same file as the data tables, so both survive restarts together.
#   - Each content version is loaded into its own table,
#     <name>__<validator hash>. The stable name derived from the resource id is
#     a view over the current version, so downstream queries can hard-code it.
#   - Publishing is atomic: the version table is built first; the ledger row
#     and the view swap are committed in one transaction. On any failure the
#     version table is dropped and no ledger row survives.
#   - Returning to an already materialized version only repoints the view, and
#     only when the view does not already select from that version table.
#   - Two resource ids that normalize to the same table name are rejected
#     before anything is downloaded.
#
# Invariants:
#   - At most one ledger row exists per (resource_id, content_validator).
#   - Every table referenced by a ledger row exists, except when it was dropped
#     outside bulkstore; that version is then reloaded and its row replaced.
#   - ensure_loaded is serialized within a process; cross-process exclusion is
#     the caller's responsibility.
from __future__ import annotations

import hashlib
import re
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import duckdb

from bulkstore.cache.store import CacheEntry
from bulkstore.catalog.models import ResourceDescriptor
from bulkstore.catalog.resolver import CatalogResolver
from bulkstore.errors import CatalogError, IngestionError, SchemaError
from bulkstore.fetch.executor import FetchExecutor
from bulkstore.ingest.database import Database
from bulkstore.log import log

LEDGER_TABLE = "_bulkstore_materializations"

_LEDGER_DDL = f"""
CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
    resource_id       VARCHAR   NOT NULL,
    content_validator VARCHAR   NOT NULL,
    table_name        VARCHAR   NOT NULL,
    row_count         BIGINT    NOT NULL,
    materialized_at   TIMESTAMP NOT NULL
)
"""

_RECORD_COLUMNS = "resource_id, content_validator, table_name, row_count, materialized_at"


class ResourceState(str, Enum):
    UNRESOLVED = "unresolved"
    CACHED = "cached"
    MATERIALIZED = "materialized"
    FAILED = "failed"


@dataclass(frozen=True)
class MaterializationRecord:
    resource_id: str
    content_validator: str
    table_name: str
    row_count: int
    materialized_at: datetime


def table_name_for(resource_id: str) -> str:
    """Deterministic SQL-safe name for *resource_id*.

    ``AlphaMissense hg38/v1`` -> ``alphamissense_hg38_v1``; a leading digit is
    prefixed with ``t_``.
    """
    name = re.sub(r"[^a-z0-9_]+", "_", resource_id.lower()).strip("_")
    if not name:
        raise CatalogError(f"Cannot derive a table name from {resource_id!r}")
    if name[0].isdigit():
        name = f"t_{name}"
    return name


def version_table_for(resource_id: str, validator: str) -> str:
    digest = hashlib.sha256(validator.encode("utf-8")).hexdigest()[:12]
    return f"{table_name_for(resource_id)}__{digest}"


class IngestionEngine:
    """Materialize catalog resources into a Database.

    Args:
        resolver: Catalog used to resolve logical ids.
        fetcher:  Fetch Executor that fills the cache.
        database: Target database; also holds the ledger.
    """

    def __init__(self, resolver: CatalogResolver, fetcher: FetchExecutor, database: Database) -> None:
        self.resolver = resolver
        self.fetcher = fetcher
        self.database = database
        self._states: dict[str, ResourceState] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def _ensure_ledger(self) -> None:
        # The connection may have been closed and reopened on an empty database.
        self.database.execute(_LEDGER_DDL)

    def records(self) -> list[MaterializationRecord]:
        """Every ledger record, oldest first."""
        self._ensure_ledger()
        rows = self.database.execute(
            f"SELECT {_RECORD_COLUMNS} FROM {LEDGER_TABLE} ORDER BY materialized_at, rowid"  # noqa: S608
        )
        return [MaterializationRecord(*row) for row in rows]

    def history(self, resource_id: str) -> list[MaterializationRecord]:
        """Ledger records of *resource_id*, oldest first."""
        self._ensure_ledger()
        rows = self.database.execute(
            f"SELECT {_RECORD_COLUMNS} FROM {LEDGER_TABLE} "  # noqa: S608
            f"WHERE resource_id = ? ORDER BY materialized_at, rowid",
            [resource_id],
        )
        return [MaterializationRecord(*row) for row in rows]

    def record_for(self, resource_id: str, validator: str) -> MaterializationRecord | None:
        self._ensure_ledger()
        rows = self.database.execute(
            f"SELECT {_RECORD_COLUMNS} FROM {LEDGER_TABLE} "  # noqa: S608
            f"WHERE resource_id = ? AND content_validator = ?",
            [resource_id, validator],
        )
        return MaterializationRecord(*rows[0]) if rows else None

    def state(self, resource_id: str) -> ResourceState:
        return self._states.get(resource_id, ResourceState.UNRESOLVED)

    def _check_table_name(self, resource_id: str) -> None:
        """Refuse *resource_id* when its table name is already owned by another id."""
        name = table_name_for(resource_id)
        self._ensure_ledger()
        rows = self.database.execute(
            f"SELECT DISTINCT resource_id FROM {LEDGER_TABLE} WHERE resource_id <> ?",  # noqa: S608
            [resource_id],
        )
        for (other,) in rows:
            if table_name_for(other) == name:
                raise CatalogError(f"{resource_id!r} and {other!r} both map to table {name!r}")

    def _view_selects_from(self, view_name: str, table_name: str) -> bool:
        sql = self.database.view_definition(view_name)
        if sql is None:
            return False
        return re.search(rf"(?<!\w){re.escape(table_name)}(?!\w)", sql) is not None

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    def ensure_loaded(self, resource_id: str, *, refresh: bool = False) -> str:
        """Make sure *resource_id* is materialized and return its table name.

        Once a version is loaded, repeated calls only read the cache index and
        the ledger: no network I/O and no database load.

        Args:
            resource_id: Logical id of the resource.
            refresh:     Re-check unvalidated resources upstream (see
                FetchExecutor.fetch).

        Raises:
            UnknownResourceError:     if the id is not in the catalog.
            CatalogError:             if the id has no usable table name, or
                shares it with another materialized id.
            ResourceUnavailableError: if the file cannot be downloaded.
            CacheWriteError:          if the cache cannot be written.
            IngestionError:           if the file cannot be loaded.
        """
        with self._lock:
            try:
                descriptor = self.resolver.resolve(resource_id)
                self._check_table_name(descriptor.logical_id)
                entry = self.fetcher.fetch(descriptor, refresh=refresh)
                self._states[resource_id] = ResourceState.CACHED
                name = self._materialize(descriptor, entry)
            except Exception:
                self._states[resource_id] = ResourceState.FAILED
                raise
            self._states[resource_id] = ResourceState.MATERIALIZED
            return name

    def _materialize(self, descriptor: ResourceDescriptor, entry: CacheEntry) -> str:
        self._ensure_ledger()
        resource_id = descriptor.logical_id
        validator = entry.validator or entry.key
        name = table_name_for(resource_id)

        record = self.record_for(resource_id, validator)
        if record is not None and self.database.table_exists(record.table_name):
            if self._view_selects_from(name, record.table_name):
                log(f"  {resource_id}: already materialized as {name}")
            else:
                self.database.create_view(name, record.table_name)
                log(f"  {resource_id}: {name} now points at {record.table_name}")
            return name

        version_table = version_table_for(resource_id, validator)
        log(f"  {resource_id}: loading {entry.local_path.name} into {version_table}...")
        try:
            self.database.drop_table(version_table)
            row_count = self.database.load_file_as_table(entry.local_path, version_table, descriptor.expected_format)
            with self.database.transaction():
                self.database.execute(
                    f"DELETE FROM {LEDGER_TABLE} WHERE resource_id = ? AND content_validator = ?",  # noqa: S608
                    [resource_id, validator],
                )
                self.database.execute(
                    f"INSERT INTO {LEDGER_TABLE} ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?)",  # noqa: S608
                    [resource_id, validator, version_table, row_count, datetime.now(UTC).replace(tzinfo=None)],
                )
                self.database.create_view(name, version_table)
        except (SchemaError, duckdb.Error) as exc:
            self.database.drop_table(version_table)
            raise IngestionError(resource_id, validator, exc) from exc

        log(f"  {resource_id}: {row_count:,} rows in {name}")
        return name
