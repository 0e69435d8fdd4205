# bulkstore/session.py
#
# Process-scoped handle wiring the catalog, cache, fetcher and database.
#
# Design decisions:
#   - All mutable process state (known resources, the HTTP client, the DuckDB
#     connection, memoized results) hangs off one Session object. Nothing is a
#     module-level singleton; callers create a Session and thread it through.
#   - Connections open lazily on first use. close() (or leaving the with block)
#     releases them. A closed Session reopens on the next call.
#   - Collaborators can be injected (transport, database, memo store, retry
#     wait) so tests run without network or sleeps.
from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from typing import Any

import polars as pl
from tenacity import RetryCallState

from bulkstore.cache.store import ContentCache
from bulkstore.catalog.models import ResourceDescriptor
from bulkstore.catalog.resolver import AvailableResources, CatalogResolver, load_catalog_file
from bulkstore.config import StoreConfig, load_config
from bulkstore.fetch.executor import FetchExecutor
from bulkstore.fetch.transport import HttpxTransport, Transport
from bulkstore.ingest.database import Database
from bulkstore.ingest.engine import LEDGER_TABLE, IngestionEngine, MaterializationRecord, ResourceState
from bulkstore.log import log
from bulkstore.memo import InMemoryMemoStore, MemoStore, memoize


class Session:
    """Entry point for resolving, caching and materializing resources.

    Args:
        config:     Store configuration; read from the environment when omitted.
        transport:  Network collaborator; an HttpxTransport when omitted.
        static:     Extra static descriptors, declared before the catalog file
            and the remote listing.
        memo_store: Store shared by the catalog listing and Session.memoize.
        database:   Database collaborator; one on config.db_path when omitted.
        retry_wait: tenacity wait strategy for download retries.
    """

    def __init__(
        self,
        config: StoreConfig | None = None,
        *,
        transport: Transport | None = None,
        static: Iterable[ResourceDescriptor] = (),
        memo_store: MemoStore | None = None,
        database: Database | None = None,
        retry_wait: Callable[[RetryCallState], float] | None = None,
    ) -> None:
        self.config = config if config is not None else load_config()
        self._owns_transport = transport is None
        self.transport: Transport = (
            transport if transport is not None else HttpxTransport(timeout=self.config.download_timeout)
        )
        self.memo_store: MemoStore = memo_store if memo_store is not None else InMemoryMemoStore()

        descriptors = list(static)
        if self.config.catalog_file is not None:
            descriptors.extend(load_catalog_file(self.config.catalog_file))

        self.resolver = CatalogResolver(
            self.transport,
            static=descriptors,
            record_id=self.config.record_id,
            api_base=self.config.api_base,
            id_prefix=self.config.id_prefix,
            listing_ttl=self.config.listing_ttl,
            memo_store=self.memo_store,
        )
        self.cache = ContentCache(self.config.cache_dir)
        self.fetcher = FetchExecutor(
            self.cache,
            self.transport,
            retries=self.config.download_retries,
            wait=retry_wait,
        )
        self.database = database if database is not None else Database(self.config.db_path)
        self.engine = IngestionEngine(self.resolver, self.fetcher, self.database)

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the database connection and the HTTP client."""
        self.database.close()
        if self._owns_transport and isinstance(self.transport, HttpxTransport):
            self.transport.close()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def resolve(self, logical_id: str) -> ResourceDescriptor:
        return self.resolver.resolve(logical_id)

    def list_available(self) -> AvailableResources:
        return self.resolver.list_available()

    def ensure_loaded(self, logical_id: str, *, refresh: bool = False) -> str:
        return self.engine.ensure_loaded(logical_id, refresh=refresh)

    def memoize(self, fn: Callable[..., Any] | None = None, *, ttl: float | None = None) -> Any:
        """memoize() bound to this session's memo store."""
        return memoize(fn, ttl=ttl, store=self.memo_store)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def state(self, logical_id: str) -> ResourceState:
        return self.engine.state(logical_id)

    def history(self, logical_id: str) -> list[MaterializationRecord]:
        return self.engine.history(logical_id)

    def status(self) -> pl.DataFrame:
        """One row per available resource with its cache and load status."""
        rows: list[dict[str, Any]] = []
        for descriptor in self.resolver.descriptors():
            entry = self.fetcher.cached(descriptor)
            validator = entry.validator if entry is not None else descriptor.validator
            record = self.engine.record_for(descriptor.logical_id, validator) if validator else None
            rows.append(
                {
                    "logical_id": descriptor.logical_id,
                    "format": descriptor.expected_format.value,
                    "genome_build": descriptor.genome_build.value if descriptor.genome_build else None,
                    "size_bytes": descriptor.size_bytes,
                    "validator": descriptor.validator,
                    "cached": entry is not None,
                    "materialized": record is not None and self.database.table_exists(record.table_name),
                }
            )
        schema = {
            "logical_id": pl.Utf8,
            "format": pl.Utf8,
            "genome_build": pl.Utf8,
            "size_bytes": pl.Int64,
            "validator": pl.Utf8,
            "cached": pl.Boolean,
            "materialized": pl.Boolean,
        }
        return pl.DataFrame(rows, schema=schema)

    def tables(self) -> list[str]:
        """Tables and views in the database, without the ledger."""
        return [name for name in self.database.tables() if name != LEDGER_TABLE]

    def query(self, sql: str, params: Sequence[Any] | None = None) -> pl.DataFrame:
        return self.database.query(sql, params)

    def temporary_table(self, df: pl.DataFrame, name: str) -> str:
        return self.database.temporary_table(df, name)

    def clear_cache(self, logical_id: str | None = None) -> int:
        """Evict cached files: one resource, or everything when *logical_id* is None.

        Materialized tables are not touched.

        Returns:
            Number of cache entries removed.
        """
        if logical_id is None:
            removed = self.cache.clear_all()
        else:
            descriptor = self.resolver.resolve(logical_id)
            removed = int(self.cache.clear(FetchExecutor.key_for(descriptor)))
        log(f"Cache: {removed} entries removed")
        return removed

    def refresh_catalog(self) -> None:
        self.resolver.refresh()
