# bulkstore/catalog/resolver.py
#
# Remote Catalog Resolver: logical id -> ResourceDescriptor.
#
# Design decisions:
#   - Two sources, merged in declaration order: static descriptors (code or a
#     JSON catalog file) first, then the remote record listing. When both
#     declare the same id, the first declaration wins.
#   - The remote listing is fetched through memoize(), so a process issues the
#     listing call once per TTL no matter how many resolves it serves.
#   - list_available() returns an iterable object, not a generator: each
#     iteration starts over and reads the (memoized) catalog again.
from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from pathlib import Path

from bulkstore.catalog.listing import parse_record_listing
from bulkstore.catalog.models import ResourceDescriptor, descriptor_from_mapping
from bulkstore.errors import CatalogError, UnknownResourceError
from bulkstore.fetch.transport import Transport
from bulkstore.log import log
from bulkstore.memo import MemoStore, memoize


def load_catalog_file(path: Path) -> list[ResourceDescriptor]:
    """Read a static JSON catalog: a list of descriptor objects.

    Raises:
        CatalogError: if the file is not valid JSON or an entry is malformed.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise CatalogError(f"Cannot read catalog file {path}: {exc}") from exc
    if not isinstance(raw, list):
        raise CatalogError(f"Catalog file {path} must contain a JSON list")
    return [descriptor_from_mapping(item) for item in raw]


class AvailableResources:
    """Lazy, restartable view of the catalog's logical ids."""

    def __init__(self, resolver: CatalogResolver) -> None:
        self._resolver = resolver

    def __iter__(self) -> Iterator[str]:
        for descriptor in self._resolver.descriptors():
            yield descriptor.logical_id


class CatalogResolver:
    """Resolve logical resource ids against static and remote catalogs.

    Args:
        transport:   Network collaborator used for the remote listing.
        static:      Descriptors declared in code or loaded from a file.
        record_id:   Remote record to list; None disables the remote listing.
        api_base:    API base URL of the record repository.
        id_prefix:   Prefix stripped from listed file names.
        listing_ttl: Seconds a fetched listing stays live; None for process life.
        memo_store:  Store for memoized listings; a private one when omitted.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        static: Iterable[ResourceDescriptor] = (),
        record_id: str | None = None,
        api_base: str = "https://zenodo.org/api",
        id_prefix: str = "",
        listing_ttl: float | None = None,
        memo_store: MemoStore | None = None,
    ) -> None:
        self._transport = transport
        self._static = list(static)
        self.record_id = record_id
        self.api_base = api_base
        self.id_prefix = id_prefix
        self._listing = memoize(self._fetch_listing, ttl=listing_ttl, store=memo_store)

    @property
    def record_url(self) -> str | None:
        if not self.record_id:
            return None
        return f"{self.api_base.rstrip('/')}/records/{self.record_id}"

    def _fetch_listing(self, url: str, id_prefix: str) -> tuple[ResourceDescriptor, ...]:
        log(f"Fetching catalog listing {url}")
        payload = self._transport.get_json(url)
        descriptors = parse_record_listing(
            payload,
            record_id=str(self.record_id),
            api_base=self.api_base,
            id_prefix=id_prefix,
        )
        log(f"  Catalog: {len(descriptors)} remote resources")
        return tuple(descriptors)

    def descriptors(self) -> list[ResourceDescriptor]:
        """All descriptors in declaration order, first declaration per id."""
        merged: dict[str, ResourceDescriptor] = {}
        for descriptor in self._static:
            merged.setdefault(descriptor.logical_id, descriptor)
        url = self.record_url
        if url is not None:
            for descriptor in self._listing(url, self.id_prefix):
                merged.setdefault(descriptor.logical_id, descriptor)
        return list(merged.values())

    def resolve(self, logical_id: str) -> ResourceDescriptor:
        """Return the descriptor for *logical_id*.

        Static entries are checked first so resolving them never touches the
        network.

        Raises:
            UnknownResourceError: if no catalog declares *logical_id*.
            NetworkError:         if the remote listing cannot be fetched.
            CatalogError:         if the remote listing is malformed.
        """
        for descriptor in self._static:
            if descriptor.logical_id == logical_id:
                return descriptor
        for descriptor in self.descriptors():
            if descriptor.logical_id == logical_id:
                return descriptor
        raise UnknownResourceError(logical_id)

    def list_available(self) -> AvailableResources:
        return AvailableResources(self)

    def refresh(self) -> None:
        """Drop the memoized listing so the next call refetches it."""
        url = self.record_url
        if url is not None:
            self._listing.invalidate(url, self.id_prefix)
