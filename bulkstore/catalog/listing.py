# bulkstore/catalog/listing.py
#
# Parsing of remote record listings into ResourceDescriptors.
#
# A Zenodo record payload looks like:
#     {"id": 10813168,
#      "files": [{"key": "AlphaMissense_hg38.tsv.gz", "size": 642351241,
#                 "checksum": "md5:...",
#                 "links": {"self": "https://zenodo.org/api/records/.../content"}}]}
#
# Each file becomes one descriptor with two URLs: the API link and the public
# record download link as a mirror.
from __future__ import annotations

from typing import Any

from bulkstore.catalog.models import (
    ResourceDescriptor,
    infer_format,
    infer_genome_build,
    strip_data_suffixes,
)
from bulkstore.errors import CatalogError


def logical_id_for(key: str, id_prefix: str) -> str:
    """Derive a logical id from a listing file key.

    ``AlphaMissense_gene_hg38.tsv.gz`` with prefix ``AlphaMissense_`` becomes
    ``gene_hg38``.
    """
    name = strip_data_suffixes(key)
    if id_prefix and name.lower().startswith(id_prefix.lower()):
        name = name[len(id_prefix):]
    return name.lower()


def web_base_for(api_base: str) -> str:
    base = api_base.rstrip("/")
    return base[: -len("/api")] if base.endswith("/api") else base


def parse_record_listing(
    payload: Any,
    *,
    record_id: str,
    api_base: str,
    id_prefix: str = "",
) -> list[ResourceDescriptor]:
    """Convert a record payload into descriptors, preserving listing order.

    Args:
        payload:   Decoded JSON body of ``{api_base}/records/{record_id}``.
        record_id: Record the payload belongs to; used for mirror URLs.
        api_base:  API base URL; the public site is derived from it.
        id_prefix: Prefix stripped from file keys when deriving logical ids.

    Raises:
        CatalogError: if the payload or one of its file entries is malformed.
    """
    if not isinstance(payload, dict):
        raise CatalogError(f"Record {record_id}: listing must be a JSON object")
    files = payload.get("files")
    if isinstance(files, dict):
        # Older API versions nest the list under files.entries.
        files = files.get("entries")
    if not isinstance(files, list):
        raise CatalogError(f"Record {record_id}: listing has no 'files' list")

    web_base = web_base_for(api_base)
    descriptors: list[ResourceDescriptor] = []
    for item in files:
        if not isinstance(item, dict):
            raise CatalogError(f"Record {record_id}: file entry must be an object, got {item!r}")
        key = item.get("key")
        if not isinstance(key, str) or not key:
            raise CatalogError(f"Record {record_id}: file entry without a key: {item!r}")

        size = item.get("size")
        if size is not None and (not isinstance(size, int) or isinstance(size, bool) or size < 0):
            raise CatalogError(f"Record {record_id}: file {key!r} has invalid size {size!r}")

        checksum = item.get("checksum")
        if checksum is not None and not isinstance(checksum, str):
            raise CatalogError(f"Record {record_id}: file {key!r} has invalid checksum {checksum!r}")

        links = item.get("links") or {}
        api_url = links.get("self") if isinstance(links, dict) else None
        mirror_url = f"{web_base}/records/{record_id}/files/{key}?download=1"
        urls = tuple(u for u in (api_url, mirror_url) if isinstance(u, str) and u)

        descriptors.append(
            ResourceDescriptor(
                logical_id=logical_id_for(key, id_prefix),
                urls=urls,
                expected_format=infer_format(key),
                genome_build=infer_genome_build(key),
                validator=checksum or None,
                size_bytes=size,
                filename=key,
            )
        )
    return descriptors
