# bulkstore/catalog/models.py
#
# Strongly typed catalog records.
#
# Design decisions:
#   - ResourceDescriptor is frozen: once the resolver has built it, nothing
#     downstream may change its URLs or validator.
#   - Loosely typed catalog input (remote JSON, static catalog files) is
#     converted here, at the boundary. descriptor_from_mapping is the only
#     place that reads untyped dictionaries.
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from bulkstore.errors import CatalogError

_DATA_SUFFIXES = frozenset({".tsv", ".csv", ".txt", ".json", ".jsonl", ".parquet", ".gz", ".zst"})
_BUILD_RE = re.compile(r"(?<![a-z0-9])(hg19|hg38)(?![0-9])", re.IGNORECASE)


class ResourceFormat(str, Enum):
    TABULAR = "tabular"
    JSON = "json"
    BINARY = "binary"


class GenomeBuild(str, Enum):
    HG19 = "hg19"
    HG38 = "hg38"


@dataclass(frozen=True)
class ResourceDescriptor:
    """A resolved logical resource.

    Invariants:
      - logical_id is non-empty and unique within a catalog.
      - urls is a non-empty tuple; urls[0] is the canonical URL used for cache
        keys, the rest are mirrors tried in order.
      - validator, when present, is a strong identifier such as ``md5:<hex>``.
    """

    logical_id: str
    urls: tuple[str, ...]
    expected_format: ResourceFormat
    genome_build: GenomeBuild | None = None
    validator: str | None = None
    size_bytes: int | None = None
    filename: str | None = None

    def __post_init__(self) -> None:
        if not self.logical_id:
            raise CatalogError("ResourceDescriptor.logical_id must be non-empty")
        if not self.urls:
            raise CatalogError(f"Resource {self.logical_id!r} has no URLs")

    @property
    def canonical_url(self) -> str:
        return self.urls[0]

    @property
    def data_name(self) -> str:
        """File name of the payload, used for suffix and format detection."""
        if self.filename:
            return self.filename
        return PurePosixPath(urlparse(self.canonical_url).path).name


def data_suffixes(name: str) -> str:
    """Return the trailing data extensions of *name*, e.g. ``.tsv.gz``."""
    suffixes: list[str] = []
    for suffix in reversed(PurePosixPath(name).suffixes):
        if suffix.lower() not in _DATA_SUFFIXES:
            break
        suffixes.insert(0, suffix.lower())
    return "".join(suffixes)


def strip_data_suffixes(name: str) -> str:
    suffixes = data_suffixes(name)
    return name[: len(name) - len(suffixes)] if suffixes else name


def infer_format(name: str) -> ResourceFormat:
    suffixes = data_suffixes(name)
    if any(s in suffixes for s in (".tsv", ".csv", ".txt")):
        return ResourceFormat.TABULAR
    if ".json" in suffixes or ".jsonl" in suffixes:
        return ResourceFormat.JSON
    return ResourceFormat.BINARY


def infer_genome_build(name: str) -> GenomeBuild | None:
    match = _BUILD_RE.search(name)
    if match is None:
        return None
    return GenomeBuild(match.group(1).lower())


def descriptor_from_mapping(raw: Mapping[str, Any]) -> ResourceDescriptor:
    """Validate one static catalog entry and build its descriptor.

    Expected keys: ``logical_id``, ``urls`` (or a single ``url``), and
    optionally ``format``, ``genome_build``, ``validator``, ``size_bytes``
    and ``filename``. Format and genome build are inferred from the file name
    when absent.

    Raises:
        CatalogError: if a key is missing or holds a value of the wrong type.
    """
    if not isinstance(raw, Mapping):
        raise CatalogError(f"Catalog entry must be an object, got {type(raw).__name__}")

    logical_id = raw.get("logical_id")
    if not isinstance(logical_id, str) or not logical_id:
        raise CatalogError(f"Catalog entry without a valid logical_id: {dict(raw)!r}")

    urls_raw = raw.get("urls", [raw["url"]] if "url" in raw else None)
    if not isinstance(urls_raw, list | tuple) or not urls_raw or not all(isinstance(u, str) and u for u in urls_raw):
        raise CatalogError(f"Catalog entry {logical_id!r}: urls must be a non-empty list of strings")
    urls = tuple(urls_raw)

    filename = raw.get("filename")
    if filename is not None and not isinstance(filename, str):
        raise CatalogError(f"Catalog entry {logical_id!r}: filename must be a string")
    name = filename or PurePosixPath(urlparse(urls[0]).path).name

    try:
        fmt = ResourceFormat(raw["format"]) if raw.get("format") else infer_format(name)
        build_raw = raw.get("genome_build")
        build = GenomeBuild(build_raw) if build_raw else infer_genome_build(name)
    except ValueError as exc:
        raise CatalogError(f"Catalog entry {logical_id!r}: {exc}") from exc

    validator = raw.get("validator")
    if validator is not None and not isinstance(validator, str):
        raise CatalogError(f"Catalog entry {logical_id!r}: validator must be a string")

    size = raw.get("size_bytes")
    if size is not None and (not isinstance(size, int) or isinstance(size, bool) or size < 0):
        raise CatalogError(f"Catalog entry {logical_id!r}: size_bytes must be a non-negative integer")

    return ResourceDescriptor(
        logical_id=logical_id,
        urls=urls,
        expected_format=fmt,
        genome_build=build,
        validator=validator or None,
        size_bytes=size,
        filename=filename,
    )
