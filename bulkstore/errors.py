# bulkstore/errors.py
#
# Typed failures raised by the store.
#
# Every error surfaces to the caller; none is swallowed internally. The
# messages always name the resource, URL or key involved so the operator can
# tell which step to re-run.
from __future__ import annotations


class BulkstoreError(Exception):
    """Base class for every error raised by bulkstore."""


class UnknownResourceError(BulkstoreError, KeyError):
    """Raised when a logical id is not present in the catalog."""

    def __init__(self, logical_id: str) -> None:
        super().__init__(logical_id)
        self.logical_id = logical_id

    def __str__(self) -> str:
        return f"Unknown resource: {self.logical_id!r}"


class CatalogError(BulkstoreError):
    """Raised when a static or remote catalog listing is malformed."""


class NetworkError(BulkstoreError):
    """Raised by the transport when a connection or HTTP request fails."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class IncompleteTransferError(BulkstoreError):
    """Raised when downloaded bytes do not match the declared size or checksum."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class ResourceUnavailableError(BulkstoreError):
    """Raised when every URL of a resource failed.

    Attributes:
        logical_id: Resource that could not be fetched.
        failures:   (url, last error) pairs in the order the URLs were tried.
    """

    def __init__(self, logical_id: str, failures: list[tuple[str, Exception]]) -> None:
        detail = "; ".join(f"{url} -> {exc}" for url, exc in failures)
        super().__init__(f"All URLs failed for {logical_id!r}: {detail}")
        self.logical_id = logical_id
        self.failures = failures


class CacheWriteError(BulkstoreError):
    """Raised when the cache directory or its index cannot be written."""


class SchemaError(BulkstoreError):
    """Raised by the database layer when a file cannot be loaded as a table."""


class IngestionError(BulkstoreError):
    """Raised when a cached file cannot be materialized.

    Attributes:
        resource_id: Resource being loaded.
        validator:   Content validator of the cached file.
        cause:       Underlying database or schema error.
    """

    def __init__(self, resource_id: str, validator: str | None, cause: Exception) -> None:
        super().__init__(f"Failed to materialize {resource_id!r} (validator {validator}): {cause}")
        self.resource_id = resource_id
        self.validator = validator
        self.cause = cause
