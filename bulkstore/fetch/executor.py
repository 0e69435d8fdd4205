# bulkstore/fetch/executor.py
#
# Fetch Executor: network transfer into the Content Cache.
#
# Design decisions:
#   - URLs of a descriptor are tried in order; the first success wins. Each URL
#     gets its own tenacity retry budget (bounded exponential backoff) before
#     the next one is tried.
#   - The cache key comes from the descriptor's canonical URL (urls[0]) and its
#     validator, never from the URL that actually served the bytes. A mirror
#     download and a primary download land on the same entry.
#   - Bytes stream into a private temp file inside the cache root; size and md5
#     are checked before ContentCache.put promotes the file. A rejected temp
#     file is deleted, never promoted.
#   - No resume across restarts: an interrupted transfer starts over.
#
# Invariants:
#   - A cache hit makes no network call.
#   - NetworkError and IncompleteTransferError are retried, CacheWriteError is
#     not: it is a local problem and surfaces immediately.
from __future__ import annotations

import hashlib
from collections.abc import Callable
from pathlib import Path
from typing import Any

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from bulkstore.cache.store import CacheEntry, ContentCache, cache_key
from bulkstore.catalog.models import ResourceDescriptor, data_suffixes
from bulkstore.errors import (
    CacheWriteError,
    IncompleteTransferError,
    NetworkError,
    ResourceUnavailableError,
)
from bulkstore.fetch.transport import Transport
from bulkstore.log import Progress, log

_ETAG_PREFIX = "etag:"
_MD5_PREFIX = "md5:"


class FetchExecutor:
    """Download descriptors into a ContentCache.

    Args:
        cache:     Destination cache.
        transport: Network collaborator.
        retries:   Attempts per URL before moving to the next one.
        wait:      tenacity wait strategy between attempts.
    """

    def __init__(
        self,
        cache: ContentCache,
        transport: Transport,
        *,
        retries: int = 3,
        wait: Callable[[RetryCallState], float] | None = None,
    ) -> None:
        self.cache = cache
        self.transport = transport
        self.retries = retries
        self._wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=30)

    @staticmethod
    def key_for(descriptor: ResourceDescriptor) -> str:
        return cache_key(descriptor.canonical_url, descriptor.validator)

    def cached(self, descriptor: ResourceDescriptor) -> CacheEntry | None:
        """Return the valid cache entry for *descriptor*, or None. No network."""
        entry = self.cache.lookup(self.key_for(descriptor))
        if entry is not None and self.cache.is_valid(entry, descriptor.validator):
            return entry
        return None

    def fetch(self, descriptor: ResourceDescriptor, *, refresh: bool = False) -> CacheEntry:
        """Return a complete cache entry for *descriptor*, downloading if needed.

        Args:
            descriptor: Resource to fetch.
            refresh:    For descriptors without a validator, re-check an existing
                entry with a conditional request instead of trusting it.

        Raises:
            ResourceUnavailableError: if every URL failed after retries.
            CacheWriteError:          if the download cannot be written locally.
        """
        key = self.key_for(descriptor)
        existing = self.cached(descriptor)
        if existing is not None and not (refresh and descriptor.validator is None):
            log(f"  {descriptor.logical_id}: cache hit ({existing.local_path.name})")
            return existing

        failures: list[tuple[str, Exception]] = []
        for url in descriptor.urls:
            retrying = Retrying(
                stop=stop_after_attempt(self.retries),
                wait=self._wait,
                retry=retry_if_exception_type((NetworkError, IncompleteTransferError)),
                before_sleep=_log_retry,
                reraise=True,
            )
            try:
                return retrying(self._transfer, descriptor, url, key, existing)
            except (NetworkError, IncompleteTransferError) as exc:
                log(f"  {descriptor.logical_id}: giving up on {url}: {exc}")
                failures.append((url, exc))

        raise ResourceUnavailableError(descriptor.logical_id, failures)

    def _transfer(
        self,
        descriptor: ResourceDescriptor,
        url: str,
        key: str,
        existing: CacheEntry | None,
    ) -> CacheEntry:
        etag = None
        if existing is not None and existing.validator and existing.validator.startswith(_ETAG_PREFIX):
            etag = existing.validator[len(_ETAG_PREFIX):]

        log(f"  {descriptor.logical_id}: downloading {url}")
        tmp_path = self.cache.new_temp_path()
        try:
            with self.transport.open_stream(url, etag) as response:
                if response.not_modified and existing is not None:
                    log(f"  {descriptor.logical_id}: not modified upstream")
                    return existing
                expected = descriptor.size_bytes if descriptor.size_bytes is not None else response.content_length
                progress = Progress(descriptor.logical_id, expected)
                written, md5 = _write_stream(response.iter_bytes(), tmp_path, progress)
                response_etag = response.etag

            if expected is not None and written != expected:
                raise IncompleteTransferError(url, f"expected {expected:,} bytes, received {written:,}")
            declared = descriptor.validator
            if declared and declared.startswith(_MD5_PREFIX) and declared[len(_MD5_PREFIX):].lower() != md5:
                raise IncompleteTransferError(url, f"checksum mismatch: expected {declared}, got md5:{md5}")

            if declared:
                validator = declared
            elif response_etag:
                validator = f"{_ETAG_PREFIX}{response_etag}"
            else:
                validator = f"{_MD5_PREFIX}{md5}"

            return self.cache.put(
                key,
                tmp_path,
                validator,
                suffix=data_suffixes(descriptor.data_name),
                url=url,
            )
        finally:
            tmp_path.unlink(missing_ok=True)


def _write_stream(chunks: Any, path: Path, progress: Progress) -> tuple[int, str]:
    """Write *chunks* to *path*; return (bytes written, md5 hex digest)."""
    digest = hashlib.md5(usedforsecurity=False)
    written = 0
    try:
        with path.open("wb") as fh:
            for chunk in chunks:
                fh.write(chunk)
                digest.update(chunk)
                written += len(chunk)
                progress.advance(len(chunk))
    except OSError as exc:
        raise CacheWriteError(f"Cannot write download to {path}: {exc}") from exc
    return written, digest.hexdigest()


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome is not None else None
    log(f"  attempt {state.attempt_number} failed ({exc}); retrying")
