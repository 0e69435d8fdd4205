# bulkstore/cache/store.py
#
# Content Cache: persistent local store mapping a cache key to a file.
#
# Design decisions:
#   - One file per entry, named <key>-<random token><data suffixes> under the
#     cache root, plus index.json holding the entry metadata. A refresh of the
#     same key writes a new file; the previous one is unlinked only once the
#     index points away from it.
#   - Promotion is atomic: the Fetch Executor writes under tmp/ inside the cache
#     root (same filesystem), then put() renames the file into place and only
#     afterwards records the entry in the index. The index itself is rewritten
#     under a temporary name and swapped in with os.replace.
#   - Index updates hold a filelock.FileLock so concurrent processes sharing a
#     cache directory never lose each other's entries. Reads take no lock.
#   - Nothing is evicted automatically. clear() and clear_all() are the only
#     ways entries disappear.
#
# Invariants:
#   - An entry with status complete always points at a file whose size equals
#     size_bytes. lookup() reports partial when the file on disk disagrees.
#   - A failed or interrupted write never produces an index entry.
from __future__ import annotations

import hashlib
import json
import os
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from filelock import FileLock

from bulkstore.errors import CacheWriteError
from bulkstore.log import format_size, log

INDEX_FILENAME = "index.json"
LOCK_FILENAME = "index.lock"
TMP_DIRNAME = "tmp"


class EntryStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    STALE = "stale"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    local_path: Path
    size_bytes: int
    validator: str | None
    fetched_at: datetime
    status: EntryStatus = EntryStatus.COMPLETE
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "filename": self.local_path.name,
            "size_bytes": self.size_bytes,
            "validator": self.validator,
            "fetched_at": self.fetched_at.isoformat(),
            "status": self.status.value,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, root: Path, raw: dict[str, Any]) -> CacheEntry:
        return cls(
            key=raw["key"],
            local_path=root / raw["filename"],
            size_bytes=int(raw["size_bytes"]),
            validator=raw.get("validator"),
            fetched_at=datetime.fromisoformat(raw["fetched_at"]),
            status=EntryStatus(raw.get("status", EntryStatus.COMPLETE.value)),
            url=raw.get("url"),
        )


def cache_key(url: str, validator: str | None = None) -> str:
    """Derive the cache key of a resource from its canonical URL and validator."""
    payload = f"{url}\n{validator or ''}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ContentCache:
    """Content-addressed file cache rooted at *root*."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = FileLock(str(root / LOCK_FILENAME))

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILENAME

    @property
    def tmp_dir(self) -> Path:
        return self.root / TMP_DIRNAME

    def _ensure_dirs(self) -> None:
        try:
            self.tmp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheWriteError(f"Cannot create cache directory {self.root}: {exc}") from exc

    def _read_index(self) -> dict[str, dict[str, Any]]:
        try:
            raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError as exc:
            raise CacheWriteError(f"Cache index {self.index_path} is corrupt: {exc}") from exc
        return raw.get("entries", {})

    def _write_index(self, entries: dict[str, dict[str, Any]]) -> None:
        tmp = self.index_path.with_name(f".{INDEX_FILENAME}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_text(json.dumps({"entries": entries}, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp, self.index_path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise CacheWriteError(f"Cannot write cache index {self.index_path}: {exc}") from exc

    def new_temp_path(self) -> Path:
        """Private temporary path for an in-progress download."""
        self._ensure_dirs()
        return self.tmp_dir / f"{uuid.uuid4().hex}.part"

    def lookup(self, key: str) -> CacheEntry | None:
        """Return the entry for *key*, or None.

        An indexed entry whose file is missing or has the wrong size is returned
        with status partial.
        """
        raw = self._read_index().get(key)
        if raw is None:
            return None
        entry = CacheEntry.from_dict(self.root, raw)
        try:
            on_disk = entry.local_path.stat().st_size
        except FileNotFoundError:
            on_disk = None
        if on_disk != entry.size_bytes:
            return replace(entry, status=EntryStatus.PARTIAL)
        return entry

    def is_valid(self, entry: CacheEntry, remote_validator: str | None = None) -> bool:
        """Whether *entry* can be served without a network call.

        Valid means complete and, when the caller supplies a remote validator,
        carrying that same validator. A complete entry with a different
        validator is marked stale. No network call is made here.
        """
        if entry.status is not EntryStatus.COMPLETE:
            return False
        if remote_validator is None or entry.validator == remote_validator:
            return True
        self.mark_stale(entry.key)
        return False

    def put(
        self,
        key: str,
        temp_path: Path,
        validator: str | None,
        *,
        suffix: str = "",
        url: str | None = None,
    ) -> CacheEntry:
        """Atomically promote a fully written temporary file into the cache.

        Any prior entry for *key* is overwritten.

        Args:
            key:       Cache key of the entry.
            temp_path: Finished download, normally from new_temp_path().
            validator: Content validator recorded on the entry.
            suffix:    Data extensions kept on the cached file name.
            url:       URL that served the content.

        Raises:
            CacheWriteError: if the file cannot be moved or the index written.
        """
        self._ensure_dirs()
        dest = self.root / f"{key}-{uuid.uuid4().hex[:12]}{suffix}"
        try:
            size = temp_path.stat().st_size
        except OSError as exc:
            raise CacheWriteError(f"Temporary file {temp_path} is not readable: {exc}") from exc

        with self._lock:
            entries = self._read_index()
            previous = entries.get(key)
            try:
                os.replace(temp_path, dest)
            except OSError as exc:
                raise CacheWriteError(f"Cannot promote {temp_path} to {dest}: {exc}") from exc

            entry = CacheEntry(
                key=key,
                local_path=dest,
                size_bytes=size,
                validator=validator,
                fetched_at=datetime.now(UTC),
                status=EntryStatus.COMPLETE,
                url=url,
            )
            entries[key] = entry.to_dict()
            try:
                self._write_index(entries)
            except CacheWriteError:
                dest.unlink(missing_ok=True)
                raise
            if previous is not None:
                (self.root / previous["filename"]).unlink(missing_ok=True)

        log(f"  Cached {dest.name} ({format_size(size)})")
        return entry

    def mark_stale(self, key: str) -> None:
        self._ensure_dirs()
        with self._lock:
            entries = self._read_index()
            if key not in entries or entries[key].get("status") == EntryStatus.STALE.value:
                return
            entries[key]["status"] = EntryStatus.STALE.value
            self._write_index(entries)

    def entries(self) -> list[CacheEntry]:
        return [CacheEntry.from_dict(self.root, raw) for raw in self._read_index().values()]

    def clear(self, key: str) -> bool:
        """Remove the entry for *key* and its file. Returns whether it existed."""
        self._ensure_dirs()
        with self._lock:
            entries = self._read_index()
            raw = entries.pop(key, None)
            if raw is None:
                return False
            self._write_index(entries)
            try:
                (self.root / raw["filename"]).unlink(missing_ok=True)
            except OSError as exc:
                raise CacheWriteError(f"Cannot remove cached file {raw['filename']}: {exc}") from exc
        log(f"  Evicted cache entry {key[:12]}")
        return True

    def clear_all(self) -> int:
        """Remove every entry. Returns how many were removed."""
        removed = 0
        for key in list(self._read_index()):
            if self.clear(key):
                removed += 1
        return removed
