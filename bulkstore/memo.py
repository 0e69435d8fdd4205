# bulkstore/memo.py
#
# Query memoization: wraps side-effect-free remote lookups (catalog listings,
# metadata queries) with a result cache keyed by call signature.
#
# Design decisions:
#   - memoize() is an explicit wrapping combinator, not an ambient decorator
#     with hidden global state. The store is injectable so tests can pass a
#     deterministic, clearable one.
#   - Stores follow the MemoStore protocol. InMemoryMemoStore lives for the
#     process; DirectoryMemoStore pickles one file per signature so several
#     processes can share results.
#   - Expired entries are treated as absent and removed on lookup. There is no
#     background eviction.
#
# Invariants:
#   - A wrapped function is invoked at most once per live signature.
#   - Only referentially transparent functions may be wrapped; bulk downloads
#     go through the Fetch Executor, never through memoize().
from __future__ import annotations

import functools
import hashlib
import os
import pickle
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class MemoEntry:
    """A memoized result.

    ttl is in seconds; None means the entry lives as long as its store.
    """

    signature: str
    value: Any
    created_at: float
    ttl: float | None = None

    def expired(self, now: float) -> bool:
        if self.ttl is None:
            return False
        return now - self.created_at >= self.ttl


class MemoStore(Protocol):
    """Storage backend for memoized results."""

    def get(self, signature: str) -> MemoEntry | None: ...

    def set(self, entry: MemoEntry) -> None: ...

    def delete(self, signature: str) -> None: ...

    def clear(self) -> None: ...


class InMemoryMemoStore:
    """Process-lifetime store backed by a dict."""

    def __init__(self) -> None:
        self._entries: dict[str, MemoEntry] = {}

    def get(self, signature: str) -> MemoEntry | None:
        return self._entries.get(signature)

    def set(self, entry: MemoEntry) -> None:
        self._entries[entry.signature] = entry

    def delete(self, signature: str) -> None:
        self._entries.pop(signature, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class DirectoryMemoStore:
    """Cross-process store: one pickle file per signature under *directory*.

    Files are written under a temporary name and renamed into place, so a
    concurrent reader sees either the old entry or the new one.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, signature: str) -> Path:
        return self.directory / f"{signature}.pkl"

    def get(self, signature: str) -> MemoEntry | None:
        path = self._path(signature)
        try:
            with path.open("rb") as fh:
                entry = pickle.load(fh)  # noqa: S301
        except FileNotFoundError:
            return None
        return entry if isinstance(entry, MemoEntry) else None

    def set(self, entry: MemoEntry) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                pickle.dump(entry, fh)
            os.replace(tmp_name, self._path(entry.signature))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, signature: str) -> None:
        self._path(signature).unlink(missing_ok=True)

    def clear(self) -> None:
        for path in self.directory.glob("*.pkl"):
            path.unlink(missing_ok=True)


def call_signature(fn: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    """Hash the function identity and its arguments into a signature.

    Arguments are identified by repr(), so they should be values (strings,
    numbers, tuples) rather than objects with identity-based reprs.
    """
    name = f"{getattr(fn, '__module__', '')}.{getattr(fn, '__qualname__', repr(fn))}"
    payload = f"{name}|{args!r}|{sorted(kwargs.items())!r}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def invalidate(store: MemoStore, signature: str) -> None:
    """Remove a single entry from *store*, regardless of its TTL."""
    store.delete(signature)


def memoize(
    fn: Callable[..., T] | None = None,
    *,
    ttl: float | None = None,
    store: MemoStore | None = None,
    clock: Callable[[], float] = time.time,
) -> Any:
    """Wrap *fn* so repeated calls with the same arguments reuse the result.

    Usable directly (``memoize(fn)``) or as a decorator factory
    (``@memoize(ttl=60)``).

    Args:
        fn:    Referentially transparent function to wrap.
        ttl:   Seconds an entry stays live. None keeps it for the store's life.
        store: Backend; a fresh InMemoryMemoStore when omitted.
        clock: Time source, injectable for tests.

    Returns:
        The wrapped function. It exposes ``signature(*args, **kwargs)``,
        ``invalidate(*args, **kwargs)``, ``cache_clear()`` and ``store``.
    """
    if ttl is not None and ttl <= 0:
        raise ValueError(f"ttl must be positive, got {ttl}")

    def decorate(func: Callable[..., T]) -> Callable[..., T]:
        backend: MemoStore = store if store is not None else InMemoryMemoStore()

        def signature(*args: Any, **kwargs: Any) -> str:
            return call_signature(func, args, kwargs)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            sig = signature(*args, **kwargs)
            entry = backend.get(sig)
            if entry is not None:
                if not entry.expired(clock()):
                    return entry.value
                backend.delete(sig)
            value = func(*args, **kwargs)
            backend.set(MemoEntry(signature=sig, value=value, created_at=clock(), ttl=ttl))
            return value

        def invalidate_call(*args: Any, **kwargs: Any) -> None:
            backend.delete(signature(*args, **kwargs))

        wrapper.signature = signature  # type: ignore[attr-defined]
        wrapper.invalidate = invalidate_call  # type: ignore[attr-defined]
        wrapper.cache_clear = backend.clear  # type: ignore[attr-defined]
        wrapper.store = backend  # type: ignore[attr-defined]
        return wrapper

    if fn is not None:
        return decorate(fn)
    return decorate
