# tests/test_memo.py
#
# Query memoization: hits, misses, TTL expiry and invalidation.
# The clock is injected so no test sleeps.
from __future__ import annotations

from pathlib import Path

import pytest

from bulkstore.memo import (
    DirectoryMemoStore,
    InMemoryMemoStore,
    MemoEntry,
    call_signature,
    invalidate,
    memoize,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _counting():
    calls: list[tuple] = []

    def lookup(record_id: str, page: int = 1) -> dict:
        calls.append((record_id, page))
        return {"record": record_id, "page": page}

    return lookup, calls


# ---------------------------------------------------------------------------
# Hits and misses
# ---------------------------------------------------------------------------


def test_second_call_is_served_from_store() -> None:
    """Same arguments -> the wrapped function runs once."""
    fn, calls = _counting()
    wrapped = memoize(fn)

    assert wrapped("8208688") == {"record": "8208688", "page": 1}
    assert wrapped("8208688") == {"record": "8208688", "page": 1}
    assert calls == [("8208688", 1)]


def test_different_arguments_are_different_signatures() -> None:
    fn, calls = _counting()
    wrapped = memoize(fn)

    wrapped("a")
    wrapped("b")
    wrapped("a", page=2)

    assert len(calls) == 3


def test_none_result_is_memoized() -> None:
    calls: list[int] = []

    def nothing() -> None:
        calls.append(1)

    wrapped = memoize(nothing)
    wrapped()
    wrapped()

    assert calls == [1]


def test_decorator_factory_form() -> None:
    calls: list[int] = []

    @memoize(ttl=10)
    def answer() -> int:
        calls.append(1)
        return 42

    assert answer() == 42
    assert answer() == 42
    assert calls == [1]


def test_signature_depends_on_function_identity() -> None:
    def first(x: int) -> int:
        return x

    def second(x: int) -> int:
        return x

    assert call_signature(first, (1,), {}) != call_signature(second, (1,), {})
    assert call_signature(first, (1,), {}) == call_signature(first, (1,), {})


def test_rejects_non_positive_ttl() -> None:
    with pytest.raises(ValueError):
        memoize(lambda: 1, ttl=0)


# ---------------------------------------------------------------------------
# TTL
# ---------------------------------------------------------------------------


def test_entry_served_before_ttl_and_absent_after() -> None:
    """A TTL entry is live before t elapses and recomputed afterwards."""
    clock = _Clock()
    fn, calls = _counting()
    wrapped = memoize(fn, ttl=60, clock=clock)

    wrapped("r")
    clock.now += 59
    wrapped("r")
    assert len(calls) == 1

    clock.now += 1
    wrapped("r")
    assert len(calls) == 2


def test_expired_entry_is_never_served_even_if_stored() -> None:
    store = InMemoryMemoStore()
    clock = _Clock()
    fn, calls = _counting()
    wrapped = memoize(fn, ttl=5, store=store, clock=clock)
    sig = wrapped.signature("r")
    store.set(MemoEntry(signature=sig, value="stale", created_at=clock.now - 10, ttl=5))

    assert wrapped("r") == {"record": "r", "page": 1}
    assert calls == [("r", 1)]


# ---------------------------------------------------------------------------
# Invalidation
# ---------------------------------------------------------------------------


def test_invalidate_removes_entry_regardless_of_ttl() -> None:
    store = InMemoryMemoStore()
    fn, calls = _counting()
    wrapped = memoize(fn, ttl=3600, store=store)

    wrapped("r")
    invalidate(store, wrapped.signature("r"))
    wrapped("r")

    assert len(calls) == 2


def test_invalidate_by_arguments_only_touches_that_call() -> None:
    fn, calls = _counting()
    wrapped = memoize(fn)

    wrapped("a")
    wrapped("b")
    wrapped.invalidate("a")
    wrapped("a")
    wrapped("b")

    assert calls == [("a", 1), ("b", 1), ("a", 1)]


def test_cache_clear_empties_store() -> None:
    store = InMemoryMemoStore()
    fn, _ = _counting()
    wrapped = memoize(fn, store=store)
    wrapped("a")
    wrapped("b")

    wrapped.cache_clear()

    assert len(store) == 0


# ---------------------------------------------------------------------------
# Directory store
# ---------------------------------------------------------------------------


def test_directory_store_shares_results_between_wrappers(tmp_path: Path) -> None:
    """Two wrappers over the same function and directory act like two processes."""
    fn, calls = _counting()
    first = memoize(fn, store=DirectoryMemoStore(tmp_path / "memo"))
    second = memoize(fn, store=DirectoryMemoStore(tmp_path / "memo"))

    first("r")
    assert second("r") == {"record": "r", "page": 1}
    assert calls == [("r", 1)]


def test_directory_store_delete_and_clear(tmp_path: Path) -> None:
    store = DirectoryMemoStore(tmp_path / "memo")
    store.set(MemoEntry(signature="abc", value=1, created_at=0.0))
    store.set(MemoEntry(signature="def", value=2, created_at=0.0))

    store.delete("abc")
    assert store.get("abc") is None
    assert store.get("def") is not None

    store.clear()
    assert store.get("def") is None
    assert not list((tmp_path / "memo").glob("*.tmp"))
