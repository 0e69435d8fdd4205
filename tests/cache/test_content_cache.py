# tests/cache/test_content_cache.py
#
# Content Cache: atomic promotion, status reporting, staleness and eviction.
from __future__ import annotations

import json
from pathlib import Path

import pytest

from bulkstore.cache.store import (
    INDEX_FILENAME,
    CacheEntry,
    ContentCache,
    EntryStatus,
    cache_key,
)
from bulkstore.errors import CacheWriteError


def _write_temp(cache: ContentCache, payload: bytes) -> Path:
    path = cache.new_temp_path()
    path.write_bytes(payload)
    return path


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def test_cache_key_is_stable_and_validator_sensitive() -> None:
    url = "https://zenodo.org/api/records/10813168/files/AlphaMissense_hg38.tsv.gz/content"

    assert cache_key(url, "md5:aa") == cache_key(url, "md5:aa")
    assert cache_key(url, "md5:aa") != cache_key(url, "md5:bb")
    assert cache_key(url) != cache_key(url + "?x=1")
    assert len(cache_key(url)) == 64


# ---------------------------------------------------------------------------
# put / lookup
# ---------------------------------------------------------------------------


def test_put_promotes_file_and_records_entry(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    temp = _write_temp(cache, b"chr1\t1\n")

    entry = cache.put("k1", temp, "md5:abc", suffix=".tsv", url="https://example.org/a.tsv")

    assert not temp.exists()
    assert entry.local_path.parent == tmp_path / "cache"
    assert entry.local_path.name.startswith("k1-")
    assert entry.local_path.suffix == ".tsv"
    assert entry.local_path.read_bytes() == b"chr1\t1\n"
    assert entry.size_bytes == 7
    assert entry.status is EntryStatus.COMPLETE

    found = cache.lookup("k1")
    assert found is not None
    assert found.validator == "md5:abc"
    assert found.url == "https://example.org/a.tsv"
    assert found.status is EntryStatus.COMPLETE


def test_lookup_missing_key(tmp_path: Path) -> None:
    assert ContentCache(tmp_path / "cache").lookup("absent") is None


def test_interrupted_write_leaves_no_entry(tmp_path: Path) -> None:
    """A temp file that was never promoted is invisible to lookup."""
    cache = ContentCache(tmp_path / "cache")
    _write_temp(cache, b"half a fi")

    assert cache.lookup("k1") is None
    assert cache.entries() == []


def test_put_overwrites_previous_entry(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    old = cache.put("k1", _write_temp(cache, b"old"), "md5:1", suffix=".csv")

    entry = cache.put("k1", _write_temp(cache, b"newer"), "md5:2", suffix=".tsv")

    assert entry.size_bytes == 5
    assert not old.local_path.exists()
    assert [e.validator for e in cache.entries()] == ["md5:2"]


def test_failed_index_write_keeps_previous_entry_intact(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Refreshing a key with the same suffix never leaves the old record over new bytes."""
    cache = ContentCache(tmp_path / "cache")
    old = cache.put("k1", _write_temp(cache, b"version-a"), 'etag:"a"', suffix=".tsv.gz")

    def broken_index(entries: dict) -> None:
        raise CacheWriteError("disk full")

    monkeypatch.setattr(cache, "_write_index", broken_index)
    with pytest.raises(CacheWriteError, match="disk full"):
        cache.put("k1", _write_temp(cache, b"version-b"), 'etag:"b"', suffix=".tsv.gz")
    monkeypatch.undo()

    found = cache.lookup("k1")
    assert found is not None
    assert found.validator == 'etag:"a"'
    assert found.status is EntryStatus.COMPLETE
    assert found.local_path == old.local_path
    assert found.local_path.read_bytes() == b"version-a"
    assert [p.name for p in (tmp_path / "cache").iterdir() if p.name.startswith("k1-")] == [old.local_path.name]


def test_put_missing_temp_file_raises(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")

    with pytest.raises(CacheWriteError):
        cache.put("k1", tmp_path / "nowhere.part", "md5:1")
    assert cache.lookup("k1") is None


def test_truncated_file_is_reported_partial(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    entry = cache.put("k1", _write_temp(cache, b"0123456789"), "md5:1")
    entry.local_path.write_bytes(b"01234")

    found = cache.lookup("k1")

    assert found is not None
    assert found.status is EntryStatus.PARTIAL
    assert not cache.is_valid(found)


def test_deleted_file_is_reported_partial(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    entry = cache.put("k1", _write_temp(cache, b"0123456789"), "md5:1")
    entry.local_path.unlink()

    found = cache.lookup("k1")
    assert found is not None and found.status is EntryStatus.PARTIAL


def test_corrupt_index_raises(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    cache.put("k1", _write_temp(cache, b"x"), None)
    cache.index_path.write_text("{not json")

    with pytest.raises(CacheWriteError, match="corrupt"):
        cache.lookup("k1")


def test_index_survives_new_instance(tmp_path: Path) -> None:
    writer = ContentCache(tmp_path / "cache")
    entry = writer.put("k1", _write_temp(writer, b"abc"), 'etag:"x"')

    raw = json.loads((tmp_path / "cache" / INDEX_FILENAME).read_text())
    assert raw["entries"]["k1"]["filename"] == entry.local_path.name
    assert ContentCache(tmp_path / "cache").lookup("k1") is not None


# ---------------------------------------------------------------------------
# Validity and staleness
# ---------------------------------------------------------------------------


def test_is_valid_without_remote_validator(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    entry = cache.put("k1", _write_temp(cache, b"abc"), "md5:1")

    assert cache.is_valid(entry)
    assert cache.is_valid(entry, "md5:1")


def test_validator_mismatch_marks_entry_stale(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    entry = cache.put("k1", _write_temp(cache, b"abc"), "md5:1")

    assert not cache.is_valid(entry, "md5:2")

    found = cache.lookup("k1")
    assert found is not None
    assert found.status is EntryStatus.STALE
    assert not cache.is_valid(found)


def test_mark_stale_unknown_key_is_noop(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    cache.mark_stale("absent")
    assert cache.entries() == []


# ---------------------------------------------------------------------------
# Eviction
# ---------------------------------------------------------------------------


def test_clear_removes_entry_and_file(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    entry = cache.put("k1", _write_temp(cache, b"abc"), "md5:1", suffix=".tsv.gz")

    assert cache.clear("k1") is True
    assert not entry.local_path.exists()
    assert cache.lookup("k1") is None
    assert cache.clear("k1") is False


def test_clear_all(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    for key in ("a", "b", "c"):
        cache.put(key, _write_temp(cache, key.encode()), None)

    assert cache.clear_all() == 3
    assert cache.entries() == []
    assert not any(p for p in (tmp_path / "cache").iterdir() if p.name[:2] in {"a-", "b-", "c-"})


def test_entry_dict_round_trip_keeps_relative_filename(tmp_path: Path) -> None:
    cache = ContentCache(tmp_path / "cache")
    entry = cache.put("k1", _write_temp(cache, b"abc"), "md5:1", suffix=".parquet")

    moved = CacheEntry.from_dict(tmp_path / "elsewhere", entry.to_dict())

    assert moved.local_path == tmp_path / "elsewhere" / entry.local_path.name
    assert moved.fetched_at == entry.fetched_at
