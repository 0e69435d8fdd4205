# tests/conftest.py
#
# Shared fixtures: an in-process fake transport with call counters, a store
# configuration rooted in tmp_path, and AlphaMissense-shaped payloads.
#
# No test touches the network.
from __future__ import annotations

import gzip
import hashlib
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import pytest

from bulkstore.catalog.models import ResourceDescriptor, ResourceFormat
from bulkstore.config import StoreConfig
from bulkstore.errors import NetworkError
from bulkstore.fetch.transport import StreamResponse

SAMPLE_TSV = (
    "# Copyright 2023 DeepMind Technologies Limited\n"
    "#\n"
    "# Licensed under CC BY-NC-SA 4.0 license\n"
    "#CHROM\tPOS\tREF\tALT\tgenome\tuniprot_id\tam_pathogenicity\tam_class\n"
    "chr1\t69094\tG\tT\thg38\tQ8NH21\t0.2937\tlikely_benign\n"
    "chr1\t69094\tG\tC\thg38\tQ8NH21\t0.2937\tlikely_benign\n"
    "chr1\t69095\tT\tC\thg38\tQ8NH21\t0.9931\tlikely_pathogenic\n"
)


def gz(text: str) -> bytes:
    return gzip.compress(text.encode("utf-8"))


def md5_of(payload: bytes) -> str:
    return "md5:" + hashlib.md5(payload, usedforsecurity=False).hexdigest()


class FakeTransport:
    """Transport double serving in-memory payloads.

    Attributes:
        files:          url -> body.
        listings:       url -> decoded JSON for get_json.
        fail_times:     url -> number of NetworkErrors to raise before serving.
        always_fail:    urls that raise NetworkError on every call.
        interrupt_at:   url -> byte offset after which the stream breaks.
        declared_size:  url -> Content-Length to announce instead of the real one.
        etags:          url -> ETag header value.
        stream_calls:   urls in the order open_stream was called.
        json_calls:     urls in the order get_json was called.
    """

    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self.files: dict[str, bytes] = dict(files or {})
        self.listings: dict[str, Any] = {}
        self.fail_times: dict[str, int] = defaultdict(int)
        self.always_fail: set[str] = set()
        self.interrupt_at: dict[str, int] = {}
        self.declared_size: dict[str, int] = {}
        self.etags: dict[str, str] = {}
        self.stream_calls: list[str] = []
        self.validators_sent: list[str | None] = []
        self.json_calls: list[str] = []

    @contextmanager
    def open_stream(self, url: str, validator: str | None = None) -> Iterator[StreamResponse]:
        self.stream_calls.append(url)
        self.validators_sent.append(validator)
        if url in self.always_fail:
            raise NetworkError(url, "connection refused")
        if self.fail_times[url] > 0:
            self.fail_times[url] -= 1
            raise NetworkError(url, "connection reset")
        if url not in self.files:
            raise NetworkError(url, "HTTP 404")

        body = self.files[url]
        etag = self.etags.get(url)
        headers = {"content-length": str(self.declared_size.get(url, len(body)))}
        if etag:
            headers["etag"] = etag
        if validator is not None and validator == etag:
            yield StreamResponse(url=url, status_code=304, headers=headers, not_modified=True)
            return
        yield StreamResponse(url=url, status_code=200, headers=headers, chunks=self._chunks(url, body))

    def _chunks(self, url: str, body: bytes) -> Iterator[bytes]:
        cut = self.interrupt_at.get(url)
        step = 7
        for start in range(0, len(body), step):
            if cut is not None and start >= cut:
                raise NetworkError(url, "stream interrupted")
            yield body[start : start + step]

    def get_json(self, url: str) -> Any:
        self.json_calls.append(url)
        if url in self.always_fail:
            raise NetworkError(url, "connection refused")
        if url not in self.listings:
            raise NetworkError(url, "HTTP 404")
        return self.listings[url]


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def config(tmp_path: Path) -> StoreConfig:
    return StoreConfig(
        data_dir=tmp_path,
        cache_dir=tmp_path / "cache",
        db_path=tmp_path / "store.duckdb",
        record_id=None,
        download_retries=3,
    )


@pytest.fixture()
def hg38_payload() -> bytes:
    return gz(SAMPLE_TSV)


@pytest.fixture()
def hg38_descriptor(hg38_payload: bytes) -> ResourceDescriptor:
    return ResourceDescriptor(
        logical_id="hg38_v1",
        urls=("https://data.example.org/AlphaMissense_hg38.tsv.gz",),
        expected_format=ResourceFormat.TABULAR,
        validator=md5_of(hg38_payload),
        size_bytes=len(hg38_payload),
    )
