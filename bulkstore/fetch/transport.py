# bulkstore/fetch/transport.py
#
# Network collaborator: the only module that talks HTTP.
#
# Design decisions:
#   - httpx streaming with 8 MB chunks so multi-GB payloads never sit in memory.
#   - Every httpx failure (connection, timeout, non-2xx status) is converted to
#     NetworkError at this boundary, including failures raised while the caller
#     is still consuming the stream.
#   - A validator passed to open_stream becomes an If-None-Match header. A 304
#     answer yields a StreamResponse with not_modified=True and no body.
#   - The httpx.Client is created lazily and released by close(); the Session
#     owns that lifetime.
from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from bulkstore.errors import CatalogError, NetworkError

CHUNK_SIZE = 8 * 1024 * 1024


@dataclass
class StreamResponse:
    """An open download stream."""

    url: str
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    chunks: Iterator[bytes] = field(default_factory=lambda: iter(()))
    not_modified: bool = False

    @property
    def content_length(self) -> int | None:
        """Declared body size, or None when absent or the body is re-encoded."""
        if self.headers.get("content-encoding", "identity") != "identity":
            return None
        raw = self.headers.get("content-length")
        if raw is None or not raw.isdigit():
            return None
        return int(raw)

    @property
    def etag(self) -> str | None:
        """Strong ETag of the response, or None. Weak (W/) tags are ignored."""
        raw = self.headers.get("etag")
        if not raw or raw.startswith("W/"):
            return None
        return raw

    def iter_bytes(self) -> Iterator[bytes]:
        return self.chunks


class Transport(Protocol):
    """What the Fetch Executor and the catalog need from the network."""

    def open_stream(self, url: str, validator: str | None = None) -> Any: ...

    def get_json(self, url: str) -> Any: ...


class HttpxTransport:
    """Transport backed by an httpx.Client."""

    def __init__(self, timeout: int = 300, client: httpx.Client | None = None) -> None:
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, follow_redirects=True)
        return self._client

    @contextmanager
    def open_stream(self, url: str, validator: str | None = None) -> Iterator[StreamResponse]:
        """Open a streaming GET to *url*.

        Raises:
            NetworkError: on connection failure, timeout or non-2xx status.
        """
        headers = {"If-None-Match": validator} if validator else {}
        try:
            with self.client.stream("GET", url, headers=headers) as response:
                if response.status_code == 304:
                    yield StreamResponse(
                        url=url,
                        status_code=304,
                        headers={k.lower(): v for k, v in response.headers.items()},
                        not_modified=True,
                    )
                    return
                response.raise_for_status()
                yield StreamResponse(
                    url=url,
                    status_code=response.status_code,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    chunks=response.iter_bytes(chunk_size=CHUNK_SIZE),
                )
        except httpx.HTTPStatusError as exc:
            raise NetworkError(url, f"HTTP {exc.response.status_code}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(url, str(exc) or type(exc).__name__) from exc

    def get_json(self, url: str) -> Any:
        """GET *url* and decode its JSON body.

        Raises:
            NetworkError: on transport failure or non-2xx status.
            CatalogError: if the body is not valid JSON.
        """
        try:
            response = self.client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NetworkError(url, f"HTTP {exc.response.status_code}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(url, str(exc) or type(exc).__name__) from exc
        try:
            return response.json()
        except ValueError as exc:
            raise CatalogError(f"{url}: response is not valid JSON") from exc

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
