# tests/fetch/test_http_transport.py
#
# HttpxTransport against httpx.MockTransport: streaming, conditional requests
# and error conversion.
from __future__ import annotations

import httpx
import pytest

from bulkstore.errors import CatalogError, NetworkError
from bulkstore.fetch.transport import HttpxTransport, StreamResponse

URL = "https://zenodo.org/api/records/1/files/scores.tsv/content"
BODY = b"gene\tscore\nBRCA1\t0.91\n"


def _transport(handler) -> HttpxTransport:
    return HttpxTransport(client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_open_stream_yields_body_and_headers() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=BODY, headers={"ETag": '"abc"'})

    with _transport(handler).open_stream(URL) as response:
        body = b"".join(response.iter_bytes())
        assert response.status_code == 200
        assert response.etag == '"abc"'
        assert response.content_length == len(BODY)

    assert body == BODY


def test_validator_becomes_if_none_match() -> None:
    seen: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("If-None-Match"))
        return httpx.Response(304)

    with _transport(handler).open_stream(URL, '"abc"') as response:
        assert response.not_modified
        assert list(response.iter_bytes()) == []

    assert seen == ['"abc"']


def test_http_error_status_becomes_network_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    with pytest.raises(NetworkError, match="HTTP 503") as excinfo:
        with _transport(handler).open_stream(URL):
            pass
    assert excinfo.value.url == URL


def test_connection_error_becomes_network_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkError, match="connection refused"):
        with _transport(handler).open_stream(URL):
            pass


def test_get_json() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"files": []})

    assert _transport(handler).get_json(URL) == {"files": []}


def test_get_json_rejects_invalid_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>")

    with pytest.raises(CatalogError):
        _transport(handler).get_json(URL)


def test_weak_etag_and_encoded_length_are_ignored() -> None:
    response = StreamResponse(
        url=URL,
        status_code=200,
        headers={"etag": 'W/"abc"', "content-length": "10", "content-encoding": "gzip"},
    )

    assert response.etag is None
    assert response.content_length is None


def test_close_keeps_injected_client_open() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    transport = HttpxTransport(client=client)

    transport.close()

    assert not client.is_closed
    assert transport.client is client
    client.close()
