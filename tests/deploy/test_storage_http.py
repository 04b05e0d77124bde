"""HTTP storage adapter: status mapping, Retry-After, auth header."""

from __future__ import annotations

import httpx
import pytest

from AssetLedger.Deploy.errors import RejectedStorageError, TransientStorageError
from AssetLedger.Deploy.storage import HttpStorageBackend, guess_content_type, parse_retry_after


def _backend(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpStorageBackend("https://gateway.test/", client=client, **kwargs)


def test_successful_upload_returns_uri():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["content_type"] = request.headers["Content-Type"]
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = request.content
        return httpx.Response(200, json={"uri": "ar://abc"})

    backend = _backend(handler, api_key="s3cret")

    assert backend.upload(b"bytes", "image/png") == "ar://abc"
    assert seen == {
        "url": "https://gateway.test/upload",
        "content_type": "image/png",
        "auth": "Bearer s3cret",
        "body": b"bytes",
    }


@pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
def test_transient_statuses(status):
    backend = _backend(lambda request: httpx.Response(status, headers={"Retry-After": "7"}))

    with pytest.raises(TransientStorageError) as excinfo:
        backend.upload(b"x", "image/png")

    assert excinfo.value.status == status
    assert excinfo.value.retry_after == 7.0


@pytest.mark.parametrize("status", [400, 401, 403, 404, 413])
def test_rejected_statuses(status):
    backend = _backend(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(RejectedStorageError) as excinfo:
        backend.upload(b"x", "image/png")

    assert excinfo.value.status == status


def test_connection_failure_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientStorageError):
        _backend(handler).upload(b"x", "image/png")


def test_timeout_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(TransientStorageError, match="timed out"):
        _backend(handler).upload(b"x", "image/png")


@pytest.mark.parametrize(
    "response",
    [httpx.Response(200, text="not json"), httpx.Response(200, json={"id": 1}), httpx.Response(200, json=[1])],
)
def test_reply_without_uri_is_rejected(response):
    with pytest.raises(RejectedStorageError):
        _backend(lambda request: response).upload(b"x", "image/png")


def test_parse_retry_after():
    assert parse_retry_after(None) is None
    assert parse_retry_after("3") == 3.0
    assert parse_retry_after("garbage") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


def test_guess_content_type(tmp_path):
    assert guess_content_type(tmp_path / "a.png") == "image/png"
    assert guess_content_type(tmp_path / "a.unknownext") == "application/octet-stream"
