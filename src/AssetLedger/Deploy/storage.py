# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.storage",
#   "purpose": "Storage backend contract and the HTTPX upload adapter",
#   "sections": [
#     {"id": "storagebackend", "name": "StorageBackend", "anchor": "class-storagebackend", "kind": "class"},
#     {"id": "parse-retry-after", "name": "parse_retry_after", "anchor": "function-parse-retry-after", "kind": "function"},
#     {"id": "httpstoragebackend", "name": "HttpStorageBackend", "anchor": "class-httpstoragebackend", "kind": "class"},
#     {"id": "guess-content-type", "name": "guess_content_type", "anchor": "function-guess-content-type", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Content storage backends.

The pipeline only needs one capability from storage::

    upload(data: bytes, content_type: str) -> str   # the published URI

and two failure shapes, :class:`TransientStorageError` (retried with backoff)
and :class:`RejectedStorageError` (fatal for the asset). Any object with a
matching ``upload`` method satisfies :class:`StorageBackend`.

:class:`HttpStorageBackend` talks to an upload gateway over HTTPX:
``POST {endpoint}/upload`` with the raw bytes, answered by ``{"uri": ...}``.
"""

from __future__ import annotations

import email.utils
import logging
import mimetypes
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import httpx

from AssetLedger.Deploy.errors import RejectedStorageError, TransientStorageError

__all__ = [
    "StorageBackend",
    "HttpStorageBackend",
    "guess_content_type",
    "parse_retry_after",
    "TRANSIENT_STATUSES",
]

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


@runtime_checkable
class StorageBackend(Protocol):
    """Anything that can publish bytes and return their URI."""

    def upload(self, data: bytes, content_type: str) -> str:
        ...


def guess_content_type(path: Path) -> str:
    """Return the MIME type for ``path``, defaulting to octet-stream."""

    content_type, _ = mimetypes.guess_type(path.name)
    return content_type or "application/octet-stream"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a ``Retry-After`` header given as seconds or an HTTP-date."""

    if not value:
        return None
    try:
        return max(float(int(value)), 0.0)
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max((when - datetime.now(when.tzinfo)).total_seconds(), 0.0)


class HttpStorageBackend:
    """Upload gateway client.

    Attributes:
        endpoint: Base URL of the gateway (``/upload`` is appended).
        api_key: Optional bearer token.
        timeout_s: Per-request timeout.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        api_key: Optional[str] = None,
        timeout_s: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_s))

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpStorageBackend":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _headers(self, content_type: str) -> dict:
        headers = {"Content-Type": content_type}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def upload(self, data: bytes, content_type: str) -> str:
        """Publish ``data`` and return its URI.

        Raises:
            TransientStorageError: timeouts, connection failures, 408/429/5xx.
            RejectedStorageError: authentication failures, other 4xx, or a
                reply without a URI.
        """
        url = f"{self.endpoint}/upload"
        try:
            response = self._client.post(url, content=data, headers=self._headers(content_type))
        except httpx.TimeoutException as exc:
            raise TransientStorageError(f"Upload to {url} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientStorageError(f"Upload to {url} failed: {exc}") from exc

        status = response.status_code
        if status in TRANSIENT_STATUSES:
            raise TransientStorageError(
                f"Storage returned HTTP {status}",
                status=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status in (401, 403):
            raise RejectedStorageError(
                f"Storage rejected credentials (HTTP {status})", status=status
            )
        if status >= 400:
            raise RejectedStorageError(
                f"Storage rejected upload (HTTP {status}): {response.text[:200]}", status=status
            )

        try:
            uri = response.json().get("uri")
        except (ValueError, AttributeError) as exc:
            raise RejectedStorageError(f"Storage reply is not a JSON object: {exc}") from exc
        if not isinstance(uri, str) or not uri:
            raise RejectedStorageError("Storage reply did not include a 'uri'")

        logger.debug("Uploaded %d bytes (%s) -> %s", len(data), content_type, uri)
        return uri
