# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.orchestrator.workers",
#   "purpose": "Per-asset upload execution with rate limiting and retries",
#   "sections": [
#     {"id": "link-metadata", "name": "link_metadata", "anchor": "#function-link-metadata", "kind": "function"},
#     {"id": "uploadworker", "name": "UploadWorker", "anchor": "#class-uploadworker", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Per-asset upload execution.

This module provides the UploadWorker class that:
- Uploads one asset's media bytes, then its metadata document
- Rewrites the metadata's media reference to the published media URI
- Takes one rate limiter token per storage call
- Retries transient storage failures through the injected RetryPolicy
- Converts every failure into an UploadResult instead of raising

**Usage:**

    worker = UploadWorker(storage, retry_policy=RetryPolicy(), rate_limiter=limiter)
    result = worker.upload_asset(catalog.asset(3), catalog.content_hash(3))
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, Mapping, Optional

from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.catalog import MEDIA_REFERENCE_FIELD, Asset
from AssetLedger.Deploy.errors import (
    CatalogError,
    StorageError,
    failure_from_exception,
    is_transient,
)
from AssetLedger.Deploy.orchestrator.models import UploadResult, UploadStatus
from AssetLedger.Deploy.ratelimit import UploadRateLimiter
from AssetLedger.Deploy.retries import RetryPolicy, build_retrying
from AssetLedger.Deploy.storage import StorageBackend, guess_content_type

__all__ = ["UploadWorker", "link_metadata"]

logger = logging.getLogger(__name__)

METADATA_CONTENT_TYPE = "application/json"


def link_metadata(metadata: Mapping[str, Any], media_name: str, media_uri: str) -> Dict[str, Any]:
    """Return a copy of ``metadata`` pointing at the uploaded media.

    ``image`` and every ``properties.files[].uri`` equal to ``media_name``
    are replaced by ``media_uri``. The input mapping is not modified.
    """

    linked: Dict[str, Any] = copy.deepcopy(dict(metadata))
    linked[MEDIA_REFERENCE_FIELD] = media_uri

    properties = linked.get("properties")
    if isinstance(properties, dict):
        files = properties.get("files")
        if isinstance(files, list):
            for entry in files:
                if isinstance(entry, dict) and entry.get("uri") == media_name:
                    entry["uri"] = media_uri
    return linked


class UploadWorker:
    """Uploads a single asset at a time.

    The worker holds no per-asset state between calls, so one instance is
    shared by every thread of the pool.

    Attributes:
        storage: Backend receiving the bytes
        retry_policy: Bounds for retrying transient upload failures
        rate_limiter: Optional shared limiter; one token per storage call
        cancel: Optional run-wide cancellation token
    """

    def __init__(
        self,
        storage: StorageBackend,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[UploadRateLimiter] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.storage = storage
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter
        self.cancel = cancel

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_cancelled()

    def _attempt(self, data: bytes, content_type: str) -> str:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()
        return self.storage.upload(data, content_type)

    def _upload(self, data: bytes, content_type: str, *, label: str) -> str:
        retrying = build_retrying(
            self.retry_policy, retry_on=is_transient, cancel=self.cancel, operation="upload"
        )
        uri = retrying(self._attempt, data, content_type)
        logger.debug("Uploaded %s (%d bytes) -> %s", label, len(data), uri)
        return uri

    def upload_asset(self, asset: Asset, content_hash: str) -> UploadResult:
        """Upload media then metadata for ``asset``.

        Returns:
            An :class:`UploadResult`; failures are reported, never raised.
        """
        if self._cancelled():
            return UploadResult.interrupted(asset.index)

        stage = "upload-media"
        try:
            try:
                media_bytes = asset.media_path.read_bytes()
            except OSError as exc:
                raise CatalogError(f"Cannot read media for asset {asset.index}: {exc}") from exc
            media_uri = self._upload(
                media_bytes,
                guess_content_type(asset.media_path),
                label=f"asset {asset.index} media",
            )

            # The metadata document depends on the media URI, so it is built here.
            # Once the media is stored the metadata upload runs even after a cancel.
            stage = "upload-metadata"
            document = link_metadata(asset.metadata, asset.media_reference, media_uri)
            payload = json.dumps(document, ensure_ascii=False, sort_keys=True).encode("utf-8")
            metadata_uri = self._upload(
                payload, METADATA_CONTENT_TYPE, label=f"asset {asset.index} metadata"
            )
        except (StorageError, CatalogError) as exc:
            if is_transient(exc) and self._cancelled():
                logger.info("Asset %d interrupted during %s", asset.index, stage)
                return UploadResult.interrupted(asset.index)
            logger.warning("Asset %d failed during %s: %s", asset.index, stage, exc)
            return UploadResult.failed(failure_from_exception(asset.index, stage, exc))

        return UploadResult(
            index=asset.index,
            status=UploadStatus.UPLOADED,
            media_uri=media_uri,
            metadata_uri=metadata_uri,
            content_hash=content_hash,
            name=asset.name,
        )
