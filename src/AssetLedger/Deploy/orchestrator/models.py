# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.orchestrator.models",
#   "purpose": "Upload outcome enums and result types passed from workers to the aggregator",
#   "sections": [
#     {"id": "uploadstatus", "name": "UploadStatus", "anchor": "#class-uploadstatus", "kind": "enum"},
#     {"id": "uploadresult", "name": "UploadResult", "anchor": "#class-uploadresult", "kind": "dataclass"},
#     {"id": "uploadreport", "name": "UploadReport", "anchor": "#class-uploadreport", "kind": "dataclass"}
#   ]
# }
# === /NAVMAP ===

"""Upload result types.

Workers never touch the cache. Each processed asset produces exactly one
:class:`UploadResult` which travels over the results queue to the aggregator:

    pending index
      ↓ (worker: media upload → metadata upload)
      ├→ UPLOADED     both URIs known, recorded and persisted by the aggregator
      ├→ FAILED       rejected, retries exhausted, or unreadable local file
      └→ INTERRUPTED  the run was cancelled before the asset completed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from AssetLedger.Deploy.errors import AssetFailure


class UploadStatus(str, Enum):
    """Terminal state of one asset within an upload pass."""

    UPLOADED = "uploaded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class UploadResult:
    """Outcome of uploading one asset.

    Attributes:
        index: Catalog index of the asset
        status: Terminal :class:`UploadStatus`
        media_uri: Published media location (set when uploaded)
        metadata_uri: Published metadata location (set when uploaded)
        content_hash: Catalog digest the upload was made from
        name: Asset name, copied into the cache for readability
        failure: Failure record when ``status`` is FAILED
    """

    index: int
    status: UploadStatus
    media_uri: Optional[str] = None
    metadata_uri: Optional[str] = None
    content_hash: Optional[str] = None
    name: Optional[str] = None
    failure: Optional[AssetFailure] = None

    @classmethod
    def failed(cls, failure: AssetFailure) -> "UploadResult":
        return cls(index=failure.index, status=UploadStatus.FAILED, failure=failure)

    @classmethod
    def interrupted(cls, index: int) -> "UploadResult":
        return cls(index=index, status=UploadStatus.INTERRUPTED)


@dataclass
class UploadReport:
    """Aggregate of one upload pass."""

    requested: int = 0
    skipped: int = 0
    uploaded: List[int] = field(default_factory=list)
    failures: List[AssetFailure] = field(default_factory=list)
    interrupted: List[int] = field(default_factory=list)

    @property
    def failed(self) -> List[int]:
        return sorted(failure.index for failure in self.failures)

    @property
    def was_interrupted(self) -> bool:
        return bool(self.interrupted)

    @property
    def complete(self) -> bool:
        return not self.failures and not self.interrupted
