# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.errors",
#   "purpose": "Error taxonomy shared by the catalog, cache, uploader, ledger writer and reconciler",
#   "sections": [
#     {"id": "deployerror", "name": "DeployError", "anchor": "class-deployerror", "kind": "class"},
#     {"id": "storageerror", "name": "StorageError", "anchor": "class-storageerror", "kind": "class"},
#     {"id": "ledgererror", "name": "LedgerError", "anchor": "class-ledgererror", "kind": "class"},
#     {"id": "assetfailure", "name": "AssetFailure", "anchor": "class-assetfailure", "kind": "class"},
#     {"id": "failure-from-exception", "name": "failure_from_exception", "anchor": "function-failure-from-exception", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Error taxonomy for the deployment pipeline.

Responsibilities
----------------
- Define the exception hierarchy raised by the catalog loader, the deployment
  cache, the storage and ledger adapters, and the reconciler.
- Tag every error with a short ``kind`` token so reports and logs can group
  failures without ``isinstance`` ladders.
- Provide :class:`AssetFailure`, the record used to report a failed asset
  without raising, so one bad asset never aborts a batch of thousands.

Design Notes
------------
- Transient errors are the only ones retried. ``retry_after`` on
  :class:`TransientStorageError` and :class:`TransientLedgerError` is honoured
  by the wait strategy in :mod:`AssetLedger.Deploy.retries`.
- Cross-cutting failures (cache I/O, reconciliation, fatal ledger errors) are
  raised and abort the run; per-asset failures are collected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

__all__ = (
    "DeployError",
    "CatalogError",
    "CacheError",
    "CacheCorrupt",
    "StorageError",
    "TransientStorageError",
    "RejectedStorageError",
    "RateLimitExceeded",
    "LedgerError",
    "TransientLedgerError",
    "LedgerConflictError",
    "FatalLedgerError",
    "ReconcileError",
    "AssetFailure",
    "failure_from_exception",
    "is_transient",
)


class DeployError(Exception):
    """Base class for every error raised by the deployment pipeline."""

    kind = "error"


class CatalogError(DeployError):
    """Raised when the local asset collection is malformed."""

    kind = "catalog"


class CacheError(DeployError):
    """Raised when the deployment cache cannot be read, written or trusted."""

    kind = "cache"


class CacheCorrupt(CacheError):
    """Raised when a persisted cache file exists but cannot be parsed.

    The pipeline never discards a cache on its own; the operator repairs or
    removes the file.
    """

    kind = "cache-corrupt"

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cache file '{path}' is corrupt: {reason}")
        self.path = path
        self.reason = reason


class StorageError(DeployError):
    """Raised by storage backends when an upload fails."""

    kind = "storage"


class TransientStorageError(StorageError):
    """Upload failed for a reason that may clear on retry (timeout, 429, 5xx)."""

    kind = "transient"

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class RejectedStorageError(StorageError):
    """Upload was refused (bad payload, authentication); never retried."""

    kind = "rejected"

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimitExceeded(TransientStorageError):
    """Raised when the local upload limiter cannot grant capacity in time."""

    kind = "rate-limited"


class LedgerError(DeployError):
    """Raised by ledger clients when a read or a submission fails."""

    kind = "ledger"


class TransientLedgerError(LedgerError):
    """Network or congestion failure; the call may be retried."""

    kind = "transient"

    def __init__(self, message: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class LedgerConflictError(LedgerError):
    """Remote state disagrees with the submission (slot filled, count mismatch)."""

    kind = "conflict"


class FatalLedgerError(LedgerError):
    """Unrecoverable ledger failure; aborts the run."""

    kind = "fatal"


class ReconcileError(DeployError):
    """Raised when the remote ledger cannot be read during reconciliation."""

    kind = "reconcile"


def is_transient(exc: BaseException) -> bool:
    """Return True when ``exc`` is worth another attempt."""

    return isinstance(exc, (TransientStorageError, TransientLedgerError))


@dataclass(frozen=True)
class AssetFailure:
    """A failed asset, reported instead of raised."""

    index: int
    stage: str
    kind: str
    cause: str

    def to_dict(self) -> dict:
        return {"index": self.index, "stage": self.stage, "kind": self.kind, "cause": self.cause}


def failure_from_exception(index: int, stage: str, exc: BaseException) -> AssetFailure:
    """Build an :class:`AssetFailure` from an exception raised for ``index``."""

    kind = getattr(exc, "kind", None) or type(exc).__name__
    return AssetFailure(index=index, stage=stage, kind=str(kind), cause=str(exc) or type(exc).__name__)
