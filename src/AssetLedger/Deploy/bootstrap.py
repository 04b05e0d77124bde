# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.bootstrap",
#   "purpose": "Wire configuration, remote clients and pipeline components for a run",
#   "sections": [
#     {"id": "build-storage", "name": "build_storage", "anchor": "#function-build-storage", "kind": "function"},
#     {"id": "build-ledger-client", "name": "build_ledger_client", "anchor": "#function-build-ledger-client", "kind": "function"},
#     {"id": "build-driver", "name": "build_driver", "anchor": "#function-build-driver", "kind": "function"},
#     {"id": "run-deploy", "name": "run_deploy", "anchor": "#function-run-deploy", "kind": "function"},
#     {"id": "run-verify", "name": "run_verify", "anchor": "#function-run-verify", "kind": "function"},
#     {"id": "collect-status", "name": "collect_status", "anchor": "#function-collect-status", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Bootstrap for deployment runs.

**Purpose**
-----------
Coordinates a run from a validated :class:`DeployConfig`:
1. Load and validate the asset catalog
2. Take ownership of the cache (run lock) and load it
3. Build the storage and ledger clients (unless injected)
4. Build the rate limiter, upload worker pool, reconciler and ledger writer
5. Hand everything to :class:`PipelineDriver`

**Design**
----------
- Remote clients may be injected (tests, alternative backends). Clients built
  here are closed when the run ends; injected ones are left to their owner.
- One cancellation token is shared by every component so an interrupt stops
  new uploads, retries and ledger submissions together.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from AssetLedger.Deploy.cache import DeploymentCache
from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.catalog import AssetCatalog, load_catalog
from AssetLedger.Deploy.config.models import DeployConfig
from AssetLedger.Deploy.errors import DeployError
from AssetLedger.Deploy.ledger import JsonRpcLedgerClient, LedgerClient
from AssetLedger.Deploy.ledger_writer import LedgerWriter
from AssetLedger.Deploy.locks import run_lock
from AssetLedger.Deploy.orchestrator.scheduler import UploadOrchestrator
from AssetLedger.Deploy.orchestrator.workers import UploadWorker
from AssetLedger.Deploy.pipeline import PipelineDriver, RunReport
from AssetLedger.Deploy.ratelimit import UploadRateLimiter
from AssetLedger.Deploy.reconciler import Reconciler
from AssetLedger.Deploy.retries import RetryPolicy
from AssetLedger.Deploy.storage import HttpStorageBackend, StorageBackend

__all__ = [
    "build_storage",
    "build_ledger_client",
    "build_driver",
    "run_deploy",
    "run_verify",
    "collect_status",
    "StatusSnapshot",
]

logger = logging.getLogger(__name__)


def build_storage(config: DeployConfig) -> HttpStorageBackend:
    return HttpStorageBackend(
        config.storage.endpoint,
        api_key=config.storage.api_key,
        timeout_s=config.storage.timeout_s,
    )


def build_ledger_client(config: DeployConfig) -> JsonRpcLedgerClient:
    ledger_cfg = config.ledger
    return JsonRpcLedgerClient(
        ledger_cfg.rpc_url,
        api_key=ledger_cfg.api_key,
        timeout_s=ledger_cfg.timeout_s,
        confirm_timeout_s=ledger_cfg.confirm_timeout_s,
        poll_interval_s=ledger_cfg.poll_interval_s,
    )


def build_driver(
    config: DeployConfig,
    catalog: AssetCatalog,
    cache: DeploymentCache,
    *,
    ledger: LedgerClient,
    storage: Optional[StorageBackend] = None,
    cancel: Optional[CancellationToken] = None,
    upload_retry: Optional[RetryPolicy] = None,
    ledger_retry: Optional[RetryPolicy] = None,
) -> PipelineDriver:
    """Assemble a :class:`PipelineDriver`.

    Without ``storage`` the driver can only verify.
    """
    cancel = cancel or CancellationToken()
    ledger_policy = ledger_retry or config.ledger_retry.to_policy()
    reconciler = Reconciler(ledger, retry_policy=ledger_policy, cancel=cancel)

    orchestrator = None
    writer = None
    if storage is not None:
        limiter = UploadRateLimiter(
            config.upload.rate_limits,
            max_wait_s=config.upload.rate_limit_max_wait_s,
            cancel=cancel,
        )
        worker = UploadWorker(
            storage,
            retry_policy=upload_retry or config.upload.retry.to_policy(),
            rate_limiter=limiter,
            cancel=cancel,
        )
        orchestrator = UploadOrchestrator(
            catalog, cache, worker, workers=config.upload.workers, cancel=cancel
        )
        writer = LedgerWriter(
            ledger,
            cache,
            capacity=config.ledger.batch_capacity,
            retry_policy=ledger_policy,
            reconciler=reconciler,
            catalog=catalog,
            max_uri_length=config.ledger.max_uri_length,
            cancel=cancel,
        )

    return PipelineDriver(
        catalog,
        cache,
        ledger=ledger,
        reconciler=reconciler,
        orchestrator=orchestrator,
        writer=writer,
        retry_policy=ledger_policy,
        cancel=cancel,
        expected_items=config.expected_items,
        configured_ledger_id=config.ledger.ledger_id,
    )


@contextlib.contextmanager
def _owned(client: Any, injected: bool) -> Iterator[Any]:
    try:
        yield client
    finally:
        if not injected and hasattr(client, "close"):
            client.close()


def run_deploy(
    config: DeployConfig,
    *,
    cancel: Optional[CancellationToken] = None,
    storage: Optional[StorageBackend] = None,
    ledger: Optional[LedgerClient] = None,
    upload_retry: Optional[RetryPolicy] = None,
    ledger_retry: Optional[RetryPolicy] = None,
) -> RunReport:
    """Run a full deployment described by ``config``.

    Raises:
        CatalogError: malformed catalog or item-count mismatch.
        CacheError: cache in use by another process, corrupt, or bound to a
            different ledger.
    """
    catalog = load_catalog(config.assets_dir)
    with run_lock(config.cache_path):
        cache = DeploymentCache.load(config.cache_path)
        with _owned(storage or build_storage(config), storage is not None) as storage_client, _owned(
            ledger or build_ledger_client(config), ledger is not None
        ) as ledger_client:
            driver = build_driver(
                config,
                catalog,
                cache,
                ledger=ledger_client,
                storage=storage_client,
                cancel=cancel,
                upload_retry=upload_retry,
                ledger_retry=ledger_retry,
            )
            return driver.run()


def run_verify(
    config: DeployConfig,
    *,
    repair: bool = False,
    deep: bool = True,
    cancel: Optional[CancellationToken] = None,
    ledger: Optional[LedgerClient] = None,
    ledger_retry: Optional[RetryPolicy] = None,
) -> RunReport:
    """Reconcile the cache against the ledger; repair the cache only if asked."""

    catalog = load_catalog(config.assets_dir)
    with run_lock(config.cache_path):
        cache = DeploymentCache.load(config.cache_path)
        with _owned(ledger or build_ledger_client(config), ledger is not None) as ledger_client:
            driver = build_driver(
                config, catalog, cache, ledger=ledger_client, cancel=cancel, ledger_retry=ledger_retry
            )
            return driver.verify(repair=repair, deep=deep)


@dataclass
class StatusSnapshot:
    """Read-only view of deployment progress."""

    cache_path: str
    ledger_id: Optional[str]
    last_reconciled: Optional[datetime]
    catalog_size: Optional[int]
    cached: int
    uploaded: int
    registered: int
    pending_uploads: Optional[int]
    pending_registrations: int
    remote_count: Optional[int] = None
    remote_error: Optional[str] = None
    catalog_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cache_path": self.cache_path,
            "ledger_id": self.ledger_id,
            "last_reconciled": self.last_reconciled.isoformat() if self.last_reconciled else None,
            "catalog_size": self.catalog_size,
            "cached": self.cached,
            "uploaded": self.uploaded,
            "registered": self.registered,
            "pending_uploads": self.pending_uploads,
            "pending_registrations": self.pending_registrations,
            "remote_count": self.remote_count,
            "remote_error": self.remote_error,
            "catalog_error": self.catalog_error,
        }


def collect_status(
    config: DeployConfig,
    *,
    ledger: Optional[LedgerClient] = None,
    query_remote: bool = True,
) -> StatusSnapshot:
    """Summarise the cache; include the remote count when reachable.

    Raises:
        CacheError: if the cache cannot be read.
    """
    cache = DeploymentCache.load(config.cache_path)

    catalog: Optional[AssetCatalog] = None
    catalog_error: Optional[str] = None
    try:
        catalog = load_catalog(config.assets_dir)
    except DeployError as exc:
        catalog_error = str(exc)
        logger.warning("Catalog unavailable for status: %s", exc)

    uploaded = sum(1 for index in cache.indices() if cache.entry(index).uploaded)
    snapshot = StatusSnapshot(
        cache_path=str(config.cache_path),
        ledger_id=cache.ledger_id,
        last_reconciled=cache.last_reconciled,
        catalog_size=len(catalog) if catalog is not None else None,
        cached=len(cache),
        uploaded=uploaded,
        registered=len(cache.registered_indices()),
        pending_uploads=len(cache.pending_uploads(catalog)) if catalog is not None else None,
        pending_registrations=len(cache.pending_registrations()),
        catalog_error=catalog_error,
    )

    if query_remote and cache.ledger_id:
        with _owned(ledger or build_ledger_client(config), ledger is not None) as ledger_client:
            try:
                snapshot.remote_count = ledger_client.current_registered_count(cache.ledger_id)
            except DeployError as exc:
                snapshot.remote_error = str(exc)
                logger.warning("Ledger unreachable for status: %s", exc)
    return snapshot
