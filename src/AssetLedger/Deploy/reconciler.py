# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.reconciler",
#   "purpose": "Restore agreement between the deployment cache and the remote ledger",
#   "sections": [
#     {"id": "reconcilereport", "name": "ReconcileReport", "anchor": "class-reconcilereport", "kind": "class"},
#     {"id": "reconciler", "name": "Reconciler", "anchor": "class-reconciler", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Cache/ledger reconciliation.

Responsibilities
----------------
- Read the remote registered count and, for indices the cache believes are
  unregistered, ask the ledger whether they were registered after all (for
  example a batch whose confirmation was lost when the process died).
- Classify every disagreement and, when applying, repair the cache:

  ========== ============================================ ===================
  outcome    situation                                    cache change
  ========== ============================================ ===================
  repaired   remote holds the cached URIs, cache says     ``on_chain=True``
             unregistered
  adopted    remote holds the index, cache has no URIs    remote URIs copied,
                                                          ``on_chain=True``
  diverged   remote holds different URIs than the         none
             cache's unregistered upload
  missing    full check: cache says registered,           reset to
             remote does not hold the index               unregistered
  ========== ============================================ ===================

Design Notes
------------
- Remote state is authoritative once observed. A remote registration is never
  reversed locally; diverged slots are reported so the ledger writer skips
  them.
- In the common case (remote count equals the local registered count) no
  per-index queries are made. Otherwise queries stop as soon as the count
  difference is accounted for, unless ``deep`` is set. A remote count below
  the local registered count always triggers a full check so missing entries
  are reset and registered again.
- Any ledger read that still fails after retries raises
  :class:`ReconcileError`; proceeding without reconciliation risks duplicate
  or conflicting registrations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, TypeVar

from AssetLedger.Deploy.cache import DeploymentCache
from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.catalog import AssetCatalog
from AssetLedger.Deploy.errors import LedgerError, ReconcileError, is_transient
from AssetLedger.Deploy.ledger import LedgerClient
from AssetLedger.Deploy.retries import RetryPolicy, build_retrying

__all__ = ["ReconcileReport", "Reconciler"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ReconcileReport:
    """What a reconciliation pass observed (and changed, when applied)."""

    ledger_id: Optional[str] = None
    remote_count: Optional[int] = None
    local_registered: int = 0
    checked: int = 0
    applied: bool = False
    interrupted: bool = False
    repaired: List[int] = field(default_factory=list)
    adopted: List[int] = field(default_factory=list)
    diverged: List[int] = field(default_factory=list)
    missing: List[int] = field(default_factory=list)

    @property
    def drift(self) -> bool:
        return bool(self.repaired or self.adopted or self.diverged or self.missing)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ledger_id": self.ledger_id,
            "remote_count": self.remote_count,
            "local_registered": self.local_registered,
            "checked": self.checked,
            "applied": self.applied,
            "interrupted": self.interrupted,
            "repaired": list(self.repaired),
            "adopted": list(self.adopted),
            "diverged": list(self.diverged),
            "missing": list(self.missing),
        }


class Reconciler:
    """Compares a :class:`DeploymentCache` with the remote ledger."""

    def __init__(
        self,
        client: LedgerClient,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel = cancel

    def _read(self, func: Callable[..., T], *args: Any) -> T:
        retrying = build_retrying(
            self.retry_policy, retry_on=is_transient, cancel=self.cancel, operation="ledger read"
        )
        try:
            return retrying(func, *args)
        except LedgerError as exc:
            raise ReconcileError(f"Remote ledger unreachable during reconciliation: {exc}") from exc

    def _candidates(
        self, cache: DeploymentCache, catalog: Optional[AssetCatalog], deep: bool
    ) -> List[int]:
        universe: Set[int] = set(cache.indices())
        if catalog is not None:
            universe |= set(catalog.indices())
        if deep:
            return sorted(universe)
        registered = cache.registered_indices()
        return sorted(index for index in universe if index not in registered)

    def reconcile(
        self,
        cache: DeploymentCache,
        catalog: Optional[AssetCatalog] = None,
        *,
        deep: bool = False,
        apply: bool = True,
    ) -> ReconcileReport:
        """Reconcile ``cache`` against the ledger it targets.

        Args:
            cache: Cache to check (and repair, when ``apply``).
            catalog: Catalog used to widen the checked range to indices the
                cache does not know and to stamp adopted entries' hashes.
            deep: Query every index, including ones the cache says are
                registered, and report registered entries missing remotely.
            apply: Mutate and persist the cache. ``False`` only reports.

        Raises:
            ReconcileError: if the ledger cannot be read.
            CacheError: if the repaired cache cannot be persisted.
        """
        report = ReconcileReport(ledger_id=cache.ledger_id, applied=apply)
        if not cache.ledger_id:
            LOGGER.info("Cache does not target a ledger yet; nothing to reconcile")
            return report

        ledger_id = cache.ledger_id
        registered = cache.registered_indices()
        report.local_registered = len(registered)
        report.remote_count = self._read(self.client.current_registered_count, ledger_id)

        outstanding = report.remote_count - len(registered)
        if not deep and outstanding < 0:
            LOGGER.warning(
                "Ledger %s reports %d registered but the cache records %d; checking every index",
                ledger_id,
                report.remote_count,
                len(registered),
            )
            deep = True
        if not deep and outstanding == 0:
            LOGGER.info(
                "Ledger %s agrees with cache (%d registered); no per-index checks needed",
                ledger_id,
                report.remote_count,
            )
        else:
            self._check_indices(cache, catalog, report, deep=deep, outstanding=outstanding, apply=apply)

        if apply:
            cache.mark_reconciled()
            cache.persist()

        LOGGER.info(
            "Reconciled ledger %s: remote=%s checked=%d repaired=%d adopted=%d diverged=%d missing=%d",
            ledger_id,
            report.remote_count,
            report.checked,
            len(report.repaired),
            len(report.adopted),
            len(report.diverged),
            len(report.missing),
        )
        return report

    def _check_indices(
        self,
        cache: DeploymentCache,
        catalog: Optional[AssetCatalog],
        report: ReconcileReport,
        *,
        deep: bool,
        outstanding: int,
        apply: bool,
    ) -> None:
        ledger_id = cache.ledger_id
        found = 0
        for index in self._candidates(cache, catalog, deep):
            if not deep and found >= outstanding:
                break
            if self.cancel is not None and self.cancel.is_cancelled():
                report.interrupted = True
                LOGGER.warning("Reconciliation interrupted after %d checks", report.checked)
                break

            remote = self._read(self.client.get_registered, ledger_id, index)
            report.checked += 1
            entry = cache.entry(index)

            if remote is None:
                if entry.on_chain:
                    report.missing.append(index)
                    if apply:
                        cache.mark_unregistered([index])
                continue

            media_uri, metadata_uri = remote
            same_uris = entry.media_uri == media_uri and entry.metadata_uri == metadata_uri
            if entry.on_chain:
                if not same_uris:
                    report.repaired.append(index)
                    if apply:
                        cache.adopt_remote(index, media_uri, metadata_uri)
                continue

            found += 1
            if not entry.uploaded:
                report.adopted.append(index)
                if apply:
                    content_hash = None
                    if catalog is not None and 0 <= index < len(catalog):
                        content_hash = catalog.content_hash(index)
                    cache.adopt_remote(index, media_uri, metadata_uri, content_hash=content_hash)
            elif same_uris:
                report.repaired.append(index)
                if apply:
                    cache.record_registered([index])
            else:
                report.diverged.append(index)
                LOGGER.warning(
                    "Index %d is registered with different URIs than the cached upload; "
                    "the ledger slot cannot be overwritten",
                    index,
                )
