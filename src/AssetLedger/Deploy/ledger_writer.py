# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.ledger_writer",
#   "purpose": "Sequential, capacity-bounded ledger registration of uploaded assets",
#   "sections": [
#     {"id": "validate-registration", "name": "validate_registration", "anchor": "function-validate-registration", "kind": "function"},
#     {"id": "plan-batches", "name": "plan_batches", "anchor": "function-plan-batches", "kind": "function"},
#     {"id": "writerreport", "name": "WriterReport", "anchor": "class-writerreport", "kind": "class"},
#     {"id": "ledgerwriter", "name": "LedgerWriter", "anchor": "class-ledgerwriter", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Ledger registration of uploaded assets.

Responsibilities
----------------
- Turn ``pending_registrations()`` into ordered batches no larger than the
  ledger's per-transaction capacity.
- Submit batches one at a time, strictly ascending by index, and record each
  batch in the cache only after the ledger confirmed it.
- Retry transient submission failures; on a conflict, reconcile first and
  retry the batch once with whatever is still unregistered.

Design Notes
------------
- Registrations are validated before submission (URI present, allowed scheme,
  length within the ledger's limit). Invalid ones are per-asset failures and
  are never sent.
- A second conflict for the same batch means the cache cannot be brought in
  sync with the ledger; it is raised as :class:`FatalLedgerError`.
- Transient errors that outlive the retry policy propagate and end the run;
  they are not attributable to a single asset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Set
from urllib.parse import urlsplit

from AssetLedger.Deploy.cache import CacheEntry, DeploymentCache
from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.catalog import AssetCatalog
from AssetLedger.Deploy.errors import (
    AssetFailure,
    CacheError,
    FatalLedgerError,
    LedgerConflictError,
    TransientLedgerError,
    is_transient,
)
from AssetLedger.Deploy.ledger import LedgerClient, Registration
from AssetLedger.Deploy.reconciler import Reconciler
from AssetLedger.Deploy.retries import RetryPolicy, build_retrying

__all__ = [
    "ALLOWED_URI_SCHEMES",
    "DEFAULT_MAX_URI_LENGTH",
    "validate_registration",
    "plan_batches",
    "WriterReport",
    "LedgerWriter",
]

LOGGER = logging.getLogger(__name__)

ALLOWED_URI_SCHEMES = ("https", "http", "ar", "ipfs")
DEFAULT_MAX_URI_LENGTH = 200


def _uri_problem(label: str, uri: Optional[str], max_length: int) -> Optional[str]:
    if not uri:
        return f"{label} is empty"
    scheme = urlsplit(uri).scheme.lower()
    if scheme not in ALLOWED_URI_SCHEMES:
        return f"{label} scheme {scheme or '(none)'!r} is not allowed"
    if len(uri) > max_length:
        return f"{label} is {len(uri)} characters, above the limit of {max_length}"
    return None


def validate_registration(
    entry: CacheEntry, *, max_uri_length: int = DEFAULT_MAX_URI_LENGTH
) -> Optional[str]:
    """Return why ``entry`` cannot be registered, or ``None`` if it can."""

    return _uri_problem("media_uri", entry.media_uri, max_uri_length) or _uri_problem(
        "metadata_uri", entry.metadata_uri, max_uri_length
    )


def plan_batches(indices: Iterable[int], capacity: int) -> List[List[int]]:
    """Deduplicate, sort ascending and chunk ``indices`` into batches.

    >>> plan_batches([3, 1, 4, 1, 5], 2)
    [[1, 3], [4, 5]]
    """

    if capacity < 1:
        raise ValueError(f"capacity must be >= 1, got {capacity}")
    ordered = sorted(set(indices))
    return [ordered[start : start + capacity] for start in range(0, len(ordered), capacity)]


@dataclass
class WriterReport:
    """Aggregate of one registration pass."""

    requested: int = 0
    registered: List[int] = field(default_factory=list)
    batches: List[List[int]] = field(default_factory=list)
    failures: List[AssetFailure] = field(default_factory=list)
    reconciliations: int = 0
    interrupted: bool = False

    @property
    def complete(self) -> bool:
        return not self.failures and not self.interrupted


class LedgerWriter:
    """Drains the cache's pending registrations onto the ledger."""

    def __init__(
        self,
        client: LedgerClient,
        cache: DeploymentCache,
        *,
        capacity: int,
        retry_policy: Optional[RetryPolicy] = None,
        reconciler: Optional[Reconciler] = None,
        catalog: Optional[AssetCatalog] = None,
        max_uri_length: int = DEFAULT_MAX_URI_LENGTH,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.client = client
        self.cache = cache
        self.capacity = capacity
        self.retry_policy = retry_policy or RetryPolicy()
        self.reconciler = reconciler
        self.catalog = catalog
        self.max_uri_length = max_uri_length
        self.cancel = cancel

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_cancelled()

    def write(self, exclude: Iterable[int] = ()) -> WriterReport:
        """Register every pending index except ``exclude``.

        Args:
            exclude: Indices known to be unregistrable (diverged slots); each
                is reported as a failure.

        Raises:
            CacheError: if the cache names no ledger or cannot be persisted.
            FatalLedgerError: on a fatal ledger error or a repeated conflict.
            TransientLedgerError: when retries are exhausted.
        """
        ledger_id = self.cache.ledger_id
        if not ledger_id:
            raise CacheError("Cannot register assets: the cache does not name a ledger")

        report = WriterReport()
        blocked: Set[int] = set(exclude)
        pending = self.cache.pending_registrations()
        report.requested = len(pending)

        for index in sorted(blocked & pending):
            report.failures.append(self._diverged_failure(index))

        eligible: List[int] = []
        for index in sorted(pending - blocked):
            problem = validate_registration(
                self.cache.entry(index), max_uri_length=self.max_uri_length
            )
            if problem:
                LOGGER.warning("Asset %d cannot be registered: %s", index, problem)
                report.failures.append(
                    AssetFailure(index=index, stage="register", kind="invalid-uri", cause=problem)
                )
                continue
            eligible.append(index)

        batches = plan_batches(eligible, self.capacity)
        if batches:
            LOGGER.info(
                "Registering %d assets on ledger %s in %d batches of up to %d",
                len(eligible),
                ledger_id,
                len(batches),
                self.capacity,
            )

        for batch in batches:
            if self._cancelled():
                LOGGER.warning("Registration interrupted before batch starting at %d", batch[0])
                report.interrupted = True
                break
            try:
                self._submit_with_reconcile(ledger_id, batch, blocked, report)
            except TransientLedgerError:
                if self._cancelled():
                    report.interrupted = True
                    break
                raise

        LOGGER.info(
            "Registration pass finished: %d registered in %d batches, %d failed",
            len(report.registered),
            len(report.batches),
            len(report.failures),
        )
        return report

    def _registrations(self, indices: Sequence[int], blocked: Set[int]) -> List[Registration]:
        items: List[Registration] = []
        for index in indices:
            entry = self.cache.entry(index)
            if entry.on_chain or index in blocked or not entry.uploaded:
                continue
            items.append(
                Registration(index=index, media_uri=entry.media_uri, metadata_uri=entry.metadata_uri)
            )
        return items

    def _submit(self, ledger_id: str, items: List[Registration], report: WriterReport) -> None:
        retrying = build_retrying(
            self.retry_policy, retry_on=is_transient, cancel=self.cancel, operation="ledger submit"
        )
        retrying(self.client.submit_batch, ledger_id, items)

        indices = [item.index for item in items]
        self.cache.record_registered(indices)
        self.cache.persist()
        report.registered.extend(indices)
        report.batches.append(indices)
        LOGGER.info("Registered batch %d..%d (%d items)", indices[0], indices[-1], len(indices))

    def _submit_with_reconcile(
        self, ledger_id: str, batch: List[int], blocked: Set[int], report: WriterReport
    ) -> None:
        items = self._registrations(batch, blocked)
        if not items:
            return
        try:
            self._submit(ledger_id, items, report)
            return
        except LedgerConflictError as exc:
            if self.reconciler is None:
                raise FatalLedgerError(f"Ledger conflict with no reconciler available: {exc}") from exc
            LOGGER.warning("Ledger conflict on batch %d..%d: %s; reconciling", batch[0], batch[-1], exc)

        outcome = self.reconciler.reconcile(self.cache, self.catalog)
        report.reconciliations += 1
        for index in outcome.diverged:
            if index not in blocked:
                blocked.add(index)
                report.failures.append(self._diverged_failure(index))

        items = self._registrations(batch, blocked)
        if not items:
            LOGGER.info("Batch %d..%d was already registered remotely", batch[0], batch[-1])
            return
        try:
            self._submit(ledger_id, items, report)
        except LedgerConflictError as exc:
            raise FatalLedgerError(
                f"Repeated ledger conflict on batch {batch[0]}..{batch[-1]} after reconciliation: {exc}"
            ) from exc

    @staticmethod
    def _diverged_failure(index: int) -> AssetFailure:
        return AssetFailure(
            index=index,
            stage="register",
            kind="diverged",
            cause="ledger slot already holds different URIs",
        )
