# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.pipeline",
#   "purpose": "Sequence reconciliation, uploads and ledger registration; aggregate outcomes",
#   "sections": [
#     {"id": "stageoutcome", "name": "StageOutcome", "anchor": "class-stageoutcome", "kind": "class"},
#     {"id": "runreport", "name": "RunReport", "anchor": "class-runreport", "kind": "class"},
#     {"id": "pipelinedriver", "name": "PipelineDriver", "anchor": "class-pipelinedriver", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Deployment pipeline driver.

Responsibilities
----------------
- Make sure the cache names a ledger (adopting a configured one or creating
  a new one sized to the catalog) before any remote work.
- Check the catalog against the cache and the expected item count.
- Run the stages in order: reconcile, upload, register, then read the final
  remote count.
- Collect per-stage outcomes into a :class:`RunReport` whose exit code the CLI
  returns.

Design Notes
------------
- Per-asset failures are carried in the stage outcomes. Cross-cutting
  failures (ledger unreachable, fatal ledger errors, cache I/O) end the run;
  they are recorded on the report as ``aborted`` rather than raised so the
  summary and report file are still produced.
- ``verify`` runs a deep reconciliation only and never writes to the ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from AssetLedger.Deploy.cache import DeploymentCache
from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.catalog import AssetCatalog
from AssetLedger.Deploy.errors import (
    AssetFailure,
    CacheError,
    CatalogError,
    DeployError,
    LedgerError,
    ReconcileError,
    is_transient,
)
from AssetLedger.Deploy.ledger import LedgerClient
from AssetLedger.Deploy.ledger_writer import LedgerWriter
from AssetLedger.Deploy.orchestrator.scheduler import UploadOrchestrator
from AssetLedger.Deploy.reconciler import ReconcileReport, Reconciler
from AssetLedger.Deploy.retries import RetryPolicy, build_retrying

__all__ = [
    "EXIT_OK",
    "EXIT_FAILURE",
    "EXIT_INTERRUPTED",
    "StageOutcome",
    "RunReport",
    "PipelineDriver",
    "check_catalog_against_cache",
]

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

STAGE_COMPLETED = "completed"
STAGE_INCOMPLETE = "incomplete"
STAGE_INTERRUPTED = "interrupted"
STAGE_NOT_RUN = "not-run"


@dataclass
class StageOutcome:
    """Counts and failures for one pipeline stage."""

    name: str
    status: str = STAGE_NOT_RUN
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[AssetFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": [failure.to_dict() for failure in self.failures],
        }


@dataclass
class RunReport:
    """Outcome of a deploy or verify run."""

    mode: str
    catalog_size: int
    ledger_id: Optional[str] = None
    stages: List[StageOutcome] = field(default_factory=list)
    reconcile: Optional[ReconcileReport] = None
    remote_count: Optional[int] = None
    interrupted: bool = False
    aborted: Optional[str] = None
    abort_kind: Optional[str] = None

    def stage(self, name: str) -> StageOutcome:
        for outcome in self.stages:
            if outcome.name == name:
                return outcome
        raise KeyError(name)

    @property
    def failures(self) -> List[AssetFailure]:
        collected: List[AssetFailure] = []
        for outcome in self.stages:
            collected.extend(outcome.failures)
        return collected

    @property
    def count_mismatch(self) -> bool:
        """True when a full deploy finished but the ledger count disagrees."""
        if self.mode != "deploy" or self.remote_count is None:
            return False
        if self.interrupted or self.aborted or self.failures:
            return False
        return self.remote_count != self.catalog_size

    @property
    def drift(self) -> bool:
        return self.reconcile is not None and self.reconcile.drift

    @property
    def ok(self) -> bool:
        if self.aborted or self.interrupted or self.failures or self.count_mismatch:
            return False
        if self.mode == "verify" and self.reconcile is not None:
            # Diverged slots cannot be repaired locally.
            if self.reconcile.diverged:
                return False
            if self.reconcile.drift and not self.reconcile.applied:
                return False
        return True

    @property
    def exit_code(self) -> int:
        if self.interrupted and not self.aborted:
            return EXIT_INTERRUPTED
        return EXIT_OK if self.ok else EXIT_FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "ledger_id": self.ledger_id,
            "catalog_size": self.catalog_size,
            "remote_count": self.remote_count,
            "ok": self.ok,
            "exit_code": self.exit_code,
            "interrupted": self.interrupted,
            "aborted": self.aborted,
            "abort_kind": self.abort_kind,
            "count_mismatch": self.count_mismatch,
            "stages": [outcome.to_dict() for outcome in self.stages],
            "reconcile": self.reconcile.to_dict() if self.reconcile else None,
            "failures": [failure.to_dict() for failure in self.failures],
        }


def check_catalog_against_cache(
    catalog: AssetCatalog, cache: DeploymentCache, expected_items: Optional[int] = None
) -> None:
    """Raise :class:`CatalogError` when the catalog cannot match this deployment."""

    if expected_items is not None and expected_items != len(catalog):
        raise CatalogError(
            f"Catalog holds {len(catalog)} assets but {expected_items} were expected"
        )
    beyond = sorted(index for index in cache.indices() if index >= len(catalog))
    if beyond:
        raise CatalogError(
            f"Cache records indices {beyond[:10]} beyond the catalog size {len(catalog)}; "
            "the collection shrank after deployment started"
        )


class PipelineDriver:
    """Runs reconcile → upload → register for one catalog and cache."""

    def __init__(
        self,
        catalog: AssetCatalog,
        cache: DeploymentCache,
        *,
        ledger: LedgerClient,
        reconciler: Reconciler,
        orchestrator: Optional[UploadOrchestrator] = None,
        writer: Optional[LedgerWriter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancellationToken] = None,
        expected_items: Optional[int] = None,
        configured_ledger_id: Optional[str] = None,
    ) -> None:
        self.catalog = catalog
        self.cache = cache
        self.ledger = ledger
        self.reconciler = reconciler
        self.orchestrator = orchestrator
        self.writer = writer
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel = cancel or CancellationToken()
        self.expected_items = expected_items
        self.configured_ledger_id = configured_ledger_id

    def _cancelled(self) -> bool:
        return self.cancel.is_cancelled()

    def _retrying(self, operation: str):
        return build_retrying(
            self.retry_policy, retry_on=is_transient, cancel=self.cancel, operation=operation
        )

    # ------------------------------------------------------------------ #
    # Preparation
    # ------------------------------------------------------------------ #

    def adopt_configured_ledger(self) -> None:
        """Point the cache at the configured ledger id.

        Raises:
            CacheError: if the cache already targets a different ledger.
        """
        if self.configured_ledger_id and self.cache.ledger_id != self.configured_ledger_id:
            self.cache.set_ledger_id(self.configured_ledger_id)
            self.cache.persist()
            LOGGER.info("Targeting configured ledger %s", self.configured_ledger_id)

    def ensure_ledger(self) -> str:
        """Return the ledger id, creating a ledger when the cache has none."""

        self.adopt_configured_ledger()
        if not self.cache.ledger_id:
            ledger_id = self._retrying("ledger create")(self.ledger.create_ledger, len(self.catalog))
            self.cache.set_ledger_id(ledger_id)
            self.cache.persist()
            LOGGER.info("Created ledger %s for %d assets", ledger_id, len(self.catalog))
        return self.cache.ledger_id

    # ------------------------------------------------------------------ #
    # Stages
    # ------------------------------------------------------------------ #

    def _reconcile_stage(self, report: RunReport, *, deep: bool, apply: bool) -> StageOutcome:
        outcome = StageOutcome(name="reconcile")
        report.stages.append(outcome)
        result = self.reconciler.reconcile(self.cache, self.catalog, deep=deep, apply=apply)
        report.reconcile = result
        report.remote_count = result.remote_count
        outcome.succeeded = len(result.repaired) + len(result.adopted)
        outcome.failed = len(result.diverged) + len(result.missing)
        outcome.skipped = max(len(self.catalog) - result.checked, 0)
        if result.interrupted:
            outcome.status = STAGE_INTERRUPTED
            report.interrupted = True
        else:
            outcome.status = STAGE_COMPLETED
        return outcome

    def _upload_stage(self, report: RunReport) -> StageOutcome:
        outcome = StageOutcome(name="upload")
        report.stages.append(outcome)
        result = self.orchestrator.run()
        outcome.succeeded = len(result.uploaded)
        outcome.failed = len(result.failures)
        outcome.skipped = result.skipped
        outcome.failures.extend(sorted(result.failures, key=lambda failure: failure.index))
        if result.was_interrupted:
            outcome.status = STAGE_INTERRUPTED
            report.interrupted = True
        elif result.failures:
            outcome.status = STAGE_INCOMPLETE
        else:
            outcome.status = STAGE_COMPLETED
        return outcome

    def _register_stage(self, report: RunReport, diverged: List[int]) -> StageOutcome:
        outcome = StageOutcome(name="register")
        report.stages.append(outcome)
        result = self.writer.write(exclude=diverged)
        outcome.succeeded = len(result.registered)
        outcome.failed = len(result.failures)
        outcome.skipped = len(self.cache.registered_indices()) - len(result.registered)
        outcome.failures.extend(sorted(result.failures, key=lambda failure: failure.index))
        if result.interrupted:
            outcome.status = STAGE_INTERRUPTED
            report.interrupted = True
        elif result.failures:
            outcome.status = STAGE_INCOMPLETE
        else:
            outcome.status = STAGE_COMPLETED
        return outcome

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    def run(self) -> RunReport:
        """Deploy the catalog: reconcile, upload, register.

        Raises:
            CatalogError: if the catalog does not match the expected size or
                the cache's recorded indices.
            CacheError: if the configured ledger disagrees with the cache.
        """
        if self.orchestrator is None or self.writer is None:
            raise ValueError("deploy requires an upload orchestrator and a ledger writer")
        check_catalog_against_cache(self.catalog, self.cache, self.expected_items)
        self.adopt_configured_ledger()
        report = RunReport(mode="deploy", catalog_size=len(self.catalog))

        try:
            report.ledger_id = self.ensure_ledger()
            self._reconcile_stage(report, deep=False, apply=True)
            diverged = list(report.reconcile.diverged) if report.reconcile else []

            if self._cancelled():
                report.interrupted = True
                return self._finish(report)
            self._upload_stage(report)

            if self._cancelled():
                report.interrupted = True
                report.stages.append(StageOutcome(name="register", status=STAGE_INTERRUPTED))
                return self._finish(report)
            self._register_stage(report, diverged)

            if not self._cancelled():
                report.remote_count = self._retrying("ledger read")(
                    self.ledger.current_registered_count, report.ledger_id
                )
        except (CacheError, LedgerError, ReconcileError) as exc:
            self._abort(report, exc)

        if self._cancelled():
            report.interrupted = True
        return self._finish(report)

    def verify(self, *, repair: bool = False, deep: bool = True) -> RunReport:
        """Compare the cache with the ledger without writing to the ledger."""

        check_catalog_against_cache(self.catalog, self.cache, self.expected_items)
        self.adopt_configured_ledger()
        report = RunReport(mode="verify", catalog_size=len(self.catalog), ledger_id=self.cache.ledger_id)
        if not self.cache.ledger_id:
            LOGGER.warning("Cache does not name a ledger yet; nothing to verify")
            report.stages.append(StageOutcome(name="reconcile", status=STAGE_NOT_RUN))
            return self._finish(report)
        try:
            self._reconcile_stage(report, deep=deep, apply=repair)
        except (CacheError, ReconcileError) as exc:
            self._abort(report, exc)
        return self._finish(report)

    @staticmethod
    def _abort(report: RunReport, exc: DeployError) -> None:
        LOGGER.error("Run aborted (%s): %s", exc.kind, exc)
        report.aborted = str(exc)
        report.abort_kind = exc.kind

    def _finish(self, report: RunReport) -> RunReport:
        if report.count_mismatch:
            LOGGER.warning(
                "Ledger %s reports %d registered items but the catalog has %d",
                report.ledger_id,
                report.remote_count,
                report.catalog_size,
            )
        LOGGER.info(
            "%s finished: exit=%d failures=%d interrupted=%s aborted=%s",
            report.mode,
            report.exit_code,
            len(report.failures),
            report.interrupted,
            bool(report.aborted),
        )
        return report
