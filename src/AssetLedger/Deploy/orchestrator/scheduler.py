# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.orchestrator.scheduler",
#   "purpose": "Bounded upload worker pool with a single-writer cache aggregator",
#   "sections": [
#     {"id": "uploadorchestrator", "name": "UploadOrchestrator", "anchor": "#class-uploadorchestrator", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Upload worker pool and cache aggregation.

This module provides the UploadOrchestrator class that:
- Queues every pending catalog index exactly once per pass
- Runs a bounded pool of worker threads, one asset per worker at a time
- Aggregates results on the calling thread, which is the only code that
  mutates and persists the deployment cache
- Stops handing out work when the run is cancelled, while letting in-flight
  assets finish

**Architecture:**

    UploadOrchestrator.run() (calling thread = aggregator)
      ├─ Work Queue: pending indices, handed out once
      ├─ Worker Threads: UploadWorker.upload_asset() → results queue
      └─ Aggregator: record_upload() + persist() per finished asset

**Usage:**

    orchestrator = UploadOrchestrator(catalog, cache, worker, workers=8, cancel=token)
    report = orchestrator.run()
"""

from __future__ import annotations

import logging
import os
import threading
from queue import Empty, Queue
from typing import Iterable, List, Optional, Union, cast

from AssetLedger.Deploy.cache import DeploymentCache
from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.catalog import AssetCatalog
from AssetLedger.Deploy.errors import CacheError, failure_from_exception
from AssetLedger.Deploy.orchestrator.models import UploadReport, UploadResult, UploadStatus
from AssetLedger.Deploy.orchestrator.workers import UploadWorker

__all__ = ["UploadOrchestrator", "default_worker_count"]

logger = logging.getLogger(__name__)

_WORKER_DONE = object()


def default_worker_count() -> int:
    """Worker pool width derived from available parallelism."""
    return max(os.cpu_count() or 1, 1)


class UploadOrchestrator:
    """Worker pool that turns pending catalog entries into storage URIs.

    Attributes:
        catalog: Loaded asset catalog
        cache: Deployment cache (mutated only on the calling thread)
        worker: Shared UploadWorker
        workers: Pool width
        cancel: Run-wide cancellation token
    """

    def __init__(
        self,
        catalog: AssetCatalog,
        cache: DeploymentCache,
        worker: UploadWorker,
        *,
        workers: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        if workers is not None and workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.catalog = catalog
        self.cache = cache
        self.worker = worker
        self.workers = workers or default_worker_count()
        self.cancel = cancel or CancellationToken()

        self._abort = threading.Event()

    def _should_stop(self) -> bool:
        return self._abort.is_set() or self.cancel.is_cancelled()

    def run(self, indices: Optional[Iterable[int]] = None) -> UploadReport:
        """Upload every pending asset (or the given subset of pending ones).

        Returns:
            The pass report. Per-asset failures are listed, not raised.

        Raises:
            CacheError: if the cache cannot be persisted; remaining work is
                abandoned after in-flight assets finish.
        """
        pending = self.cache.pending_uploads(self.catalog)
        if indices is not None:
            pending &= set(indices)
        ordered = sorted(pending)

        report = UploadReport(
            requested=len(ordered), skipped=len(self.catalog) - len(ordered)
        )
        if not ordered:
            logger.info("No uploads pending; %d assets already uploaded", report.skipped)
            return report

        logger.info(
            "Uploading %d assets (%d up to date) with %d workers",
            len(ordered),
            report.skipped,
            min(self.workers, len(ordered)),
        )

        self._abort.clear()
        work: "Queue[int]" = Queue()
        for index in ordered:
            work.put(index)
        results: "Queue[Union[UploadResult, object]]" = Queue()

        threads: List[threading.Thread] = []
        for i in range(min(self.workers, len(ordered))):
            t = threading.Thread(
                target=self._worker_loop,
                args=(work, results),
                daemon=True,
                name=f"upload-worker-{i}",
            )
            t.start()
            threads.append(t)

        cache_error: Optional[CacheError] = None
        finished = 0
        seen = set()
        while finished < len(threads):
            item = results.get()
            if item is _WORKER_DONE:
                finished += 1
                continue
            result = cast(UploadResult, item)
            seen.add(result.index)
            try:
                self._aggregate(result, report)
            except CacheError as exc:
                if cache_error is None:
                    logger.error("Cache persistence failed; stopping uploads: %s", exc)
                    cache_error = exc
                self._abort.set()

        for t in threads:
            t.join()

        never_started = [index for index in ordered if index not in seen]
        report.interrupted.extend(never_started)
        report.interrupted.sort()

        if cache_error is not None:
            raise cache_error

        logger.info(
            "Upload pass finished: %d uploaded, %d failed, %d interrupted",
            len(report.uploaded),
            len(report.failures),
            len(report.interrupted),
        )
        return report

    def _aggregate(self, result: UploadResult, report: UploadReport) -> None:
        if result.status is UploadStatus.UPLOADED:
            if self._abort.is_set():
                # Cache writes already failed; the asset is re-uploaded next run.
                report.interrupted.append(result.index)
                return
            self.cache.record_upload(
                result.index,
                result.media_uri,
                result.metadata_uri,
                result.content_hash,
                name=result.name,
            )
            self.cache.persist()
            report.uploaded.append(result.index)
        elif result.status is UploadStatus.FAILED and result.failure is not None:
            report.failures.append(result.failure)
        else:
            report.interrupted.append(result.index)

    def _worker_loop(self, work: "Queue[int]", results: "Queue") -> None:
        """Worker thread execution loop."""
        logger.debug("Upload worker started: %s", threading.current_thread().name)
        try:
            while not self._should_stop():
                try:
                    index = work.get_nowait()
                except Empty:
                    break
                try:
                    asset = self.catalog.asset(index)
                    result = self.worker.upload_asset(asset, self.catalog.content_hash(index))
                except Exception as exc:
                    logger.error("Worker error on asset %d: %s", index, exc, exc_info=True)
                    result = UploadResult.failed(failure_from_exception(index, "upload", exc))
                results.put(result)
        finally:
            results.put(_WORKER_DONE)
            logger.debug("Upload worker stopped: %s", threading.current_thread().name)
