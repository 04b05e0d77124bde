"""Upload worker pool: exactly-once per pass, failure isolation, cancellation."""

from __future__ import annotations

import json
import threading

import pytest

from AssetLedger.Deploy.cache import DeploymentCache
from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.catalog import load_catalog
from AssetLedger.Deploy.errors import CacheError, RejectedStorageError, TransientStorageError
from AssetLedger.Deploy.orchestrator import (
    UploadOrchestrator,
    UploadStatus,
    UploadWorker,
    link_metadata,
)

from fakes import FakeStorage


def _orchestrator(root, cache_path, storage, policy, *, workers=4, cancel=None):
    catalog = load_catalog(root)
    cache = DeploymentCache.load(cache_path)
    worker = UploadWorker(storage, retry_policy=policy, cancel=cancel)
    return UploadOrchestrator(catalog, cache, worker, workers=workers, cancel=cancel), cache


def test_every_pending_asset_uploaded_once(make_assets, tmp_path, fast_policy):
    storage = FakeStorage()
    orchestrator, cache = _orchestrator(make_assets(20), tmp_path / "c.json", storage, fast_policy)

    report = orchestrator.run()

    assert sorted(report.uploaded) == list(range(20))
    assert report.complete
    assert len(storage.media_uploads) == 20
    assert len(storage.metadata_uploads) == 20
    assert DeploymentCache.load(tmp_path / "c.json").pending_registrations() == set(range(20))


def test_uploaded_assets_are_skipped(make_assets, tmp_path, fast_policy):
    root = make_assets(4)
    orchestrator, _ = _orchestrator(root, tmp_path / "c.json", FakeStorage(), fast_policy)
    orchestrator.run()

    storage = FakeStorage()
    again, _ = _orchestrator(root, tmp_path / "c.json", storage, fast_policy)
    report = again.run()

    assert report.requested == 0
    assert report.skipped == 4
    assert storage.calls == []


def test_subset_selection(make_assets, tmp_path, fast_policy):
    storage = FakeStorage()
    orchestrator, _ = _orchestrator(make_assets(5), tmp_path / "c.json", storage, fast_policy)

    report = orchestrator.run(indices=[3, 1])

    assert sorted(report.uploaded) == [1, 3]
    assert len(storage.calls) == 4


def test_one_rejected_asset_does_not_stop_others(make_assets, tmp_path, fast_policy):
    def reject_media_two(data, content_type):
        if data == b"media-2":
            raise RejectedStorageError("unsupported", status=415)

    storage = FakeStorage(hook=reject_media_two)
    orchestrator, cache = _orchestrator(make_assets(5), tmp_path / "c.json", storage, fast_policy)

    report = orchestrator.run()

    assert sorted(report.uploaded) == [0, 1, 3, 4]
    assert report.failed == [2]
    (failure,) = report.failures
    assert (failure.stage, failure.kind) == ("upload-media", "rejected")
    assert 2 not in cache.indices()
    assert len(storage.metadata_uploads) == 4


def test_transient_failures_are_retried(make_assets, tmp_path, fast_policy, sleep_recorder):
    remaining = {"failures": 2}
    lock = threading.Lock()

    def flaky(data, content_type):
        with lock:
            if remaining["failures"]:
                remaining["failures"] -= 1
                raise TransientStorageError("503", status=503)

    orchestrator, _ = _orchestrator(
        make_assets(1), tmp_path / "c.json", FakeStorage(hook=flaky), fast_policy
    )
    report = orchestrator.run()

    assert report.uploaded == [0]
    assert len(sleep_recorder.calls) == 2


def test_exhausted_retries_fail_the_asset(make_assets, tmp_path, fast_policy):
    def always_busy(data, content_type):
        raise TransientStorageError("503", status=503)

    storage = FakeStorage(hook=always_busy)
    orchestrator, _ = _orchestrator(make_assets(2), tmp_path / "c.json", storage, fast_policy)

    report = orchestrator.run()

    assert report.failed == [0, 1]
    assert {failure.kind for failure in report.failures} == {"transient"}
    assert len(storage.calls) == 2 * fast_policy.max_attempts


def test_cancellation_stops_new_work(make_assets, tmp_path, fast_policy):
    token = CancellationToken()

    def cancel_on_first(data, content_type):
        if content_type == "application/json":
            token.cancel("SIGINT")

    orchestrator, cache = _orchestrator(
        make_assets(5), tmp_path / "c.json", FakeStorage(hook=cancel_on_first), fast_policy,
        workers=1, cancel=token,
    )
    report = orchestrator.run()

    assert report.uploaded == [0]
    assert report.interrupted == [1, 2, 3, 4]
    assert DeploymentCache.load(tmp_path / "c.json").indices() == {0}


def test_cancel_after_media_still_uploads_metadata(make_assets, tmp_path, fast_policy):
    token = CancellationToken()

    def cancel_on_media(data, content_type):
        if content_type != "application/json":
            token.cancel("SIGINT")

    storage = FakeStorage(hook=cancel_on_media)
    orchestrator, cache = _orchestrator(
        make_assets(3), tmp_path / "c.json", storage, fast_policy, workers=1, cancel=token,
    )
    report = orchestrator.run()

    assert report.uploaded == [0]
    assert report.interrupted == [1, 2]
    assert len(storage.media_uploads) == 1
    assert len(storage.metadata_uploads) == 1
    entry = DeploymentCache.load(tmp_path / "c.json").entry(0)
    assert entry.uploaded
    assert storage.objects[entry.media_uri] == b"media-0"


def test_cache_write_failure_is_raised(make_assets, tmp_path, fast_policy, monkeypatch):
    orchestrator, cache = _orchestrator(make_assets(3), tmp_path / "c.json", FakeStorage(), fast_policy)

    def broken_persist():
        raise CacheError("disk full")

    monkeypatch.setattr(cache, "persist", broken_persist)

    with pytest.raises(CacheError, match="disk full"):
        orchestrator.run()


def test_worker_result_carries_hash_and_name(make_assets, fast_policy):
    catalog = load_catalog(make_assets(1))
    worker = UploadWorker(FakeStorage(), retry_policy=fast_policy)

    result = worker.upload_asset(catalog.asset(0), catalog.content_hash(0))

    assert result.status is UploadStatus.UPLOADED
    assert result.content_hash == catalog.content_hash(0)
    assert result.name == "Item #0"
    assert result.media_uri.startswith("https://storage.test/")


def test_worker_reports_unreadable_media(make_assets, fast_policy):
    root = make_assets(1)
    catalog = load_catalog(root)
    (root / "0.png").unlink()

    result = UploadWorker(FakeStorage(), retry_policy=fast_policy).upload_asset(
        catalog.asset(0), "sha256:x"
    )

    assert result.status is UploadStatus.FAILED
    assert result.failure.kind == "catalog"


class TestLinkMetadata:
    def test_rewrites_image_and_matching_files(self):
        metadata = {
            "name": "Item #0",
            "image": "0.png",
            "properties": {
                "files": [
                    {"uri": "0.png", "type": "image/png"},
                    {"uri": "preview.gif", "type": "image/gif"},
                ]
            },
        }

        linked = link_metadata(metadata, "0.png", "ar://media")

        assert linked["image"] == "ar://media"
        assert [f["uri"] for f in linked["properties"]["files"]] == ["ar://media", "preview.gif"]
        assert metadata["image"] == "0.png"
        assert metadata["properties"]["files"][0]["uri"] == "0.png"

    def test_tolerates_missing_properties(self):
        linked = link_metadata({"name": "x", "image": "a.png", "properties": "n/a"}, "a.png", "ar://m")

        assert linked == {"name": "x", "image": "ar://m", "properties": "n/a"}
        json.dumps(linked)
