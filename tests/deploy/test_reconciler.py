"""Reconciliation of the cache against the remote ledger."""

from __future__ import annotations

import pytest

from AssetLedger.Deploy.cache import DeploymentCache
from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.catalog import load_catalog
from AssetLedger.Deploy.errors import ReconcileError
from AssetLedger.Deploy.reconciler import Reconciler

from fakes import FakeLedger

LEDGER = "ledger-A"


def _uris(index):
    return f"https://storage.test/m{index}", f"https://storage.test/md{index}"


@pytest.fixture
def deployment(tmp_path, make_assets):
    """Ten uploaded assets, 0..6 registered locally and remotely."""

    catalog = load_catalog(make_assets(10))
    cache = DeploymentCache(tmp_path / "cache.json", ledger_id=LEDGER)
    ledger = FakeLedger(LEDGER)
    for index in range(10):
        cache.record_upload(index, *_uris(index), catalog.content_hash(index))
    for index in range(7):
        ledger.seed(LEDGER, index, *_uris(index))
    cache.record_registered(range(7))
    return catalog, cache, ledger


def test_in_sync_makes_no_per_index_queries(deployment, fast_policy):
    catalog, cache, ledger = deployment

    report = Reconciler(ledger, retry_policy=fast_policy).reconcile(cache, catalog)

    assert ledger.queries == []
    assert not report.drift
    assert report.remote_count == 7
    assert cache.last_reconciled is not None
    assert (cache.path).exists()


def test_lost_confirmation_is_repaired_without_writes(deployment, fast_policy):
    catalog, cache, ledger = deployment
    ledger.seed(LEDGER, 7, *_uris(7))

    report = Reconciler(ledger, retry_policy=fast_policy).reconcile(cache, catalog)

    assert report.repaired == [7]
    assert ledger.queries == [7]
    assert ledger.submissions == []
    assert cache.registered_indices() == set(range(8))
    assert DeploymentCache.load(cache.path).entry(7).on_chain


def test_remote_entry_unknown_locally_is_adopted(tmp_path, make_assets, fast_policy):
    catalog = load_catalog(make_assets(10))
    cache = DeploymentCache(tmp_path / "cache.json", ledger_id=LEDGER)
    ledger = FakeLedger(LEDGER)
    ledger.seed(LEDGER, 7, "ar://m7", "ar://md7")

    report = Reconciler(ledger, retry_policy=fast_policy).reconcile(cache, catalog)

    assert report.adopted == [7]
    assert ledger.submissions == []
    entry = cache.entry(7)
    assert entry.on_chain
    assert (entry.media_uri, entry.metadata_uri) == ("ar://m7", "ar://md7")
    assert entry.content_hash == catalog.content_hash(7)
    assert cache.pending_uploads(catalog) == set(range(10)) - {7}


def test_different_remote_uris_are_diverged(deployment, fast_policy):
    catalog, cache, ledger = deployment
    ledger.seed(LEDGER, 8, "https://elsewhere/m", "https://elsewhere/md")

    report = Reconciler(ledger, retry_policy=fast_policy).reconcile(cache, catalog)

    assert report.diverged == [8]
    assert not cache.entry(8).on_chain
    assert cache.entry(8).media_uri == _uris(8)[0]


def test_report_only_leaves_cache_untouched(deployment, fast_policy):
    catalog, cache, ledger = deployment
    ledger.seed(LEDGER, 7, *_uris(7))

    report = Reconciler(ledger, retry_policy=fast_policy).reconcile(cache, catalog, apply=False)

    assert report.repaired == [7]
    assert not report.applied
    assert not cache.entry(7).on_chain
    assert cache.last_reconciled is None
    assert not cache.path.exists()


def test_deep_mode_finds_missing_registrations(deployment, fast_policy):
    catalog, cache, ledger = deployment
    del ledger.slots(LEDGER)[3]

    report = Reconciler(ledger, retry_policy=fast_policy).reconcile(cache, catalog, deep=True)

    assert report.missing == [3]
    assert report.checked == 10
    assert not cache.entry(3).on_chain
    assert cache.pending_registrations() == {3, 7, 8, 9}


def test_short_remote_count_checks_every_index(deployment, fast_policy):
    catalog, cache, ledger = deployment
    del ledger.slots(LEDGER)[5]

    report = Reconciler(ledger, retry_policy=fast_policy).reconcile(cache, catalog)

    assert report.remote_count == 6
    assert report.missing == [5]
    assert report.checked == 10
    assert cache.pending_registrations() == {5, 7, 8, 9}
    assert not DeploymentCache.load(cache.path).entry(5).on_chain


def test_deep_mode_adopts_remote_uris_for_registered_entries(deployment, fast_policy):
    catalog, cache, ledger = deployment
    ledger.seed(LEDGER, 2, "ipfs://m2", "ipfs://md2")

    report = Reconciler(ledger, retry_policy=fast_policy).reconcile(cache, catalog, deep=True)

    assert report.repaired == [2]
    assert cache.entry(2).media_uri == "ipfs://m2"
    assert cache.entry(2).on_chain


def test_unreachable_ledger_raises(deployment, fast_policy):
    catalog, cache, ledger = deployment
    ledger.unreachable = True

    with pytest.raises(ReconcileError):
        Reconciler(ledger, retry_policy=fast_policy).reconcile(cache, catalog)


def test_cache_without_ledger_is_skipped(tmp_path, fast_policy):
    ledger = FakeLedger()
    cache = DeploymentCache(tmp_path / "cache.json")

    report = Reconciler(ledger, retry_policy=fast_policy).reconcile(cache)

    assert report.remote_count is None
    assert ledger.queries == []


def test_cancellation_interrupts_checks(deployment, fast_policy):
    catalog, cache, ledger = deployment
    ledger.seed(LEDGER, 7, *_uris(7))
    token = CancellationToken()
    token.cancel()

    report = Reconciler(ledger, retry_policy=fast_policy, cancel=token).reconcile(cache, catalog)

    assert report.interrupted
    assert report.checked == 0
