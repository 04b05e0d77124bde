"""Deployment cache persistence, pending sets and run ownership."""

from __future__ import annotations

import json

import pytest

from AssetLedger.Deploy.cache import CACHE_VERSION, DeploymentCache
from AssetLedger.Deploy.catalog import load_catalog
from AssetLedger.Deploy.errors import CacheCorrupt, CacheError
from AssetLedger.Deploy.locks import lock_path_for, run_lock


def _uploaded(cache, index, catalog, suffix=""):
    cache.record_upload(
        index,
        f"https://storage.test/m{index}{suffix}",
        f"https://storage.test/md{index}{suffix}",
        catalog.content_hash(index),
        name=f"Item #{index}",
    )


def test_missing_file_is_empty_cache(tmp_path):
    cache = DeploymentCache.load(tmp_path / "cache.json")

    assert len(cache) == 0
    assert cache.ledger_id is None
    assert not cache.entry(3).uploaded


def test_persist_round_trip(tmp_path, make_assets):
    catalog = load_catalog(make_assets(2))
    path = tmp_path / "cache.json"
    cache = DeploymentCache.load(path)
    cache.set_ledger_id("ledger-1")
    _uploaded(cache, 0, catalog)
    cache.record_registered([0])
    cache.mark_reconciled()
    cache.persist()

    payload = json.loads(path.read_text())
    assert payload["version"] == CACHE_VERSION
    assert payload["ledger"]["ledger_id"] == "ledger-1"
    assert payload["items"]["0"]["on_chain"] is True

    reloaded = DeploymentCache.load(path)
    assert reloaded.ledger_id == "ledger-1"
    assert reloaded.last_reconciled is not None
    assert reloaded.entry(0) == cache.entry(0)


def test_persist_leaves_no_temporary_files(tmp_path):
    cache = DeploymentCache.load(tmp_path / "cache.json")
    cache.set_ledger_id("ledger-1")
    cache.persist()

    assert not [p for p in tmp_path.iterdir() if p.name.endswith(".tmp")]


def test_unknown_fields_are_ignored(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text(
        json.dumps(
            {
                "version": CACHE_VERSION + 1,
                "ledger": {"ledger_id": "ledger-9", "owner": "someone"},
                "items": {"4": {"media_uri": "https://a/m", "extra": 1}},
                "future": True,
            }
        )
    )

    cache = DeploymentCache.load(path)

    assert cache.ledger_id == "ledger-9"
    assert cache.entry(4).media_uri == "https://a/m"
    assert not cache.entry(4).uploaded


def test_on_chain_without_uris_is_pending(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text(json.dumps({"items": {"0": {"media_uri": "https://a/m", "on_chain": True}}}))

    cache = DeploymentCache.load(path)

    assert not cache.entry(0).on_chain
    assert cache.registered_indices() == set()


@pytest.mark.parametrize(
    "content",
    [
        "{broken",
        "[]",
        json.dumps({"items": {"zero": {}}}),
        json.dumps({"items": {"-1": {}}}),
        json.dumps({"items": {"0": {"on_chain": "sometimes"}}}),
    ],
)
def test_corrupt_cache_is_reported_not_discarded(tmp_path, content):
    path = tmp_path / "cache.json"
    path.write_text(content)

    with pytest.raises(CacheCorrupt):
        DeploymentCache.load(path)
    assert path.read_text() == content


class TestPendingSets:
    def test_pending_uploads_cover_missing_and_changed(self, tmp_path, make_assets):
        root = make_assets(3)
        catalog = load_catalog(root)
        cache = DeploymentCache(tmp_path / "cache.json")
        _uploaded(cache, 0, catalog)
        _uploaded(cache, 1, catalog)

        assert cache.pending_uploads(catalog) == {2}

        (root / "1.png").write_bytes(b"edited")
        assert cache.pending_uploads(load_catalog(root)) == {1, 2}

    def test_pending_registrations(self, tmp_path, make_assets):
        catalog = load_catalog(make_assets(3))
        cache = DeploymentCache(tmp_path / "cache.json")
        for index in range(3):
            _uploaded(cache, index, catalog)
        cache.record_registered([1])

        assert cache.pending_registrations() == {0, 2}
        assert cache.registered_indices() == {1}


class TestMutations:
    def test_reupload_with_new_uris_clears_on_chain(self, tmp_path, make_assets):
        catalog = load_catalog(make_assets(1))
        cache = DeploymentCache(tmp_path / "cache.json")
        _uploaded(cache, 0, catalog)
        cache.record_registered([0])

        _uploaded(cache, 0, catalog)
        assert cache.entry(0).on_chain

        _uploaded(cache, 0, catalog, suffix="-v2")
        assert not cache.entry(0).on_chain

    def test_register_requires_uris(self, tmp_path):
        cache = DeploymentCache(tmp_path / "cache.json")

        with pytest.raises(CacheError):
            cache.record_registered([0])

    def test_adopt_remote_keeps_name_and_marks_registered(self, tmp_path, make_assets):
        catalog = load_catalog(make_assets(1))
        cache = DeploymentCache(tmp_path / "cache.json")
        _uploaded(cache, 0, catalog)

        cache.adopt_remote(0, "https://remote/m", "https://remote/md")

        entry = cache.entry(0)
        assert entry.on_chain
        assert entry.name == "Item #0"
        assert entry.media_uri == "https://remote/m"
        assert entry.content_hash == catalog.content_hash(0)

    def test_mark_unregistered(self, tmp_path, make_assets):
        catalog = load_catalog(make_assets(1))
        cache = DeploymentCache(tmp_path / "cache.json")
        _uploaded(cache, 0, catalog)
        cache.record_registered([0])

        cache.mark_unregistered([0, 5])

        assert cache.pending_registrations() == {0}

    def test_ledger_id_cannot_change(self, tmp_path):
        cache = DeploymentCache(tmp_path / "cache.json", ledger_id="ledger-1")
        cache.set_ledger_id("ledger-1")

        with pytest.raises(CacheError):
            cache.set_ledger_id("ledger-2")


class TestRunLock:
    def test_second_owner_is_refused(self, tmp_path):
        path = tmp_path / "cache.json"

        with run_lock(path):
            with pytest.raises(CacheError, match="in use"):
                with run_lock(path):
                    pass

    def test_lock_released_after_run(self, tmp_path):
        path = tmp_path / "cache.json"

        with run_lock(path):
            pass
        with run_lock(path):
            pass

        assert lock_path_for("run", path).name == "cache.json.run.lock"
