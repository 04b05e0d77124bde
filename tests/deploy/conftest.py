"""Shared fixtures for the deployment pipeline tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest

from AssetLedger.Deploy.bootstrap import build_driver
from AssetLedger.Deploy.cache import DeploymentCache
from AssetLedger.Deploy.cancellation import CancellationToken
from AssetLedger.Deploy.catalog import load_catalog
from AssetLedger.Deploy.config.models import DeployConfig
from AssetLedger.Deploy.pipeline import PipelineDriver
from AssetLedger.Deploy.retries import RetryPolicy

from fakes import FakeLedger, FakeStorage, SleepRecorder, write_asset


@pytest.fixture
def make_assets(tmp_path: Path) -> Callable[..., Path]:
    def _make(count: int, directory: str = "assets") -> Path:
        root = tmp_path / directory
        root.mkdir(parents=True, exist_ok=True)
        for index in range(count):
            write_asset(root, index)
        return root

    return _make


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fast_policy(sleep_recorder: SleepRecorder) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3, base_delay_s=0.0, max_delay_s=0.0, jitter_s=0.0, sleep=sleep_recorder
    )


@pytest.fixture
def make_driver(fast_policy: RetryPolicy) -> Callable[..., PipelineDriver]:
    """Build a driver over fakes for ``assets_dir``/``cache_path``."""

    def _make(
        assets_dir: Path,
        cache_path: Path,
        *,
        storage: Optional[FakeStorage],
        ledger: FakeLedger,
        capacity: int = 2,
        workers: int = 2,
        cancel: Optional[CancellationToken] = None,
        ledger_id: Optional[str] = None,
        expected_items: Optional[int] = None,
    ) -> PipelineDriver:
        config = DeployConfig.model_validate(
            {
                "assets_dir": str(assets_dir),
                "cache_path": str(cache_path),
                "expected_items": expected_items,
                "ledger": {"batch_capacity": capacity, "ledger_id": ledger_id},
                "upload": {"workers": workers},
            }
        )
        return build_driver(
            config,
            load_catalog(assets_dir),
            DeploymentCache.load(cache_path),
            ledger=ledger,
            storage=storage,
            cancel=cancel,
            upload_retry=fast_policy,
            ledger_retry=fast_policy,
        )

    return _make
