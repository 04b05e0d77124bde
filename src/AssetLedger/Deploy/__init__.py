"""Asset deployment pipeline: upload a collection, register it on a ledger.

Example:
    from AssetLedger.Deploy import load_config, run_deploy

    report = run_deploy(load_config("deploy.yaml"))
    raise SystemExit(report.exit_code)
"""

from __future__ import annotations

import importlib
import sys
from typing import Any

__version__ = "0.1.0"

_ATTRIBUTE_EXPORTS: dict[str, tuple[str, str]] = {
    "AssetCatalog": (".catalog", "AssetCatalog"),
    "load_catalog": (".catalog", "load_catalog"),
    "DeploymentCache": (".cache", "DeploymentCache"),
    "load_cache": (".cache", "load_cache"),
    "UploadOrchestrator": (".orchestrator.scheduler", "UploadOrchestrator"),
    "LedgerWriter": (".ledger_writer", "LedgerWriter"),
    "Reconciler": (".reconciler", "Reconciler"),
    "PipelineDriver": (".pipeline", "PipelineDriver"),
    "RunReport": (".pipeline", "RunReport"),
    "RetryPolicy": (".retries", "RetryPolicy"),
    "CancellationToken": (".cancellation", "CancellationToken"),
    "DeployConfig": (".config.models", "DeployConfig"),
    "load_config": (".config.loader", "load_config"),
    "run_deploy": (".bootstrap", "run_deploy"),
    "run_verify": (".bootstrap", "run_verify"),
}

__all__ = sorted({"__version__", *_ATTRIBUTE_EXPORTS})


def __getattr__(name: str) -> Any:
    if name in _ATTRIBUTE_EXPORTS:
        module_path, attr_name = _ATTRIBUTE_EXPORTS[name]
        module = importlib.import_module(f"{__name__}{module_path}")
        value = getattr(module, attr_name)
        setattr(sys.modules[__name__], name, value)
        return value
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> list[str]:  # pragma: no cover - tooling helper
    return sorted(set(globals()) | set(__all__))
