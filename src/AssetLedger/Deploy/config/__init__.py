"""
Deployment Configuration Package

Public API for loading, validating, and introspecting deployment configuration.

Example:
    from AssetLedger.Deploy.config import load_config

    config = load_config(
        path="deploy.yaml",
        cli_overrides={"upload": {"workers": 4}},
    )
    config_id = config.config_hash()
"""

from .loader import (
    export_config_schema,
    load_config,
    validate_config_file,
)
from .models import (
    DeployConfig,
    LedgerConfig,
    LoggingConfig,
    RetrySettings,
    StorageConfig,
    UploadConfig,
)

__all__ = [
    # Models
    "DeployConfig",
    "StorageConfig",
    "LedgerConfig",
    "UploadConfig",
    "RetrySettings",
    "LoggingConfig",
    # Loading/validation
    "load_config",
    "validate_config_file",
    "export_config_schema",
]
