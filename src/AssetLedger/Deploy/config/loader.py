# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.config.loader",
#   "purpose": "Configuration loading with file/env/CLI precedence.",
#   "sections": [
#     {"id": "read-file", "name": "_read_file", "anchor": "function-read-file", "kind": "function"},
#     {"id": "assign-nested", "name": "_assign_nested", "anchor": "function-assign-nested", "kind": "function"},
#     {"id": "coerce-env-value", "name": "_coerce_env_value", "anchor": "function-coerce-env-value", "kind": "function"},
#     {"id": "merge-env-overrides", "name": "_merge_env_overrides", "anchor": "function-merge-env-overrides", "kind": "function"},
#     {"id": "merge-cli-overrides", "name": "_merge_cli_overrides", "anchor": "function-merge-cli-overrides", "kind": "function"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"},
#     {"id": "validate-config-file", "name": "validate_config_file", "anchor": "function-validate-config-file", "kind": "function"},
#     {"id": "export-config-schema", "name": "export_config_schema", "anchor": "function-export-config-schema", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""
Configuration Loading with File/Env/CLI Precedence

Implements three-level config composition:
1. **File level** (YAML/JSON): base configuration
2. **Environment level**: ASSET_DEPLOY_* prefixed variables override file
3. **CLI level**: programmatic overrides win

Environment variables use double-underscore notation:
  ASSET_DEPLOY_LEDGER__BATCH_CAPACITY=8  →  ledger.batch_capacity=8
  ASSET_DEPLOY_UPLOAD__RATE_LIMITS='["10/SECOND"]'  →  upload.rate_limits=[...]

``ASSET_DEPLOY_LOCK_*`` variables belong to the lock layer and
``ASSET_DEPLOY_CONFIG`` names the config file; both are skipped.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .models import DeployConfig

_LOGGER = logging.getLogger(__name__)

DEFAULT_ENV_PREFIX = "ASSET_DEPLOY_"
_RESERVED_ENV_PREFIXES = ("LOCK_",)
_RESERVED_ENV_KEYS = ("CONFIG",)

# ============================================================================
# Helpers
# ============================================================================


def _read_file(path: str | Path) -> dict[str, Any]:
    """
    Read YAML or JSON config file.

    Raises:
        ValueError: If file cannot be read or parsed
    """
    p = Path(path)
    if not p.exists():
        raise ValueError(f"Config file not found: {path}")

    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e

    suffix = p.suffix.lower()

    if suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e
    elif suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e
    else:
        raise ValueError(f"Unsupported file format: {suffix}. Use .yaml or .json")

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data


def _assign_nested(data: dict[str, Any], dotted_key: str, value: Any) -> None:
    """
    Assign value to nested dict using dot notation.

    Example:
        _assign_nested(data, "ledger.batch_capacity", 8)
        → data["ledger"]["batch_capacity"] = 8
    """
    keys = dotted_key.split(".")
    current = data

    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]

    current[keys[-1]] = value


def _coerce_env_value(value: str) -> Any:
    """
    Coerce an environment variable string.

    JSON first (lists, dicts, bools, numbers, null), then true/false, then
    the raw string.
    """
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        pass

    if value.lower() in ("true", "false"):
        return value.lower() == "true"

    return value


def _merge_env_overrides(data: dict[str, Any], env_prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """Overlay ``env_prefix`` variables onto the config dict."""
    for env_key, env_value in sorted(os.environ.items()):
        if not env_key.startswith(env_prefix):
            continue
        relative = env_key[len(env_prefix) :]
        if relative in _RESERVED_ENV_KEYS or relative.startswith(_RESERVED_ENV_PREFIXES):
            continue

        dotted_key = relative.lower().replace("__", ".")
        coerced_value = _coerce_env_value(env_value)
        _assign_nested(data, dotted_key, coerced_value)
        _LOGGER.debug("Environment override: %s -> %s", env_key, dotted_key)

    return data


def _merge_cli_overrides(
    data: dict[str, Any], cli_overrides: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Recursively merge CLI overrides into the config dict; later values win."""
    if not cli_overrides:
        return data

    for key, value in cli_overrides.items():
        if isinstance(value, Mapping) and isinstance(data.get(key), dict):
            data[key] = _merge_cli_overrides(data[key], value)
        else:
            data[key] = dict(value) if isinstance(value, Mapping) else value
        _LOGGER.debug("CLI override: %s", key)

    return data


# ============================================================================
# Public API
# ============================================================================


def load_config(
    path: str | Path | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_overrides: Mapping[str, Any] | None = None,
) -> DeployConfig:
    """
    Load DeployConfig from file, environment, and CLI with proper precedence.

    **Precedence:** file < environment < CLI

    Raises:
        ValueError: If the file cannot be read or parsed
        pydantic.ValidationError: If the composed config is invalid
    """
    data: dict[str, Any] = {}

    if path:
        data = _read_file(path)
        _LOGGER.info("Loaded config from %s", path)

    data = _merge_env_overrides(data, env_prefix)
    data = _merge_cli_overrides(data, cli_overrides)

    config = DeployConfig.model_validate(data)
    _LOGGER.info("Configuration validated. Config hash: %s...", config.config_hash()[:8])
    return config


def validate_config_file(path: str | Path) -> bool:
    """
    Validate a config file (environment overrides included).

    Raises:
        ValueError or pydantic.ValidationError: If invalid
    """
    load_config(path=path)
    return True


def export_config_schema() -> dict[str, Any]:
    """Export the JSON Schema for DeployConfig (Pydantic v2 format)."""
    return DeployConfig.model_json_schema()
