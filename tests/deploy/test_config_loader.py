"""Configuration models and file < env < CLI precedence."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from AssetLedger.Deploy.config import (
    DeployConfig,
    export_config_schema,
    load_config,
    validate_config_file,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("ASSET_DEPLOY_"):
            monkeypatch.delenv(key, raising=False)


def _write_yaml(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


def test_defaults():
    config = load_config()

    assert config.assets_dir == Path("assets")
    assert config.ledger.batch_capacity == 10
    assert config.upload.workers >= 1
    assert config.upload.retry.max_attempts == 5
    assert config.expected_items is None


def test_yaml_file(tmp_path):
    path = _write_yaml(
        tmp_path / "deploy.yaml",
        {
            "assets_dir": "collection",
            "expected_items": 3,
            "ledger": {"batch_capacity": 4, "rpc_url": "https://rpc.example"},
            "upload": {"workers": 2, "rate_limits": ["10/SECOND"]},
        },
    )

    config = load_config(path)

    assert config.assets_dir == Path("collection")
    assert config.expected_items == 3
    assert config.ledger.batch_capacity == 4
    assert config.upload.rate_limits == ["10/SECOND"]


def test_json_file(tmp_path):
    path = tmp_path / "deploy.json"
    path.write_text(json.dumps({"cache_path": "state/cache.json"}))

    assert load_config(path).cache_path == Path("state/cache.json")


def test_precedence_file_env_cli(tmp_path, monkeypatch):
    path = _write_yaml(tmp_path / "deploy.yaml", {"ledger": {"batch_capacity": 4}, "upload": {"workers": 2}})
    monkeypatch.setenv("ASSET_DEPLOY_LEDGER__BATCH_CAPACITY", "6")
    monkeypatch.setenv("ASSET_DEPLOY_UPLOAD__WORKERS", "3")
    monkeypatch.setenv("ASSET_DEPLOY_UPLOAD__RATE_LIMITS", '["5/SECOND", "100/MINUTE"]')

    config = load_config(path, cli_overrides={"upload": {"workers": 8}})

    assert config.ledger.batch_capacity == 6
    assert config.upload.workers == 8
    assert config.upload.rate_limits == ["5/SECOND", "100/MINUTE"]


def test_lock_variables_are_not_config(monkeypatch):
    monkeypatch.setenv("ASSET_DEPLOY_LOCK_TIMEOUT_RUN", "5")

    assert load_config().ledger.batch_capacity == 10


@pytest.mark.parametrize(
    "data",
    [
        {"ledger": {"batch_capacity": 0}},
        {"upload": {"workers": 0}},
        {"upload": {"rate_limits": ["fast"]}},
        {"storage": {"endpoint": "ftp://host"}},
        {"expected_items": 0},
        {"logging": {"level": "chatty"}},
        {"unknown_section": {}},
    ],
)
def test_invalid_values_are_rejected(tmp_path, data):
    path = _write_yaml(tmp_path / "deploy.yaml", data)

    with pytest.raises(ValidationError):
        load_config(path)


def test_unreadable_files(tmp_path):
    with pytest.raises(ValueError, match="not found"):
        load_config(tmp_path / "missing.yaml")

    bad = tmp_path / "deploy.toml"
    bad.write_text("x = 1")
    with pytest.raises(ValueError, match="Unsupported"):
        load_config(bad)

    not_mapping = _write_yaml(tmp_path / "list.yaml", [1, 2])
    with pytest.raises(ValueError, match="mapping"):
        load_config(not_mapping)


def test_log_level_is_normalised():
    assert load_config(cli_overrides={"logging": {"level": "debug"}}).logging.level == "DEBUG"


def test_config_hash_ignores_secrets():
    plain = DeployConfig()
    with_keys = DeployConfig.model_validate({"storage": {"api_key": "a"}, "ledger": {"api_key": "b"}})
    other = DeployConfig.model_validate({"ledger": {"batch_capacity": 3}})

    assert plain.config_hash() == with_keys.config_hash()
    assert plain.config_hash() != other.config_hash()
    assert "api_key=" not in repr(with_keys.storage)


def test_retry_settings_build_policy():
    policy = DeployConfig.model_validate({"ledger_retry": {"max_attempts": 2, "jitter_s": 0}}).ledger_retry.to_policy()

    assert policy.max_attempts == 2
    assert policy.jitter_s == 0


def test_validate_and_schema(tmp_path):
    assert validate_config_file(_write_yaml(tmp_path / "ok.yaml", {"upload": {"workers": 1}}))

    schema = export_config_schema()
    assert "ledger" in schema["properties"]


def test_config_path_variable_is_not_a_setting(monkeypatch):
    monkeypatch.setenv("ASSET_DEPLOY_CONFIG", "/etc/deploy.yaml")

    assert load_config().cache_path == Path("cache.json")
