"""
Pydantic v2 Configuration Models for asset deployment

Provides strict, typed configuration for every deployment subsystem:
- Storage gateway client settings
- Ledger gateway client settings and batch capacity
- Upload pool width, rate limits and retry bounds
- Ledger call retry bounds
- Logging
- Top-level DeployConfig as single source of truth

All models use extra="forbid" for strict validation. Environment variables
and CLI overrides follow: file < env < CLI precedence.
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import ClassVar, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from AssetLedger.Deploy.ratelimit import parse_rates
from AssetLedger.Deploy.retries import RetryPolicy

# ============================================================================
# Shared Policy Models
# ============================================================================


class RetrySettings(BaseModel):
    """Retry bounds for one class of remote call."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=5, description="Total attempts (initial + retries)")
    base_delay_s: float = Field(default=0.5, description="First backoff delay in seconds")
    max_delay_s: float = Field(default=30.0, description="Backoff and Retry-After cap in seconds")
    jitter_s: float = Field(default=0.25, description="Uniform jitter added to each backoff")

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be >= 1")
        return v

    @field_validator("base_delay_s", "max_delay_s", "jitter_s")
    @classmethod
    def validate_delays(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delay values must be >= 0")
        return v

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_s=self.base_delay_s,
            max_delay_s=self.max_delay_s,
            jitter_s=self.jitter_s,
        )


# ============================================================================
# Remote Collaborators
# ============================================================================


class StorageConfig(BaseModel):
    """Upload gateway client settings."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    endpoint: str = Field(default="http://localhost:8080", description="Upload gateway base URL")
    api_key: Optional[str] = Field(default=None, repr=False, description="Bearer token")
    timeout_s: float = Field(default=60.0, description="Per-request timeout")

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("endpoint must be an http(s) URL")
        return v

    @field_validator("timeout_s")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_s must be > 0")
        return v


class LedgerConfig(BaseModel):
    """Ledger gateway client settings and registration policy."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    rpc_url: str = Field(default="http://localhost:8899", description="JSON-RPC endpoint")
    api_key: Optional[str] = Field(default=None, repr=False, description="Bearer token")
    ledger_id: Optional[str] = Field(
        default=None, description="Existing ledger to target; created on first deploy if unset"
    )
    batch_capacity: int = Field(default=10, description="Maximum registrations per transaction")
    max_uri_length: int = Field(default=200, description="Longest URI the ledger accepts")
    timeout_s: float = Field(default=30.0, description="Per-request timeout")
    confirm_timeout_s: float = Field(default=90.0, description="Transaction confirmation deadline")
    poll_interval_s: float = Field(default=1.0, description="Confirmation polling interval")

    @field_validator("rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("rpc_url must be an http(s) URL")
        return v

    @field_validator("batch_capacity", "max_uri_length")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Must be > 0")
        return v

    @field_validator("timeout_s", "confirm_timeout_s", "poll_interval_s")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Must be > 0")
        return v


class UploadConfig(BaseModel):
    """Upload worker pool configuration."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    workers: int = Field(
        default_factory=lambda: max(os.cpu_count() or 1, 1),
        description="Worker pool width (defaults to available CPUs)",
    )
    rate_limits: List[str] = Field(
        default_factory=list, description="Upload rates such as '10/SECOND'; empty disables"
    )
    rate_limit_max_wait_s: float = Field(
        default=30.0, description="Longest wait for a rate limiter token"
    )
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError("workers must be >= 1")
        return v

    @field_validator("rate_limits")
    @classmethod
    def validate_rate_limits(cls, v: List[str]) -> List[str]:
        parse_rates(v)
        return v

    @field_validator("rate_limit_max_wait_s")
    @classmethod
    def validate_max_wait(cls, v: float) -> float:
        if v < 0:
            raise ValueError("rate_limit_max_wait_s must be >= 0")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_dir: Optional[Path] = Field(default=None, description="Directory for JSON log files")
    max_bytes: int = Field(default=5 * 1024 * 1024, description="Rotate log file at this size")
    backup_count: int = Field(default=5, description="Rotated files to keep")
    retention_days: int = Field(default=30, description="Compress then delete older logs")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    @field_validator("max_bytes", "backup_count", "retention_days")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Must be >= 0")
        return v


# ============================================================================
# Top-Level Configuration
# ============================================================================


class DeployConfig(BaseModel):
    """Complete configuration for one deployment (catalog + cache + remotes)."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    assets_dir: Path = Field(default=Path("assets"), description="Directory holding the collection")
    cache_path: Path = Field(default=Path("cache.json"), description="Deployment cache file")
    expected_items: Optional[int] = Field(
        default=None, description="Required catalog size; unchecked when unset"
    )
    storage: StorageConfig = Field(default_factory=StorageConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    ledger_retry: RetrySettings = Field(default_factory=RetrySettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("expected_items")
    @classmethod
    def validate_expected_items(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("expected_items must be > 0")
        return v

    def config_hash(self) -> str:
        """Deterministic SHA256 of the normalized configuration, secrets excluded."""

        payload = self.model_dump(
            mode="json",
            exclude={"storage": {"api_key"}, "ledger": {"api_key"}},
        )
        normalized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(normalized.encode()).hexdigest()
