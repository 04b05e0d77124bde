"""
Structured Logging Utilities

Centralizes logging setup for deployment runs: a console handler for the
operator and, when a log directory is configured, a rotating JSON-lines file
with secrets masked. Old log files are gzip-compressed and eventually deleted
according to the retention window.
"""

from __future__ import annotations

import gzip
import json
import logging
import sys
import uuid
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

from AssetLedger.Deploy.config.models import LoggingConfig

ROOT_LOGGER_NAME = "AssetLedger.Deploy"
_MANAGED_ATTR = "_asset_deploy_managed"
_SENSITIVE_KEYS = {"authorization", "api_key", "apikey", "token", "secret", "password"}


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Remove secrets from structured payloads prior to logging.

    Examples:
        >>> mask_sensitive_data({"api_key": "secret", "status": "ok"})
        {'api_key': '***masked***', 'status': 'ok'}
    """
    masked: Dict[str, object] = {}
    for key, value in payload.items():
        lower = key.lower()
        if lower in _SENSITIVE_KEYS:
            masked[key] = "***masked***"
        elif isinstance(value, str) and "bearer " in value.lower():
            masked[key] = "***masked***"
        else:
            masked[key] = value
    return masked


def generate_run_id() -> str:
    """Short identifier linking the log lines of one run."""
    return uuid.uuid4().hex[:12]


class JSONFormatter(logging.Formatter):
    """Formatter emitting one JSON object per log record.

    Examples:
        >>> formatter = JSONFormatter(run_id="abc")
        >>> isinstance(formatter.format(logging.makeLogRecord({'msg': 'test'})), str)
        True
    """

    def __init__(self, run_id: Optional[str] = None) -> None:
        super().__init__()
        self.run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        log_obj = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": self.run_id,
            "thread": record.threadName,
        }
        if hasattr(record, "extra_fields") and isinstance(record.extra_fields, dict):
            log_obj.update(record.extra_fields)
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(log_obj), default=str)


def _compress_old_log(path: Path) -> None:
    compressed_path = path.with_suffix(path.suffix + ".gz")
    with path.open("rb") as source, gzip.open(compressed_path, "wb") as target:
        target.write(source.read())
    path.unlink(missing_ok=True)


def _cleanup_logs(log_dir: Path, retention_days: int) -> None:
    """Compress logs older than the retention window, delete older archives."""
    if retention_days <= 0:
        return
    now = datetime.now(timezone.utc)
    retention_delta = timedelta(days=retention_days)
    for file in log_dir.glob("*.jsonl"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta:
            _compress_old_log(file)
    for file in log_dir.glob("*.jsonl.gz"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > 2 * retention_delta:
            file.unlink(missing_ok=True)


def setup_logging(
    config: LoggingConfig,
    log_dir: Optional[Path] = None,
    *,
    run_id: Optional[str] = None,
) -> logging.Logger:
    """Install console and (optionally) JSON file handlers.

    Repeated calls replace the handlers installed by earlier calls.

    Args:
        config: Level, rotation and retention settings.
        log_dir: Directory override; falls back to ``config.log_dir``. No file
            handler is installed when neither is set.
        run_id: Identifier stamped on JSON records.

    Returns:
        The package logger.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, _MANAGED_ATTR, False):
            logger.removeHandler(handler)
            handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    setattr(stream_handler, _MANAGED_ATTR, True)
    logger.addHandler(stream_handler)

    target_dir = log_dir or config.log_dir
    if target_dir is not None:
        target_dir = Path(target_dir).expanduser()
        target_dir.mkdir(parents=True, exist_ok=True)
        _cleanup_logs(target_dir, config.retention_days)

        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            target_dir / f"asset-deploy-{today}.jsonl",
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter(run_id=run_id or generate_run_id()))
        setattr(file_handler, _MANAGED_ATTR, True)
        logger.addHandler(file_handler)

    logger.propagate = True
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger


__all__ = ["setup_logging", "mask_sensitive_data", "generate_run_id", "JSONFormatter"]
