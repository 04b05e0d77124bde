# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.locks",
#   "purpose": "File locks guarding cache persistence and whole-run ownership of a cache",
#   "sections": [
#     {"id": "cache-lock", "name": "cache_lock", "anchor": "function-cache-lock", "kind": "function"},
#     {"id": "run-lock", "name": "run_lock", "anchor": "function-run-lock", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""File-based locking for deployment caches.

Responsibilities
----------------
- :func:`cache_lock` guards a single persist of the cache file.
- :func:`run_lock` is held for a whole deploy/verify run so two processes
  never drive the same cache at once.

Design Notes
------------
- Locks are implemented with :mod:`filelock` and default to hard locks; set
  ``ASSET_DEPLOY_LOCK_USE_SOFT`` to opt into soft locks (for filesystems
  without ``flock``).
- Lock files live next to the guarded file (``<name>.<category>.lock``).
  ``ASSET_DEPLOY_LOCK_TIMEOUT_<CATEGORY>`` overrides the wait in seconds.
"""

from __future__ import annotations

import contextlib
import logging
import os
import time
from pathlib import Path
from typing import Dict, Iterator, Optional

from filelock import FileLock, SoftFileLock, Timeout

from AssetLedger.Deploy.errors import CacheError

__all__ = ["Timeout", "cache_lock", "run_lock", "lock_path_for"]

LOGGER = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.INFO)

_SOFT_LOCK_ENV = "ASSET_DEPLOY_LOCK_USE_SOFT"
_LOCK_TIMEOUT_ENV_PREFIX = "ASSET_DEPLOY_LOCK_TIMEOUT_"

_DEFAULT_TIMEOUTS: Dict[str, float] = {
    "cache": 10.0,
    "run": 0.0,
}

_DEFAULT_POLL_INTERVAL = 0.05  # seconds


def _select_lock_class():
    return SoftFileLock if os.getenv(_SOFT_LOCK_ENV) else FileLock


def _timeout_for(category: str, override: Optional[float]) -> float:
    if override is not None:
        return float(override)
    env_name = f"{_LOCK_TIMEOUT_ENV_PREFIX}{category.upper()}"
    raw = os.getenv(env_name)
    if raw:
        try:
            value = float(raw)
            if value < 0:
                raise ValueError
            return value
        except ValueError:
            LOGGER.warning("Invalid %s value '%s'; falling back to default.", env_name, raw)
    return _DEFAULT_TIMEOUTS[category]


def lock_path_for(category: str, target: Path) -> Path:
    resolved = Path(target).expanduser().resolve(strict=False)
    return resolved.with_name(f"{resolved.name}.{category}.lock")


@contextlib.contextmanager
def _category_lock(
    category: str, target: Path, *, timeout: Optional[float] = None
) -> Iterator[None]:
    lock_file = lock_path_for(category, target)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock_cls = _select_lock_class()
    lock_timeout = _timeout_for(category, timeout)
    lock = lock_cls(str(lock_file), timeout=lock_timeout, thread_local=False)

    start = time.monotonic()
    try:
        lock.acquire(timeout=lock_timeout, poll_interval=_DEFAULT_POLL_INTERVAL)
    except Timeout:
        wait_ms = max((time.monotonic() - start) * 1000.0, 0.0)
        LOGGER.info(
            "lock-timeout category=%s wait_ms=%.3f lock_file=%s", category, wait_ms, lock_file
        )
        raise

    LOGGER.debug(
        "lock-acquired category=%s wait_ms=%.3f lock_file=%s",
        category,
        max((time.monotonic() - start) * 1000.0, 0.0),
        lock_file,
    )
    try:
        yield None
    finally:
        lock.release()
        LOGGER.debug("lock-release category=%s lock_file=%s", category, lock_file)


def cache_lock(path: Path, *, timeout: Optional[float] = None) -> Iterator[None]:
    """Return a context manager guarding one write of the cache file."""

    return _category_lock("cache", path, timeout=timeout)


@contextlib.contextmanager
def run_lock(path: Path, *, timeout: Optional[float] = None) -> Iterator[None]:
    """Hold exclusive ownership of the cache at ``path`` for a whole run.

    Raises:
        CacheError: if another process already owns the cache.
    """

    with contextlib.ExitStack() as stack:
        try:
            stack.enter_context(_category_lock("run", path, timeout=timeout))
        except Timeout as exc:
            raise CacheError(
                f"Cache {path} is in use by another deployment process "
                f"(lock {lock_path_for('run', path)})"
            ) from exc
        yield None
