# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.io_utils",
#   "purpose": "Atomic replace-on-write helpers for the cache and report files",
#   "sections": [
#     {
#       "id": "atomic-write-bytes",
#       "name": "atomic_write_bytes",
#       "anchor": "function-atomic-write-bytes",
#       "kind": "function"
#     },
#     {
#       "id": "atomic-write-json",
#       "name": "atomic_write_json",
#       "anchor": "function-atomic-write-json",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Atomic file write utilities.

**Purpose**
-----------
Persist the deployment cache and run reports so that a crash at any point
leaves either the previous file or the new file on disk, never a torn one.

**Safety & Reliability**
------------------------
- Temporary file in the destination directory, so ``os.replace`` stays on
  one filesystem and is atomic.
- ``fsync`` on the file before the rename and on the directory after it.
- The temporary file is removed on any failure.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Union

__all__ = ["atomic_write_bytes", "atomic_write_json"]

logger = logging.getLogger(__name__)


def atomic_write_bytes(dest_path: Union[str, Path], payload: bytes) -> int:
    """Write ``payload`` to ``dest_path`` atomically.

    Args:
        dest_path: Final location. Parent directories are created.
        payload: Complete file contents.

    Returns:
        Number of bytes written.

    Raises:
        OSError: If the write, fsync or rename fails. The destination is left
            untouched in that case.
    """
    dest = str(dest_path)
    dest_dir = os.path.dirname(dest) or "."
    os.makedirs(dest_dir, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        dir=dest_dir, prefix=f".{os.path.basename(dest)}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())

        os.replace(tmp_path, dest)

        if hasattr(os, "O_DIRECTORY"):
            dir_fd = os.open(dest_dir, os.O_DIRECTORY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
    except Exception:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise

    logger.debug("Atomically wrote %d bytes to %s", len(payload), dest)
    return len(payload)


def atomic_write_json(dest_path: Union[str, Path], data: Any, *, indent: int = 2) -> int:
    """Serialise ``data`` as JSON and write it atomically."""

    text = json.dumps(data, indent=indent, sort_keys=False, ensure_ascii=False) + "\n"
    return atomic_write_bytes(dest_path, text.encode("utf-8"))
