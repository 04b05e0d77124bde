# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.catalog",
#   "purpose": "Load and validate the ordered asset collection; compute content hashes",
#   "sections": [
#     {"id": "asset", "name": "Asset", "anchor": "class-asset", "kind": "class"},
#     {"id": "assetcatalog", "name": "AssetCatalog", "anchor": "class-assetcatalog", "kind": "class"},
#     {"id": "load-catalog", "name": "load_catalog", "anchor": "function-load-catalog", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Asset catalog for deployment runs.

A collection lives in one directory. Every asset is a metadata record named
``<index>.json`` whose ``image`` field names the media file, relative to the
same directory::

    assets/
      0.json   {"name": "Item #0", "image": "0.png", ...}
      0.png
      1.json
      1.png

Indices must form the dense range ``[0, N)``. ``0.json`` and ``00.json`` both
claim index 0 and are rejected as duplicates. Files that are not
``<digits>.json`` records are ignored unless a record references them.

The catalog is read-only once loaded. :meth:`AssetCatalog.content_hash`
hashes the media and metadata bytes on first use and memoises the digest.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Sequence

from AssetLedger.Deploy.errors import CatalogError

__all__ = ["Asset", "AssetCatalog", "load_catalog", "MEDIA_REFERENCE_FIELD"]

LOGGER = logging.getLogger(__name__)

MEDIA_REFERENCE_FIELD = "image"
_RECORD_PATTERN = re.compile(r"^(\d+)\.json$")
_HASH_CHUNK = 1 << 20


@dataclass(frozen=True)
class Asset:
    """One collection item. ``index`` is its only identity."""

    index: int
    media_path: Path
    metadata_path: Path
    metadata: Mapping[str, Any] = field(compare=False, repr=False)

    @property
    def name(self) -> str:
        return str(self.metadata.get("name", ""))

    @property
    def media_reference(self) -> str:
        return str(self.metadata.get(MEDIA_REFERENCE_FIELD, ""))


class AssetCatalog(Sequence[Asset]):
    """Ordered, validated collection of :class:`Asset` objects."""

    def __init__(self, root: Path, assets: Sequence[Asset]) -> None:
        self.root = root
        self._assets: List[Asset] = list(assets)
        self._hashes: Dict[int, str] = {}
        self._hash_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._assets)

    def __getitem__(self, index):  # type: ignore[override]
        return self._assets[index]

    def __iter__(self) -> Iterator[Asset]:
        return iter(self._assets)

    def indices(self) -> range:
        return range(len(self._assets))

    def asset(self, index: int) -> Asset:
        if not 0 <= index < len(self._assets):
            raise CatalogError(f"Index {index} is outside the catalog range [0, {len(self._assets)})")
        return self._assets[index]

    def content_hash(self, index: int) -> str:
        """Return the digest of asset ``index``'s media and metadata bytes.

        The digest covers the media bytes followed by the metadata bytes, each
        length-prefixed so moving bytes between the two files changes it.
        """

        cached = self._hashes.get(index)
        if cached is not None:
            return cached

        asset = self.asset(index)
        digest = hashlib.sha256()
        try:
            for path in (asset.media_path, asset.metadata_path):
                digest.update(str(path.stat().st_size).encode("ascii") + b"\0")
                with path.open("rb") as handle:
                    for chunk in iter(lambda: handle.read(_HASH_CHUNK), b""):
                        digest.update(chunk)
        except OSError as exc:
            raise CatalogError(f"Cannot read asset {index}: {exc}") from exc

        value = f"sha256:{digest.hexdigest()}"
        with self._hash_lock:
            self._hashes[index] = value
        return value


def _read_record(path: Path) -> Mapping[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise CatalogError(f"Cannot read metadata file {path.name}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise CatalogError(f"Invalid JSON in {path.name}: {exc}") from exc
    if not isinstance(payload, dict):
        raise CatalogError(f"Metadata file {path.name} must contain a JSON object")
    return payload


def load_catalog(source_directory: Path | str) -> AssetCatalog:
    """Load and validate the collection stored in ``source_directory``.

    Raises:
        CatalogError: if the directory is missing, indices are duplicated or
            not dense, a record lacks a name or media reference, or a
            referenced media file does not exist.
    """

    root = Path(source_directory).expanduser()
    if not root.is_dir():
        raise CatalogError(f"Assets directory not found: {root}")

    records: Dict[int, Path] = {}
    for path in sorted(root.iterdir()):
        match = _RECORD_PATTERN.match(path.name)
        if not match or not path.is_file():
            continue
        index = int(match.group(1))
        if index in records:
            raise CatalogError(
                f"Duplicate index {index}: {records[index].name} and {path.name}"
            )
        records[index] = path

    if not records:
        raise CatalogError(f"No metadata records found in {root}")

    expected = set(range(len(records)))
    if set(records) != expected:
        missing = sorted(expected - set(records))
        extra = sorted(set(records) - expected)
        raise CatalogError(
            f"Asset indices must be contiguous from 0 to {len(records) - 1}; "
            f"missing={missing[:10]} unexpected={extra[:10]}"
        )

    assets: List[Asset] = []
    for index in range(len(records)):
        metadata_path = records[index]
        metadata = _read_record(metadata_path)

        name = metadata.get("name")
        if not isinstance(name, str) or not name.strip():
            raise CatalogError(f"Asset {index} has no name in {metadata_path.name}")

        reference = metadata.get(MEDIA_REFERENCE_FIELD)
        if not isinstance(reference, str) or not reference.strip():
            raise CatalogError(
                f"Asset {index} has no '{MEDIA_REFERENCE_FIELD}' media reference"
            )
        media_path = (root / reference).resolve()
        if not media_path.is_file():
            raise CatalogError(f"Asset {index} references missing media file '{reference}'")

        assets.append(
            Asset(
                index=index,
                media_path=media_path,
                metadata_path=metadata_path,
                metadata=metadata,
            )
        )

    LOGGER.info("Loaded catalog of %d assets from %s", len(assets), root)
    return AssetCatalog(root, assets)
