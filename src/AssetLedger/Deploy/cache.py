# === NAVMAP v1 ===
# {
#   "module": "AssetLedger.Deploy.cache",
#   "purpose": "Persisted per-asset deployment progress with atomic replace-on-write",
#   "sections": [
#     {"id": "cacheentry", "name": "CacheEntry", "anchor": "class-cacheentry", "kind": "class"},
#     {"id": "ledgersection", "name": "LedgerSection", "anchor": "class-ledgersection", "kind": "class"},
#     {"id": "cachedocument", "name": "CacheDocument", "anchor": "class-cachedocument", "kind": "class"},
#     {"id": "deploymentcache", "name": "DeploymentCache", "anchor": "class-deploymentcache", "kind": "class"},
#     {"id": "load-cache", "name": "load_cache", "anchor": "function-load-cache", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Deployment cache: the local, persisted projection of remote ledger state.

The cache is a JSON document keyed by asset index::

    {
      "version": 1,
      "ledger": {"ledger_id": "Ldg...", "last_reconciled": "2026-10-19T08:00:00Z"},
      "items": {
        "0": {"name": "Item #0", "media_uri": "...", "metadata_uri": "...",
              "content_hash": "sha256:...", "on_chain": true}
      }
    }

Reading is forward compatible: unknown fields are ignored and missing fields
default to "pending". A file that exists but cannot be parsed raises
:class:`CacheCorrupt`; the cache is never discarded automatically.

Mutation follows a single-writer discipline. Upload workers and the ledger
writer report results to one aggregation point, which calls the ``record_*``
methods followed by :meth:`DeploymentCache.persist`. Instances are therefore
not guarded by an in-process lock.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, Dict, Iterable, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from AssetLedger.Deploy.errors import CacheCorrupt, CacheError
from AssetLedger.Deploy.io_utils import atomic_write_json
from AssetLedger.Deploy.locks import Timeout, cache_lock

if TYPE_CHECKING:
    from AssetLedger.Deploy.catalog import AssetCatalog

__all__ = [
    "CACHE_VERSION",
    "CacheEntry",
    "LedgerSection",
    "CacheDocument",
    "DeploymentCache",
    "load_cache",
]

LOGGER = logging.getLogger(__name__)

CACHE_VERSION = 1


class CacheEntry(BaseModel):
    """Progress of one asset."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="ignore")

    name: Optional[str] = None
    media_uri: Optional[str] = None
    metadata_uri: Optional[str] = None
    content_hash: Optional[str] = None
    on_chain: bool = False

    @model_validator(mode="after")
    def _registered_requires_uris(self) -> "CacheEntry":
        if self.on_chain and not self.uploaded:
            LOGGER.warning(
                "Cache entry marked on_chain without both URIs; treating it as unregistered"
            )
            self.on_chain = False
        return self

    @property
    def uploaded(self) -> bool:
        return bool(self.media_uri) and bool(self.metadata_uri)


class LedgerSection(BaseModel):
    """Global cache metadata: which ledger the deployment targets."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="ignore")

    ledger_id: Optional[str] = None
    last_reconciled: Optional[datetime] = None


class CacheDocument(BaseModel):
    """Persisted form of the whole cache."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="ignore")

    version: int = CACHE_VERSION
    ledger: LedgerSection = Field(default_factory=LedgerSection)
    items: Dict[str, CacheEntry] = Field(default_factory=dict)


class DeploymentCache:
    """Mapping from asset index to :class:`CacheEntry` plus ledger metadata."""

    def __init__(
        self,
        path: Path | str,
        *,
        ledger_id: Optional[str] = None,
        last_reconciled: Optional[datetime] = None,
        entries: Optional[Dict[int, CacheEntry]] = None,
    ) -> None:
        self.path = Path(path)
        self.ledger_id = ledger_id
        self.last_reconciled = last_reconciled
        self._entries: Dict[int, CacheEntry] = dict(entries or {})

    # ------------------------------------------------------------------ #
    # Loading
    # ------------------------------------------------------------------ #

    @classmethod
    def load(cls, path: Path | str) -> "DeploymentCache":
        """Read the cache at ``path``; a missing file yields an empty cache."""

        cache_path = Path(path)
        if not cache_path.exists():
            LOGGER.info("No cache at %s; starting a new deployment cache", cache_path)
            return cls(cache_path)

        try:
            raw = cache_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CacheError(f"Failed to open cache file {cache_path}: {exc}") from exc

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CacheCorrupt(str(cache_path), f"invalid JSON ({exc})") from exc
        if not isinstance(payload, dict):
            raise CacheCorrupt(str(cache_path), "top-level value must be an object")

        try:
            document = CacheDocument.model_validate(payload)
        except ValidationError as exc:
            raise CacheCorrupt(str(cache_path), str(exc)) from exc

        if document.version > CACHE_VERSION:
            LOGGER.warning(
                "Cache %s was written by a newer version (%d); unknown fields are ignored",
                cache_path,
                document.version,
            )

        entries: Dict[int, CacheEntry] = {}
        for key, entry in document.items.items():
            try:
                index = int(key)
            except ValueError as exc:
                raise CacheCorrupt(str(cache_path), f"item key {key!r} is not an index") from exc
            if index < 0:
                raise CacheCorrupt(str(cache_path), f"item key {key!r} is negative")
            entries[index] = entry

        cache = cls(
            cache_path,
            ledger_id=document.ledger.ledger_id,
            last_reconciled=document.ledger.last_reconciled,
            entries=entries,
        )
        LOGGER.info(
            "Loaded cache %s: %d entries, ledger=%s", cache_path, len(entries), cache.ledger_id
        )
        return cache

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, index: object) -> bool:
        return index in self._entries

    def indices(self) -> Set[int]:
        return set(self._entries)

    def entry(self, index: int) -> CacheEntry:
        """Return the entry for ``index`` (an empty, pending entry if absent)."""

        return self._entries.get(index) or CacheEntry()

    def pending_uploads(self, catalog: "AssetCatalog") -> Set[int]:
        """Indices whose URIs are unset or whose content changed since upload."""

        pending: Set[int] = set()
        for index in catalog.indices():
            entry = self._entries.get(index)
            if entry is None or not entry.uploaded:
                pending.add(index)
            elif entry.content_hash != catalog.content_hash(index):
                pending.add(index)
        return pending

    def pending_registrations(self) -> Set[int]:
        """Indices with both URIs set that are not yet confirmed on the ledger."""

        return {
            index
            for index, entry in self._entries.items()
            if entry.uploaded and not entry.on_chain
        }

    def registered_indices(self) -> Set[int]:
        return {index for index, entry in self._entries.items() if entry.on_chain}

    # ------------------------------------------------------------------ #
    # Mutations (single writer)
    # ------------------------------------------------------------------ #

    def record_upload(
        self,
        index: int,
        media_uri: str,
        metadata_uri: str,
        content_hash: str,
        *,
        name: Optional[str] = None,
    ) -> None:
        """Record a completed upload; clears ``on_chain`` if the URIs changed."""

        previous = self._entries.get(index)
        on_chain = False
        if previous is not None and previous.on_chain:
            on_chain = (
                previous.media_uri == media_uri and previous.metadata_uri == metadata_uri
            )
        self._entries[index] = CacheEntry(
            name=name if name is not None else (previous.name if previous else None),
            media_uri=media_uri,
            metadata_uri=metadata_uri,
            content_hash=content_hash,
            on_chain=on_chain,
        )

    def record_registered(self, indices: Iterable[int]) -> None:
        """Mark ``indices`` as confirmed on the ledger.

        Only call this after the ledger confirmed the write.
        """

        for index in indices:
            entry = self._entries.get(index)
            if entry is None or not entry.uploaded:
                raise CacheError(f"Cannot mark index {index} registered: it has no uploaded URIs")
            self._entries[index] = entry.model_copy(update={"on_chain": True})

    def adopt_remote(
        self,
        index: int,
        media_uri: str,
        metadata_uri: str,
        *,
        content_hash: Optional[str] = None,
    ) -> None:
        """Overwrite ``index`` with what the remote ledger holds and mark it registered."""

        previous = self._entries.get(index)
        self._entries[index] = CacheEntry(
            name=previous.name if previous else None,
            media_uri=media_uri,
            metadata_uri=metadata_uri,
            content_hash=content_hash if content_hash is not None else (
                previous.content_hash if previous else None
            ),
            on_chain=True,
        )

    def mark_unregistered(self, indices: Iterable[int]) -> None:
        for index in indices:
            entry = self._entries.get(index)
            if entry is not None and entry.on_chain:
                self._entries[index] = entry.model_copy(update={"on_chain": False})

    def set_ledger_id(self, ledger_id: str) -> None:
        if self.ledger_id and self.ledger_id != ledger_id:
            raise CacheError(
                f"Cache {self.path} already targets ledger {self.ledger_id}, not {ledger_id}"
            )
        self.ledger_id = ledger_id

    def mark_reconciled(self, when: Optional[datetime] = None) -> None:
        self.last_reconciled = when or datetime.now(timezone.utc)

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def to_document(self) -> CacheDocument:
        return CacheDocument(
            version=CACHE_VERSION,
            ledger=LedgerSection(ledger_id=self.ledger_id, last_reconciled=self.last_reconciled),
            items={str(index): self._entries[index] for index in sorted(self._entries)},
        )

    def persist(self) -> None:
        """Write the cache atomically under the cache file lock.

        Raises:
            CacheError: if the file cannot be written. The previous file stays
                intact.
        """

        payload = self.to_document().model_dump(mode="json")
        try:
            with cache_lock(self.path):
                atomic_write_json(self.path, payload)
        except (OSError, Timeout) as exc:
            raise CacheError(f"Failed to persist cache {self.path}: {exc}") from exc
        LOGGER.debug("Persisted cache %s (%d entries)", self.path, len(self._entries))


def load_cache(path: Path | str) -> DeploymentCache:
    """Module-level alias for :meth:`DeploymentCache.load`."""

    return DeploymentCache.load(path)
