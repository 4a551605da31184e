"""
saved_searches.py — durable, capacity-bounded, deduplicated search history.

Each Telegram user's history is one JSON array stored under its own
namespaced key (`shoplens_saved_searches:<user_id>`):

  [{"id": 1718000000123, "imagePreview": "data:image/jpeg;base64,...",
    "analysis": {...AnalysisRecord.to_dict()...}}, ...]

Every operation is a full read-modify-write of that array. Handlers run
on one event loop but interleave at await points, so each cycle holds
the store's asyncio.Lock — two overlapping saves never lose each other.

Failure handling:
  • Corrupt data on read  → treated as empty, key reset, warning logged
  • Write to medium fails → logged, StoreOutcome.PERSIST_FAILED returned
  • Read of medium fails  → list() is empty; save/delete write nothing
                            and return StoreOutcome.PERSIST_FAILED
None of these is ever raised to the caller.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import config
from models import AnalysisRecord

logger = logging.getLogger(__name__)


# ── Durable medium ────────────────────────────────────────────────────────────

class KeyValueBackend(ABC):
    """String key → string value medium the store persists into."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class SqliteBackend(KeyValueBackend):
    """kv_store table in the bot's SQLite database."""

    async def get(self, key: str) -> Optional[str]:
        import database as db
        return await db.kv_get(key)

    async def set(self, key: str, value: str) -> None:
        import database as db
        await db.kv_set(key, value)

    async def delete(self, key: str) -> None:
        import database as db
        await db.kv_delete(key)


class MemoryBackend(KeyValueBackend):
    """In-process dict. Used by tests and as a throwaway fallback."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self.data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


# ── Types ─────────────────────────────────────────────────────────────────────

class StoreOutcome(enum.Enum):
    SAVED          = "saved"
    DUPLICATE      = "duplicate"
    DELETED        = "deleted"
    NOT_FOUND      = "not_found"
    PERSIST_FAILED = "persist_failed"


class CorruptStateError(ValueError):
    """Persisted history could not be parsed. Always recovered internally."""


@dataclass(frozen=True)
class SavedSearchEntry:
    id: int
    image_preview: str
    analysis: AnalysisRecord

    @classmethod
    def from_dict(cls, data: dict) -> "SavedSearchEntry":
        if not isinstance(data, dict):
            raise CorruptStateError(f"entry must be an object, got {type(data).__name__}")
        try:
            entry_id = data["id"]
            preview = data["imagePreview"]
            analysis = AnalysisRecord.from_dict(data["analysis"])
        except (KeyError, TypeError, ValueError, OverflowError) as exc:
            raise CorruptStateError(f"malformed entry: {exc}") from exc
        if not isinstance(entry_id, int) or isinstance(entry_id, bool):
            raise CorruptStateError(f"entry id must be an integer, got {entry_id!r}")
        if not isinstance(preview, str):
            raise CorruptStateError("imagePreview must be a string")
        return cls(id=entry_id, image_preview=preview, analysis=analysis)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "imagePreview": self.image_preview,
            "analysis": self.analysis.to_dict(),
        }


@dataclass(frozen=True)
class LoadResult:
    entries: list[SavedSearchEntry]
    recovered: bool = False     # True when corrupt data was discarded
    readable: bool = True       # False when the medium itself could not be read


def _parse(raw: str | bytes) -> list[SavedSearchEntry]:
    # bytes: SQLite may hand back a BLOB from the TEXT column
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as exc:
        raise CorruptStateError(f"invalid JSON: {type(exc).__name__}: {exc}") from exc
    if not isinstance(data, list):
        raise CorruptStateError(f"expected a JSON array, got {type(data).__name__}")
    return [SavedSearchEntry.from_dict(item) for item in data]


def _now_ms() -> int:
    return int(time.time() * 1000)


# ── Store ─────────────────────────────────────────────────────────────────────

class SavedSearchStore:
    """
    Recent searches, most-recent-first, at most `capacity` entries,
    no two entries with structurally equal analyses.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        key: str = config.SAVED_SEARCHES_KEY,
        capacity: int = config.MAX_SAVED_SEARCHES,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.backend  = backend
        self.key      = key
        self.capacity = capacity
        self._lock    = asyncio.Lock()
        self._last_id = 0

    # ── Read ───────────────────────────────────────────────────────────────────

    async def load(self) -> LoadResult:
        """list() plus a flag telling whether corrupt data was discarded."""
        async with self._lock:
            return await self._load_unlocked()

    async def list(self) -> list[SavedSearchEntry]:
        return (await self.load()).entries

    async def get(self, entry_id: int) -> Optional[SavedSearchEntry]:
        for entry in await self.list():
            if entry.id == entry_id:
                return entry
        return None

    async def contains(self, analysis: AnalysisRecord) -> bool:
        return any(e.analysis == analysis for e in await self.list())

    # ── Write ──────────────────────────────────────────────────────────────────

    async def save(self, analysis: AnalysisRecord, image_preview: str) -> StoreOutcome:
        """
        Prepend a new entry unless an equal analysis is already stored.
        Oldest entries beyond capacity are dropped.
        """
        if not isinstance(analysis, AnalysisRecord):
            raise TypeError(f"analysis must be an AnalysisRecord, got {type(analysis).__name__}")
        if not isinstance(image_preview, str) or not image_preview.strip():
            raise ValueError("image_preview must be a non-empty string")

        async with self._lock:
            loaded = await self._load_unlocked()
            if not loaded.readable:
                # Never overwrite a history that could not be read
                return StoreOutcome.PERSIST_FAILED
            entries = loaded.entries

            if any(e.analysis == analysis for e in entries):
                logger.debug("saved_searches: duplicate analysis ignored (%s)", analysis.item_type)
                return StoreOutcome.DUPLICATE

            entry = SavedSearchEntry(
                id=self._next_id(entries),
                image_preview=image_preview,
                analysis=analysis,
            )
            updated = [entry, *entries][: self.capacity]

            if not await self._persist(updated):
                return StoreOutcome.PERSIST_FAILED
            logger.info(
                "saved_searches: saved #%d '%s' (%d/%d)",
                entry.id, analysis.item_type, len(updated), self.capacity,
            )
            return StoreOutcome.SAVED

    async def delete(self, entry_id: int) -> StoreOutcome:
        """Remove the entry with this id. Unknown ids are a no-op."""
        async with self._lock:
            loaded = await self._load_unlocked()
            if not loaded.readable:
                return StoreOutcome.PERSIST_FAILED
            entries = loaded.entries
            updated = [e for e in entries if e.id != entry_id]
            if len(updated) == len(entries):
                return StoreOutcome.NOT_FOUND
            if not await self._persist(updated):
                return StoreOutcome.PERSIST_FAILED
            logger.info("saved_searches: deleted #%d", entry_id)
            return StoreOutcome.DELETED

    # ── Internals (caller holds self._lock) ───────────────────────────────────

    async def _load_unlocked(self) -> LoadResult:
        try:
            raw = await self.backend.get(self.key)
        except Exception as exc:
            logger.error("saved_searches: failed to read %s: %s", self.key, exc)
            return LoadResult(entries=[], readable=False)

        if raw is None:
            return LoadResult(entries=[])

        try:
            entries = _parse(raw)
        except CorruptStateError as exc:
            logger.warning("saved_searches: discarding corrupt history under %s: %s", self.key, exc)
            try:
                await self.backend.delete(self.key)
            except Exception as del_exc:
                logger.error("saved_searches: failed to reset %s: %s", self.key, del_exc)
            return LoadResult(entries=[], recovered=True)

        # Older writes may come from a larger capacity setting
        entries.sort(key=lambda e: e.id, reverse=True)
        return LoadResult(entries=entries[: self.capacity])

    async def _persist(self, entries: list[SavedSearchEntry]) -> bool:
        payload = json.dumps([e.to_dict() for e in entries], ensure_ascii=False)
        try:
            await self.backend.set(self.key, payload)
        except Exception as exc:
            logger.error("saved_searches: failed to persist %s: %s", self.key, exc)
            return False
        return True

    def _next_id(self, entries: list[SavedSearchEntry]) -> int:
        # Millisecond timestamp, bumped past anything already issued or stored
        floor = max([self._last_id, *(e.id for e in entries)])
        self._last_id = max(_now_ms(), floor + 1)
        return self._last_id


# ── Per-user stores ───────────────────────────────────────────────────────────

_stores: dict[int, SavedSearchStore] = {}


def user_key(user_id: int) -> str:
    return f"{config.SAVED_SEARCHES_KEY}:{user_id}"


def get_store(user_id: int) -> SavedSearchStore:
    """
    Return the SQLite-backed store for one Telegram user, creating it on
    first call. Each user has their own key, capacity and lock.
    """
    if user_id not in _stores:
        _stores[user_id] = SavedSearchStore(SqliteBackend(), key=user_key(user_id))
    return _stores[user_id]
