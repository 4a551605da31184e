"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  kv_store   — namespaced key → serialized value (saved searches live here)

The DB file is created automatically on first run.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

import config

logger = logging.getLogger(__name__)

# Store the DB in a dedicated data/ directory so Docker volume mounts work
# correctly (mount ./data:/app/data) and the file survives container restarts.
_DATA_DIR = Path(config.DATA_DIR)
_DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = str(_DATA_DIR / "shoplens.db")
_lock = asyncio.Lock()          # serialise schema creation


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
-- Durable key-value medium. One row per namespaced key, value is opaque text.
CREATE TABLE IF NOT EXISTS kv_store (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


async def init_db() -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    async with _lock:
        async with aiosqlite.connect(DB_PATH) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
    logger.info("Database initialised at %s", DB_PATH)


# ── Key-value operations ───────────────────────────────────────────────────────

async def kv_get(key: str) -> Optional[str]:
    """Return the stored value for key, or None if not set."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT value FROM kv_store WHERE key = ?", (key,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def kv_set(key: str, value: str) -> None:
    """Insert or replace the value stored under key."""
    now = datetime.now(timezone.utc).isoformat()
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO kv_store (key, value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                 value=excluded.value,
                 updated_at=excluded.updated_at""",
            (key, value, now),
        )
        await db.commit()


async def kv_delete(key: str) -> None:
    """Remove key. Missing keys are ignored."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        await db.commit()
