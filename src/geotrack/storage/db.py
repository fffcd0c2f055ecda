from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import os
from typing import Any, Optional

import aiosqlite

logger = logging.getLogger(__name__)

TRACKING_ENABLED_KEY = "tracking_foreground_location"


class Database:
    def __init__(self, path: str) -> None:
        self._path = path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = await aiosqlite.connect(self._path)
        self._conn = conn
        # Pragmas for reliability
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA synchronous=FULL;")

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS preferences (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_utc TEXT NOT NULL
            )
            """
        )
        await conn.commit()
        logger.info("Database initialized at %s", self._path)

    async def stop(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def get_preference(self, key: str, default: Any = None) -> Any:
        assert self._conn is not None, "database not started"
        async with self._lock:
            async with self._conn.execute("SELECT value_json FROM preferences WHERE key=?", (key,)) as cursor:
                row = await cursor.fetchone()
        return json.loads(row[0]) if row else default

    async def set_preference(self, key: str, value: Any) -> None:
        """Store a preference; returns only after the write is committed."""
        assert self._conn is not None, "database not started"
        payload = json.dumps(value, separators=(",", ":"))
        ts = dt.datetime.now(dt.timezone.utc).isoformat()
        async with self._lock:
            await self._conn.execute(
                """
                INSERT INTO preferences(key, value_json, updated_utc) VALUES(?,?,?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json=excluded.value_json,
                    updated_utc=excluded.updated_utc
                """,
                (key, payload, ts),
            )
            await self._conn.commit()


class PersistentFlag:
    """Durable boolean stored in the preferences table."""

    def __init__(self, db: Database, key: str = TRACKING_ENABLED_KEY) -> None:
        self._db = db
        self._key = key

    @property
    def key(self) -> str:
        return self._key

    async def get(self) -> bool:
        return bool(await self._db.get_preference(self._key, False))

    async def set(self, value: bool) -> None:
        await self._db.set_preference(self._key, bool(value))
        logger.debug("Preference %s set to %s", self._key, value)
