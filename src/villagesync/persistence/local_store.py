"""Client-local persistence — aiosqlite key/value store.

Holds the small amount of state the client keeps across sessions,
keyed by a structured ``(user_id, purpose)`` pair:

- ``last_session``: epoch seconds when the client was last visible,
  used only for the offline window.
- ``auth_token`` / ``refresh_token``: current credential, refreshed in place.

The backend never sees any of this.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import aiosqlite

from villagesync.models.credential import SessionCredential

log = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS client_state (
    user_id TEXT NOT NULL,
    purpose TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at REAL NOT NULL,
    PRIMARY KEY (user_id, purpose)
);
"""


class StorePurpose(str, Enum):
    LAST_SESSION = "last_session"
    AUTH_TOKEN = "auth_token"
    REFRESH_TOKEN = "refresh_token"


@dataclass(frozen=True)
class StoreKey:
    user_id: str
    purpose: StorePurpose


class LocalStore:
    """Async SQLite key/value store.

    Args:
        db_path: Path to the SQLite file (``":memory:"`` for tests).
    """

    def __init__(self, db_path: str = "villagesync.db") -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open the database connection and create tables if needed."""
        self._conn = await aiosqlite.connect(self._db_path)
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()
        log.info("Local store connected: %s", self._db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    # -- Raw access ------------------------------------------------------

    async def get(self, key: StoreKey) -> Optional[str]:
        assert self._conn is not None
        async with self._conn.execute(
            "SELECT value FROM client_state WHERE user_id = ? AND purpose = ?",
            (key.user_id, key.purpose.value),
        ) as cursor:
            row = await cursor.fetchone()
            return None if row is None else row[0]

    async def put(self, key: StoreKey, value: str) -> None:
        assert self._conn is not None
        await self._conn.execute(
            "INSERT INTO client_state (user_id, purpose, value, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (user_id, purpose) DO UPDATE SET value = excluded.value, "
            "updated_at = excluded.updated_at",
            (key.user_id, key.purpose.value, value, time.time()),
        )
        await self._conn.commit()

    async def delete(self, key: StoreKey) -> bool:
        assert self._conn is not None
        async with self._conn.execute(
            "DELETE FROM client_state WHERE user_id = ? AND purpose = ?",
            (key.user_id, key.purpose.value),
        ) as cursor:
            deleted = cursor.rowcount > 0
        await self._conn.commit()
        return deleted

    # -- Offline window --------------------------------------------------

    async def get_last_session(self, user_id: str) -> Optional[float]:
        raw = await self.get(StoreKey(user_id, StorePurpose.LAST_SESSION))
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            log.warning("Discarding unreadable last-session stamp for %s: %r", user_id, raw)
            return None

    async def stamp_last_session(self, user_id: str, at: float) -> None:
        await self.put(StoreKey(user_id, StorePurpose.LAST_SESSION), repr(float(at)))
        log.debug("Last session for %s stamped at %.0f", user_id, at)

    # -- Credential ------------------------------------------------------

    async def load_credential(self, user_id: str) -> Optional[SessionCredential]:
        token = await self.get(StoreKey(user_id, StorePurpose.AUTH_TOKEN))
        if not token:
            return None
        refresh = await self.get(StoreKey(user_id, StorePurpose.REFRESH_TOKEN)) or ""
        return SessionCredential.from_tokens(token, refresh_token=refresh)

    async def save_credential(self, user_id: str, credential: SessionCredential) -> None:
        await self.put(StoreKey(user_id, StorePurpose.AUTH_TOKEN), credential.token)
        if credential.refresh_token:
            await self.put(StoreKey(user_id, StorePurpose.REFRESH_TOKEN), credential.refresh_token)

    async def clear_credential(self, user_id: str) -> None:
        await self.delete(StoreKey(user_id, StorePurpose.AUTH_TOKEN))
        await self.delete(StoreKey(user_id, StorePurpose.REFRESH_TOKEN))
