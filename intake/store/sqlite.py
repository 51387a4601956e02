"""SQLite-backed session store (aiosqlite).

The full LeadSession is stored as a JSON document next to the columns the
store queries on (stage, expiry). Every mutation runs inside
``BEGIN IMMEDIATE`` so concurrent read-modify-write cycles on the same
database are serialized by SQLite's write lock.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from intake.errors import SessionStoreUnavailable
from intake.models.session import LeadSession
from intake.store.base import Mutator, SessionStore

log = logging.getLogger("intake.store.sqlite")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS intake_sessions (
    id TEXT PRIMARY KEY,
    stage TEXT NOT NULL,
    main_category TEXT,
    data TEXT NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_intake_sessions_expires ON intake_sessions(expires_at);
CREATE INDEX IF NOT EXISTS idx_intake_sessions_stage ON intake_sessions(stage);
"""


class SqliteSessionStore(SessionStore):
    """Durable store; survives restarts and works across worker processes."""

    def __init__(self, db_path: str | Path, *args, busy_timeout: float = 5.0, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.db_path = str(db_path)
        self._busy_timeout = busy_timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        # isolation_level=None: transactions are opened and closed explicitly
        try:
            async with aiosqlite.connect(
                self.db_path, timeout=self._busy_timeout, isolation_level=None,
            ) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except (aiosqlite.Error, OSError) as exc:
            log.error("Session store error on %s: %s", self.db_path, exc)
            raise SessionStoreUnavailable(f"SQLite session store error: {exc}") from exc

    async def initialize(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(_SCHEMA)
        log.info("SQLite session store ready at %s", self.db_path)

    async def _insert(self, session: LeadSession) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO intake_sessions "
                "(id, stage, main_category, data, created_at, updated_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.stage.value,
                    session.main_category,
                    session.model_dump_json(),
                    session.created_at,
                    session.updated_at,
                    session.expires_at,
                ),
            )

    async def _load(self, session_id: str) -> LeadSession | None:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT data FROM intake_sessions WHERE id = ?", (session_id,)
            )
            row = await cursor.fetchone()
        return LeadSession.model_validate_json(row["data"]) if row else None

    async def _mutate(self, session_id: str, fn: Mutator) -> LeadSession | None:
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "SELECT data FROM intake_sessions WHERE id = ?", (session_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    await db.execute("ROLLBACK")
                    return None
                current = LeadSession.model_validate_json(row["data"])
                if current.is_expired(self._clock()):
                    await db.execute("ROLLBACK")
                    return None
                changes = fn(current)
                if changes is None:
                    await db.execute("ROLLBACK")
                    return None
                updated = self._apply(current, changes)
                await db.execute(
                    "UPDATE intake_sessions SET stage = ?, main_category = ?, data = ?, "
                    "updated_at = ?, expires_at = ? WHERE id = ?",
                    (
                        updated.stage.value,
                        updated.main_category,
                        updated.model_dump_json(),
                        updated.updated_at,
                        updated.expires_at,
                        session_id,
                    ),
                )
                await db.execute("COMMIT")
                return updated
            except Exception:
                if db.in_transaction:
                    await db.execute("ROLLBACK")
                raise

    async def _all(self) -> list[LeadSession]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT data FROM intake_sessions")
            rows = await cursor.fetchall()
        return [LeadSession.model_validate_json(row["data"]) for row in rows]

    async def delete(self, session_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM intake_sessions WHERE id = ?", (session_id,)
            )
            removed = cursor.rowcount > 0
        if removed:
            log.info("Session deleted: %s", session_id)
        return removed

    async def purge_expired(self) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM intake_sessions WHERE expires_at <= ?", (self._clock(),)
            )
            purged = cursor.rowcount
        if purged:
            log.info("Purged %d expired sessions", purged)
        return purged
