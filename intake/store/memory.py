"""In-process session store.

Good for a single worker and for tests. Records are deep-copied on the way
in and out so callers never hold a reference into the store.
"""

from __future__ import annotations

import asyncio
import logging

from intake.models.session import LeadSession
from intake.store.base import Mutator, SessionStore

log = logging.getLogger("intake.store.memory")


class InMemorySessionStore(SessionStore):
    """Dict-backed store; one asyncio.Lock serializes every mutation."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._sessions: dict[str, LeadSession] = {}
        self._lock = asyncio.Lock()

    async def _insert(self, session: LeadSession) -> None:
        async with self._lock:
            self._sessions[session.id] = session.model_copy(deep=True)

    async def _load(self, session_id: str) -> LeadSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def _mutate(self, session_id: str, fn: Mutator) -> LeadSession | None:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None or current.is_expired(self._clock()):
                return None
            changes = fn(current.model_copy(deep=True))
            if changes is None:
                return None
            updated = self._apply(current, changes)
            self._sessions[session_id] = updated
            return updated.model_copy(deep=True)

    async def _all(self) -> list[LeadSession]:
        return list(self._sessions.values())

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            log.info("Session deleted: %s", session_id)
        return removed

    async def purge_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            log.info("Purged %d expired sessions", len(expired))
        return len(expired)
