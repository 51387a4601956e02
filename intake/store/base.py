"""Abstract base class for session stores.

Defines the keyed, TTL-expiring record store every conversation turn reads
from and writes to. Backends implement a handful of primitives; every
public mutation funnels through ``_mutate`` so that changes are always
applied against the latest stored record, never a stale snapshot.
"""

from __future__ import annotations

import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from intake.errors import SessionNotFound
from intake.models.session import (
    ClientMeta,
    LeadSession,
    Stage,
    TranscriptTurn,
    can_transition,
)

log = logging.getLogger("intake.store")

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60

# Receives the latest record, returns the changes to apply or None to skip
Mutator = Callable[[LeadSession], Optional[dict[str, Any]]]

_IMMUTABLE_FIELDS = {"id", "created_at", "updated_at", "expires_at"}


def new_session_id() -> str:
    return secrets.token_urlsafe(18)


class SessionStore(ABC):
    """Keyed conversation store with sliding expiration.

    Subclasses implement storage primitives; the public operations below
    are shared. Store I/O failures must surface as SessionStoreUnavailable,
    never as a missing session.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    # ── Backend primitives ───────────────────────────────────────

    async def initialize(self) -> None:
        """Prepare the backend (create tables, etc). Optional."""

    async def close(self) -> None:
        """Release backend resources. Optional."""

    @abstractmethod
    async def _insert(self, session: LeadSession) -> None:
        """Persist a brand-new session."""

    @abstractmethod
    async def _load(self, session_id: str) -> LeadSession | None:
        """Return the stored record, expired or not, or None if absent."""

    @abstractmethod
    async def _mutate(self, session_id: str, fn: Mutator) -> LeadSession | None:
        """Atomically read the live record, apply ``fn``'s changes, write it back.

        Returns the updated session, or None if the session is missing,
        expired, or ``fn`` returned None (nothing written).
        """

    @abstractmethod
    async def _all(self) -> list[LeadSession]:
        """Every stored record, for stats."""

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove a session. Returns True if a record was deleted."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete every expired record. Returns the number removed."""

    # ── Public API ───────────────────────────────────────────────

    async def create(self, client_meta: ClientMeta | dict | None = None) -> LeadSession:
        """Allocate a new session in COLLECTING with a fresh TTL."""
        now = self._clock()
        if isinstance(client_meta, dict):
            client_meta = ClientMeta(**client_meta)
        session = LeadSession(
            id=new_session_id(),
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl_seconds,
            client=client_meta or ClientMeta(),
        )
        await self._insert(session)
        log.info("Session created: %s", session.id)
        return session

    async def get(self, session_id: str) -> LeadSession | None:
        """Return the live session, or None for unknown or expired ids."""
        if not session_id:
            return None
        session = await self._load(session_id)
        if session is None or session.is_expired(self._clock()):
            return None
        return session

    async def require(self, session_id: str) -> LeadSession:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def update(self, session_id: str, changes: dict[str, Any]) -> LeadSession | None:
        """Merge top-level changes into the session and slide its TTL."""
        return await self._mutate(session_id, lambda _current: dict(changes))

    async def merge_answers(
        self, session_id: str, answers: dict[str, Any],
    ) -> LeadSession | None:
        """Merge field answers into the latest stored answer map."""
        return await self._mutate(
            session_id, lambda current: {"answers": {**current.answers, **answers}},
        )

    async def mark_asked(self, session_id: str, field: str) -> LeadSession | None:
        """Record that ``field`` was prompted (re-asking moves it to the end)."""
        def _fn(current: LeadSession) -> dict[str, Any]:
            asked = [name for name in current.asked if name != field]
            asked.append(field)
            return {"asked": asked}

        return await self._mutate(session_id, _fn)

    async def append_transcript(self, session_id: str, turn: TranscriptTurn) -> bool:
        updated = await self._mutate(
            session_id, lambda current: {"transcript": [*current.transcript, turn]},
        )
        return updated is not None

    async def clear_transcript(self, session_id: str) -> bool:
        updated = await self._mutate(session_id, lambda _current: {"transcript": []})
        return updated is not None

    async def transition_stage(
        self,
        session_id: str,
        expected: Stage,
        new: Stage,
        changes: dict[str, Any] | None = None,
    ) -> LeadSession | None:
        """Move ``expected`` → ``new`` only if the stored stage is still ``expected``.

        Returns None when the session is gone or another request already
        moved it. Illegal edges are programmer errors and raise ValueError.
        """
        if not can_transition(expected, new):
            raise ValueError(f"Illegal stage transition {expected.value} → {new.value}")

        def _fn(current: LeadSession) -> dict[str, Any] | None:
            if current.stage != expected:
                return None
            return {**(changes or {}), "stage": new}

        updated = await self._mutate(session_id, _fn)
        if updated is not None:
            log.info("Stage advance: %s → %s (session %s)", expected.value, new.value, session_id)
        return updated

    async def claim_submission(
        self, session_id: str, stale_after: float = 120.0,
    ) -> LeadSession | None:
        """Mark a READY_TO_SUBMIT session as in flight.

        At most one caller gets the claim; a claim older than ``stale_after``
        seconds is treated as abandoned and may be taken over.
        """
        now = self._clock()

        def _fn(current: LeadSession) -> dict[str, Any] | None:
            if current.stage != Stage.READY_TO_SUBMIT:
                return None
            claimed = current.submission_claimed_at
            if claimed is not None and now - claimed < stale_after:
                return None
            return {"submission_claimed_at": now}

        return await self._mutate(session_id, _fn)

    async def release_claim(self, session_id: str) -> LeadSession | None:
        return await self._mutate(
            session_id, lambda _current: {"submission_claimed_at": None},
        )

    async def stats(self) -> dict[str, Any]:
        """Live session counts by stage plus the number awaiting purge."""
        now = self._clock()
        by_stage = {stage.value: 0 for stage in Stage}
        expired = 0
        for session in await self._all():
            if session.is_expired(now):
                expired += 1
                continue
            by_stage[session.stage.value] += 1
        return {
            "active": sum(by_stage.values()),
            "expired": expired,
            "by_stage": by_stage,
        }

    # ── Helpers ──────────────────────────────────────────────────

    def _apply(self, current: LeadSession, changes: dict[str, Any]) -> LeadSession:
        """Build the next record: merged changes, bumped updated_at, slid TTL."""
        unknown = set(changes) - set(LeadSession.model_fields)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        now = self._clock()
        data = current.model_dump()
        data.update({k: v for k, v in changes.items() if k not in _IMMUTABLE_FIELDS})
        data["updated_at"] = now
        data["expires_at"] = now + self.ttl_seconds
        return LeadSession.model_validate(data)
