"""Pydantic model for one intake conversation, as persisted by the store."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class Stage(str, Enum):
    COLLECTING = "COLLECTING"
    READY_TO_SUBMIT = "READY_TO_SUBMIT"
    SUBMITTED = "SUBMITTED"
    FAILED_SUBMISSION = "FAILED_SUBMISSION"


# Permitted stage edges. SUBMITTED is terminal; FAILED_SUBMISSION -> READY
# is the only backward edge (a user-confirmed retry).
ALLOWED_TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.COLLECTING: frozenset({Stage.READY_TO_SUBMIT, Stage.FAILED_SUBMISSION}),
    Stage.READY_TO_SUBMIT: frozenset({Stage.SUBMITTED, Stage.FAILED_SUBMISSION}),
    Stage.FAILED_SUBMISSION: frozenset({Stage.READY_TO_SUBMIT}),
    Stage.SUBMITTED: frozenset(),
}


def can_transition(current: Stage, new: Stage) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


class TranscriptTurn(BaseModel):
    role: str  # "user", "assistant" or "system"
    text: str
    timestamp: float = Field(default_factory=time.time)
    metadata: dict[str, Any] = {}


class ClientMeta(BaseModel):
    """Request metadata captured when the session is created."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    landing_page_url: Optional[str] = None


class LeadSession(BaseModel):
    """Accumulated state of one intake conversation.

    The store is the source of truth: handlers read a LeadSession, compute,
    and write changes back through the store's atomic operations rather
    than holding the object across awaits.
    """

    id: str
    created_at: float
    updated_at: float
    expires_at: float

    # Classification
    main_category: Optional[str] = None
    sub_category: Optional[str] = None
    detection_confidence: Optional[str] = None

    stage: Stage = Stage.COLLECTING
    answers: dict[str, Any] = {}
    asked: list[str] = []                  # ordered set of prompted fields
    transcript: list[TranscriptTurn] = []

    client: ClientMeta = ClientMeta()

    # Submission result
    lead_id: Optional[str] = None
    submission_status: Optional[str] = None
    submission_code: Optional[int] = None
    submission_message: Optional[str] = None
    submission_response: Optional[dict[str, Any]] = None
    submitted_at: Optional[float] = None
    submission_claimed_at: Optional[float] = None

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    @property
    def awaiting_field(self) -> str | None:
        """The most recently prompted field, if any."""
        return self.asked[-1] if self.asked else None
