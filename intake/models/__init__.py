"""Data models for the intake layer."""

from .session import (
    ALLOWED_TRANSITIONS,
    ClientMeta,
    LeadSession,
    Stage,
    TranscriptTurn,
    can_transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ClientMeta",
    "LeadSession",
    "Stage",
    "TranscriptTurn",
    "can_transition",
]
