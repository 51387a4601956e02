"""Session persistence backends."""

from .base import SessionStore
from .memory import InMemorySessionStore
from .sqlite import SqliteSessionStore

__all__ = ["InMemorySessionStore", "SessionStore", "SqliteSessionStore"]
