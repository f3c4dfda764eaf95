"""Session storage interface and the in-memory implementation."""

from roomkeys.storage.store import (
    InMemorySessionStore,
    SessionStore,
    should_replace,
)

__all__ = [
    "SessionStore",
    "InMemorySessionStore",
    "should_replace",
]
