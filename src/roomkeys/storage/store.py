# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Inbound session storage.

SessionStore is the interface the session pipeline consumes; durable
implementations live outside this package. InMemorySessionStore is the
process-local implementation used by tests and embedders without
persistence.

Re-import policy (keep-lower-index):
    A session for an existing (session_id, sender_key) replaces the stored
    one only if it can decrypt strictly earlier messages and belongs to the
    same room. Otherwise the stored session is kept. Replacement swaps the
    whole record; fields are never merged.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager

from ..core.exceptions import ConfigException
from ..models import InboundGroupSession

logger = logging.getLogger(__name__)

DEFAULT_LOCK_STRIPES = 64


def should_replace(existing: InboundGroupSession, incoming: InboundGroupSession) -> bool:
    """Decide whether ``incoming`` supersedes ``existing`` for the same key."""
    if existing.room_id != incoming.room_id:
        logger.warning(
            "Refusing to replace session %s from %s: room %s does not match stored room %s",
            incoming.session_id,
            incoming.sender_key,
            incoming.room_id,
            existing.room_id,
        )
        return False
    return incoming.first_known_index < existing.first_known_index


class SessionStore(ABC):
    """Abstract map from (session_id, sender_key) to InboundGroupSession."""

    @abstractmethod
    def get(self, session_id: str, sender_key: str) -> InboundGroupSession | None:
        """Look up a session.

        Raises:
            StoreException: If the backing store cannot be read
        """
        pass

    @abstractmethod
    def put(self, session: InboundGroupSession) -> bool:
        """Insert a session, or replace the stored one if it improves on it.

        Must be atomic per (session_id, sender_key).

        Returns:
            True if ``session`` is now the stored session, False if the
            existing session was kept

        Raises:
            StoreException: If the insert could not be completed
        """
        pass

    @abstractmethod
    def sessions_for_room(self, room_id: str) -> list[InboundGroupSession]:
        """All stored sessions for a room."""
        pass


class InMemorySessionStore(SessionStore):
    """Thread-safe in-memory session store.

    Keys are guarded by striped locks so inserts for unrelated sessions do
    not contend while inserts and reads for one key are serialized.
    Whole-table operations (``len``, ``sessions_for_room``, ``clear``)
    hold every stripe.

    Example:
        >>> store = InMemorySessionStore()
        >>> store.put(session)
        True
        >>> store.get(session.session_id, session.sender_key) is session
        True
    """

    def __init__(self, lock_stripes: int = DEFAULT_LOCK_STRIPES):
        if lock_stripes < 1:
            raise ConfigException("lock_stripes must be at least 1", setting="store_lock_stripes")
        self._sessions: dict[tuple[str, str], InboundGroupSession] = {}
        self._locks = [threading.Lock() for _ in range(lock_stripes)]

    @contextmanager
    def _locked(self, session_id: str, sender_key: str) -> Iterator[None]:
        lock = self._locks[hash((session_id, sender_key)) % len(self._locks)]
        with lock:
            yield

    @contextmanager
    def _all_locked(self) -> Iterator[None]:
        # Stripes are always taken in index order
        with ExitStack() as stack:
            for lock in self._locks:
                stack.enter_context(lock)
            yield

    def get(self, session_id: str, sender_key: str) -> InboundGroupSession | None:
        with self._locked(session_id, sender_key):
            return self._sessions.get((session_id, sender_key))

    def put(self, session: InboundGroupSession) -> bool:
        with self._locked(session.session_id, session.sender_key):
            existing = self._sessions.get(session.key)
            if existing is not None and not should_replace(existing, session):
                logger.debug(
                    "Keeping stored session %s from %s (first known index %d <= %d)",
                    session.session_id,
                    session.sender_key,
                    existing.first_known_index,
                    session.first_known_index,
                )
                return False
            self._sessions[session.key] = session
            return True

    def sessions_for_room(self, room_id: str) -> list[InboundGroupSession]:
        with self._all_locked():
            return [s for s in self._sessions.values() if s.room_id == room_id]

    def __len__(self) -> int:
        with self._all_locked():
            return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        with self._locked(*key):
            return key in self._sessions

    def clear(self) -> None:
        """Remove all sessions."""
        with self._all_locked():
            self._sessions.clear()
