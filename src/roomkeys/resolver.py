# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Shared-history queries over stored inbound sessions."""

from __future__ import annotations

import asyncio
import logging

from .models import DecryptionQuery, InboundGroupSession
from .storage.store import SessionStore

logger = logging.getLogger(__name__)


class SharedHistoryResolver:
    """Answers whether a session's keys were shared as room history.

    A session qualifies only when it exists, belongs to the queried room,
    and was stored with shared_history set.
    """

    def __init__(self, store: SessionStore):
        self.store = store

    def has_shared_history(self, room_id: str, session_id: str, sender_key: str) -> bool:
        session = self.store.get(session_id, sender_key)
        if session is None:
            return False
        if session.room_id != room_id:
            logger.debug(
                "Session %s belongs to %s, not %s; treating as not shared",
                session_id,
                session.room_id,
                room_id,
            )
            return False
        return session.shared_history

    def query(self, query: DecryptionQuery) -> bool:
        return self.has_shared_history(query.room_id, query.session_id, query.sender_key)

    async def has_shared_history_async(self, room_id: str, session_id: str, sender_key: str) -> bool:
        return await asyncio.to_thread(self.has_shared_history, room_id, session_id, sender_key)

    def shareable_sessions(self, room_id: str) -> list[InboundGroupSession]:
        """Sessions in ``room_id`` whose keys may be passed to new members."""
        return [s for s in self.store.sessions_for_room(room_id) if s.shared_history]
