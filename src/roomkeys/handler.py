# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Room key event handling.

Turns ``m.room_key`` and ``m.forwarded_room_key`` to-device events into
stored inbound group sessions.

The shared-history flag on a new session comes from the event alone:
an explicit boolean in the content is recorded as-is, a missing one is
recorded as False. The room's history visibility is not consulted, since
it can change after the key was shared.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from .core.config import RoomKeysSettings, get_config
from .core.exceptions import ValidationException
from .crypto.ratchet import CryptoError, RatchetEngine
from .models import InboundGroupSession, RoomKeyEvent
from .storage.store import SessionStore

logger = logging.getLogger(__name__)

SessionListener = Callable[[InboundGroupSession], None]


class RoomKeyEventHandler:
    """Installs inbound sessions from room key events.

    Malformed or unusable events are logged and dropped. Store failures
    propagate so the caller can redeliver the event.
    """

    def __init__(
        self,
        store: SessionStore,
        engine: RatchetEngine,
        config: RoomKeysSettings | None = None,
        honor_shared_history_hints: bool | None = None,
    ):
        self.store = store
        self.engine = engine
        config = config or get_config()
        if honor_shared_history_hints is None:
            honor_shared_history_hints = config.honor_shared_history_hints
        self.honor_shared_history_hints = honor_shared_history_hints
        self._listeners: list[SessionListener] = []

    def add_session_listener(self, listener: SessionListener) -> None:
        """Call ``listener`` with each session this handler stores."""
        self._listeners.append(listener)

    def remove_session_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def build_session(self, room_key: RoomKeyEvent) -> InboundGroupSession | None:
        """Build a complete session for a parsed event, or None if unusable."""
        if not self.engine.supports(room_key.algorithm):
            logger.warning(
                "Dropping room key for session %s: unsupported algorithm %s",
                room_key.session_id,
                room_key.algorithm,
            )
            return None

        try:
            handle = self.engine.create_inbound_session(room_key.session_key, room_key.algorithm)
        except CryptoError as e:
            logger.warning("Dropping room key for session %s: %s", room_key.session_id, e)
            return None

        if handle.session_id != room_key.session_id:
            logger.warning(
                "Dropping room key: session key belongs to %s, event claims %s",
                handle.session_id,
                room_key.session_id,
            )
            return None

        return InboundGroupSession(
            session_id=room_key.session_id,
            sender_key=room_key.sender_key,
            room_id=room_key.room_id,
            shared_history=room_key.shared_history.resolve(self.honor_shared_history_hints),
            algorithm=room_key.algorithm,
            handle=handle,
            forwarding_chain=room_key.forwarding_chain,
            keys_claimed=dict(room_key.keys_claimed),
        )

    def on_room_key_event(self, event: dict[str, Any]) -> InboundGroupSession | None:
        """Handle one decrypted to-device room key event.

        Returns:
            The stored session, or None if the event was dropped or the
            store kept an existing session for the same key

        Raises:
            StoreException: If the session could not be stored
        """
        try:
            room_key = RoomKeyEvent.from_event(event)
        except ValidationException as e:
            logger.warning("Dropping malformed room key event: %s", e.message, extra={"extra_data": e.details})
            return None

        session = self.build_session(room_key)
        if session is None:
            return None

        if not self.store.put(session):
            logger.debug("Room key for session %s did not improve the stored session", session.session_id)
            return None

        logger.info(
            "Added inbound session %s from %s in %s (shared_history=%s, forwarded=%s)",
            session.session_id,
            session.sender_key,
            session.room_id,
            session.shared_history,
            room_key.is_forwarded,
        )
        self._notify(session)
        return session

    async def on_room_key_event_async(self, event: dict[str, Any]) -> InboundGroupSession | None:
        """Run ``on_room_key_event`` on a worker thread."""
        return await asyncio.to_thread(self.on_room_key_event, event)

    def _notify(self, session: InboundGroupSession) -> None:
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Session listener failed for %s", session.session_id)
