# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Outbound room key content.

The sender decides whether a session's keys are shared as room history at
the moment it distributes them, from the room's visibility at that moment.
Receivers record that decision and never revisit it.
"""

from __future__ import annotations

from typing import Any

from .core.config import RoomKeysSettings, get_config
from .crypto.ratchet import MEGOLM_ALGORITHM
from .models import SHARED_HISTORY_FIELD, HistoryVisibility
from .room_state import RoomStateProvider

HISTORY_SHARING_VISIBILITIES = frozenset(
    {
        HistoryVisibility.WORLD_READABLE,
        HistoryVisibility.SHARED,
    }
)


def visibility_shares_history(visibility: HistoryVisibility) -> bool:
    """Whether new members may read history under ``visibility``."""
    return visibility in HISTORY_SHARING_VISIBILITIES


def room_key_content(
    room_id: str,
    session_id: str,
    session_key: str,
    algorithm: str = MEGOLM_ALGORITHM,
    shared_history: bool | None = None,
) -> dict[str, Any]:
    """Build ``m.room_key`` content.

    ``shared_history=None`` omits the hint entirely.
    """
    content: dict[str, Any] = {
        "algorithm": algorithm,
        "room_id": room_id,
        "session_id": session_id,
        "session_key": session_key,
    }
    if shared_history is not None:
        content[SHARED_HISTORY_FIELD] = shared_history
    return content


class RoomKeySharer:
    """Builds room key content with a share-time shared-history hint."""

    def __init__(
        self,
        room_state: RoomStateProvider,
        config: RoomKeysSettings | None = None,
    ):
        self.room_state = room_state
        self.config = config or get_config()

    def shares_history(self, room_id: str) -> bool:
        if not self.config.honor_shared_history_hints:
            return False
        return visibility_shares_history(self.room_state.history_visibility(room_id))

    def content_for(
        self,
        room_id: str,
        session_id: str,
        session_key: str,
        algorithm: str = MEGOLM_ALGORITHM,
    ) -> dict[str, Any]:
        shared_history = None
        if self.config.honor_shared_history_hints:
            shared_history = self.shares_history(room_id)
        return room_key_content(room_id, session_id, session_key, algorithm, shared_history)
