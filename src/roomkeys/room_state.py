# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Read-only room state lookups.

History visibility is mutable room state. It informs what a sender decides
to share, never what a receiver records about keys it already holds.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import HistoryVisibility


class RoomStateProvider(ABC):
    """Abstract source of room history visibility."""

    @abstractmethod
    def history_visibility(self, room_id: str) -> HistoryVisibility:
        """Current history visibility of ``room_id``."""
        pass


class StaticRoomStateProvider(RoomStateProvider):
    """Room state held in a plain mapping.

    Rooms without an entry report ``default``, which matches the protocol
    default of ``shared``.
    """

    def __init__(
        self,
        visibilities: dict[str, HistoryVisibility] | None = None,
        default: HistoryVisibility = HistoryVisibility.SHARED,
    ):
        self._visibilities = dict(visibilities or {})
        self.default = default

    def set_history_visibility(self, room_id: str, visibility: HistoryVisibility | str) -> None:
        self._visibilities[room_id] = HistoryVisibility(visibility)

    def history_visibility(self, room_id: str) -> HistoryVisibility:
        return self._visibilities.get(room_id, self.default)
