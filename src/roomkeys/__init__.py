# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""roomkeys - inbound Megolm session management.

Receives room keys, stores them as inbound group sessions, and decrypts
room events with them, while recording whether each session's keys were
shared as room history.

Pipeline:
  m.room_key / m.forwarded_room_key
    → RoomKeyEventHandler   (validate, derive shared_history, build session)
    → SessionStore          (insert-if-absent-or-improves)
  m.room.encrypted
    → DecryptionDispatcher  (lookup, room check, decrypt, replay check)
    → RatchetEngine

SharedHistoryResolver answers shared-history queries against the store.
A session's shared_history comes only from the event that created it,
never from the room's current history visibility.
"""

__version__ = "0.1.0"

from .crypto.ratchet import (
    MEGOLM_ALGORITHM,
    MegolmRatchetEngine,
    OutboundGroupSession,
    RatchetEngine,
    SessionHandle,
)
from .dispatcher import (
    AlgorithmMismatchError,
    DecryptionDispatcher,
    DecryptionError,
    DuplicateMessageIndexError,
    MalformedCiphertextError,
    MessageAuthenticationError,
    RatchetIndexUnavailableError,
    RetryPolicy,
    RoomMismatchError,
    SessionNotFoundError,
)
from .handler import RoomKeyEventHandler
from .models import (
    DecryptionQuery,
    DecryptionResult,
    EncryptedEvent,
    HistoryVisibility,
    InboundGroupSession,
    RoomKeyEvent,
    SharedHistoryHint,
)
from .resolver import SharedHistoryResolver
from .room_state import RoomStateProvider, StaticRoomStateProvider
from .sharing import RoomKeySharer, room_key_content
from .storage.store import InMemorySessionStore, SessionStore

__all__ = [
    # Pipeline
    "RoomKeyEventHandler",
    "SharedHistoryResolver",
    "DecryptionDispatcher",
    # Collaborators
    "SessionStore",
    "InMemorySessionStore",
    "RatchetEngine",
    "MegolmRatchetEngine",
    "OutboundGroupSession",
    "SessionHandle",
    "RoomStateProvider",
    "StaticRoomStateProvider",
    "RoomKeySharer",
    "room_key_content",
    "MEGOLM_ALGORITHM",
    # Models
    "InboundGroupSession",
    "RoomKeyEvent",
    "EncryptedEvent",
    "DecryptionQuery",
    "DecryptionResult",
    "SharedHistoryHint",
    "HistoryVisibility",
    # Errors
    "DecryptionError",
    "RetryPolicy",
    "SessionNotFoundError",
    "RatchetIndexUnavailableError",
    "MalformedCiphertextError",
    "AlgorithmMismatchError",
    "MessageAuthenticationError",
    "RoomMismatchError",
    "DuplicateMessageIndexError",
]
