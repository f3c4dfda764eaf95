# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Data model for inbound group sessions and the events that feed them.

Parsers in this module raise ValidationException on malformed input; they
never return partially populated objects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .core.exceptions import ValidationException
from .crypto.ratchet import SessionHandle

logger = logging.getLogger(__name__)

ROOM_KEY_EVENT_TYPE = "m.room_key"
FORWARDED_ROOM_KEY_EVENT_TYPE = "m.forwarded_room_key"
ENCRYPTED_EVENT_TYPE = "m.room.encrypted"

# Unstable prefix is what deployed clients send; the stable name is accepted too
SHARED_HISTORY_FIELD = "org.matrix.msc3061.shared_history"
SHARED_HISTORY_STABLE_FIELD = "shared_history"


class HistoryVisibility(str, Enum):
    """Room history visibility. Room state, never session state."""

    WORLD_READABLE = "world_readable"
    SHARED = "shared"
    INVITED = "invited"
    JOINED = "joined"


class SharedHistoryHint(Enum):
    """The sender's shared-history claim as it appeared on the wire."""

    ABSENT = "absent"
    DENIED = "denied"
    ASSERTED = "asserted"

    @classmethod
    def from_content(cls, content: dict[str, Any]) -> SharedHistoryHint:
        """Read the hint from room-key content.

        A missing key is ABSENT. A present but non-boolean value is treated
        as ABSENT as well, since only an explicit boolean is a claim.
        """
        for key in (SHARED_HISTORY_FIELD, SHARED_HISTORY_STABLE_FIELD):
            if key not in content:
                continue
            value = content[key]
            if value is True:
                return cls.ASSERTED
            if value is False:
                return cls.DENIED
            logger.warning("Ignoring non-boolean %s value of type %s", key, type(value).__name__)
            return cls.ABSENT
        return cls.ABSENT

    @classmethod
    def from_optional(cls, value: bool | None) -> SharedHistoryHint:
        if value is None:
            return cls.ABSENT
        return cls.ASSERTED if value else cls.DENIED

    def resolve(self, honor_hints: bool) -> bool:
        """Collapse to the stored flag: only an honored explicit claim is True."""
        return honor_hints and self is SharedHistoryHint.ASSERTED


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationException(f"Missing or empty field: {key}", field=key)
    return value


def _optional_key_chain(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(k, str) and k for k in value):
        raise ValidationException(f"Field {key} must be a list of keys", field=key)
    return list(value)


@dataclass(frozen=True)
class RoomKeyEvent:
    """A parsed ``m.room_key`` or ``m.forwarded_room_key`` to-device event.

    Attributes:
        sender_key: Curve25519 key of the device that created the session
        room_id: Room the session encrypts
        session_id: Megolm session identifier
        session_key: Raw session key material
        algorithm: Encryption algorithm identifier
        shared_history: Tri-state shared-history hint
        forwarding_chain: Curve25519 keys of devices that re-shared the key
        keys_claimed: Keys the originating device claims, e.g. {"ed25519": ...}
        event_type: Event type the key arrived in
    """

    sender_key: str
    room_id: str
    session_id: str
    session_key: str = field(repr=False)
    algorithm: str
    shared_history: SharedHistoryHint = SharedHistoryHint.ABSENT
    forwarding_chain: tuple[str, ...] = ()
    keys_claimed: dict[str, str] = field(default_factory=dict)
    event_type: str = ROOM_KEY_EVENT_TYPE

    @property
    def is_forwarded(self) -> bool:
        return self.event_type == FORWARDED_ROOM_KEY_EVENT_TYPE

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> RoomKeyEvent:
        """Parse a decrypted to-device event.

        Direct keys take the sender key from the Olm envelope. Forwarded
        keys carry the original sender key in their content, and the
        forwarding device is appended to the chain.

        Raises:
            ValidationException: If a required field is missing or malformed
        """
        if not isinstance(event, dict):
            raise ValidationException("Event must be a mapping", value=type(event).__name__)

        content = event.get("content")
        if not isinstance(content, dict):
            raise ValidationException("Event has no content", field="content")

        event_type = event.get("type", ROOM_KEY_EVENT_TYPE)
        envelope_sender_key = event.get("sender_key")

        if event_type == FORWARDED_ROOM_KEY_EVENT_TYPE:
            forwarder = _require_str(event, "sender_key")
            sender_key = _require_str(content, "sender_key")
            chain = _optional_key_chain(content, "forwarding_curve25519_key_chain")
            chain.append(forwarder)
            claimed = content.get("sender_claimed_ed25519_key")
            keys_claimed = {"ed25519": claimed} if isinstance(claimed, str) and claimed else {}
        elif event_type == ROOM_KEY_EVENT_TYPE:
            if not isinstance(envelope_sender_key, str) or not envelope_sender_key:
                raise ValidationException("Missing or empty field: sender_key", field="sender_key")
            sender_key = envelope_sender_key
            chain = []
            keys = event.get("keys")
            keys_claimed = {}
            if isinstance(keys, dict) and isinstance(keys.get("ed25519"), str):
                keys_claimed = {"ed25519": keys["ed25519"]}
        else:
            raise ValidationException(f"Not a room key event: {event_type}", field="type", value=event_type)

        return cls(
            sender_key=sender_key,
            room_id=_require_str(content, "room_id"),
            session_id=_require_str(content, "session_id"),
            session_key=_require_str(content, "session_key"),
            algorithm=_require_str(content, "algorithm"),
            shared_history=SharedHistoryHint.from_content(content),
            forwarding_chain=tuple(chain),
            keys_claimed=keys_claimed,
            event_type=event_type,
        )


@dataclass(frozen=True)
class InboundGroupSession:
    """A stored inbound group session.

    Identity is (session_id, sender_key). ``room_id`` and ``shared_history``
    come from the event that created the session and are never recomputed.
    Instances are immutable; a better copy of the same session replaces the
    whole record.
    """

    session_id: str
    sender_key: str
    room_id: str
    shared_history: bool
    algorithm: str
    handle: SessionHandle = field(repr=False, compare=False)
    forwarding_chain: tuple[str, ...] = ()
    keys_claimed: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.session_id, self.sender_key)

    @property
    def first_known_index(self) -> int:
        return self.handle.first_known_index

    @property
    def untrusted(self) -> bool:
        """Key material arrived through at least one forwarding hop."""
        return bool(self.forwarding_chain)


@dataclass(frozen=True)
class DecryptionQuery:
    """Three-part session lookup.

    (session_id, sender_key) is the storage key; room_id is checked
    against the stored session after lookup.
    """

    room_id: str
    session_id: str
    sender_key: str

    @property
    def storage_key(self) -> tuple[str, str]:
        return (self.session_id, self.sender_key)

    def matches(self, session: InboundGroupSession) -> bool:
        return session.key == self.storage_key and session.room_id == self.room_id


@dataclass(frozen=True)
class EncryptedEvent:
    """A parsed ``m.room.encrypted`` timeline event."""

    room_id: str
    event_id: str
    sender: str
    sender_key: str
    session_id: str
    algorithm: str
    ciphertext: str = field(repr=False)
    device_id: str | None = None

    @property
    def query(self) -> DecryptionQuery:
        return DecryptionQuery(
            room_id=self.room_id,
            session_id=self.session_id,
            sender_key=self.sender_key,
        )

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> EncryptedEvent:
        """Parse a room timeline event.

        Raises:
            ValidationException: If a required field is missing or malformed
        """
        if not isinstance(event, dict):
            raise ValidationException("Event must be a mapping", value=type(event).__name__)
        content = event.get("content")
        if not isinstance(content, dict):
            raise ValidationException("Event has no content", field="content")

        device_id = content.get("device_id")
        return cls(
            room_id=_require_str(event, "room_id"),
            event_id=_require_str(event, "event_id"),
            sender=_require_str(event, "sender"),
            sender_key=_require_str(content, "sender_key"),
            session_id=_require_str(content, "session_id"),
            algorithm=_require_str(content, "algorithm"),
            ciphertext=_require_str(content, "ciphertext"),
            device_id=device_id if isinstance(device_id, str) else None,
        )


@dataclass(frozen=True)
class DecryptionResult:
    """Clear event plus the provenance callers need for trust display."""

    clear_event: dict[str, Any]
    session_id: str
    sender_key: str
    message_index: int
    shared_history: bool
    forwarding_chain: tuple[str, ...] = ()
    keys_claimed: dict[str, str] = field(default_factory=dict)

    @property
    def untrusted(self) -> bool:
        return bool(self.forwarding_chain)

    def to_dict(self) -> dict[str, Any]:
        return {
            "clear_event": self.clear_event,
            "session_id": self.session_id,
            "sender_key": self.sender_key,
            "message_index": self.message_index,
            "shared_history": self.shared_history,
            "forwarding_chain": list(self.forwarding_chain),
            "keys_claimed": dict(self.keys_claimed),
            "untrusted": self.untrusted,
        }
