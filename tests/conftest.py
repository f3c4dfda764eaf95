"""Global test fixtures for the roomkeys test suite."""

from __future__ import annotations

import json
import os
from typing import Any

import pytest

from roomkeys.core.config import RoomKeysSettings, clear_config_cache
from roomkeys.core.exceptions import StoreException
from roomkeys.crypto.ratchet import (
    MEGOLM_ALGORITHM,
    BadSessionKeyError,
    DecryptedPayload,
    MegolmRatchetEngine,
    OutboundGroupSession,
    RatchetEngine,
    SessionHandle,
    UnknownMessageIndexError,
)
from roomkeys.dispatcher import DecryptionDispatcher
from roomkeys.handler import RoomKeyEventHandler
from roomkeys.models import InboundGroupSession
from roomkeys.resolver import SharedHistoryResolver
from roomkeys.sharing import room_key_content
from roomkeys.storage.store import InMemorySessionStore, SessionStore

ROOM_ID = "!room:example.org"
OTHER_ROOM_ID = "!other:example.org"
SENDER = "@alice:example.org"
SENDER_KEY = "alice+curve25519+key"
SENDER_ED25519 = "alice+ed25519+key"


# ============================================================================
# Environment
# ============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    """Remove all ROOMKEYS_ environment variables."""
    for key in list(os.environ.keys()):
        if key.startswith("ROOMKEYS_"):
            monkeypatch.delenv(key, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def config(clean_env) -> RoomKeysSettings:
    """Settings with shared-history hints honored."""
    return RoomKeysSettings(honor_shared_history_hints=True, max_pending_events=10)


# ============================================================================
# Test doubles
# ============================================================================


class FakeRatchetEngine(RatchetEngine):
    """Ratchet engine double with registered keys and canned messages.

    Records every session it is asked to create.
    """

    def __init__(self, algorithms: set[str] | None = None):
        self.algorithms = algorithms or {MEGOLM_ALGORITHM}
        self._keys: dict[str, tuple[str, int]] = {}
        self._messages: dict[str, DecryptedPayload] = {}
        self.created: list[str] = []

    def register_key(self, session_key: str, session_id: str, first_known_index: int = 0) -> None:
        self._keys[session_key] = (session_id, first_known_index)

    def register_message(self, ciphertext: str, plaintext: bytes, message_index: int = 0) -> None:
        self._messages[ciphertext] = DecryptedPayload(plaintext, message_index)

    def supports(self, algorithm: str) -> bool:
        return algorithm in self.algorithms

    def create_inbound_session(self, session_key: str, algorithm: str) -> SessionHandle:
        if session_key not in self._keys:
            raise BadSessionKeyError(f"Unknown session key {session_key}")
        session_id, index = self._keys[session_key]
        self.created.append(session_id)
        return SessionHandle(session_id=session_id, algorithm=algorithm, first_known_index=index)

    def decrypt(self, handle: SessionHandle, ciphertext: str) -> DecryptedPayload:
        payload = self._messages[ciphertext]
        if payload.message_index < handle.first_known_index:
            raise UnknownMessageIndexError(payload.message_index, handle.first_known_index)
        return payload


class FailingSessionStore(SessionStore):
    """Store double whose writes always fail."""

    def get(self, session_id: str, sender_key: str) -> InboundGroupSession | None:
        return None

    def put(self, session: InboundGroupSession) -> bool:
        raise StoreException("disk full", session.session_id, session.sender_key)

    def sessions_for_room(self, room_id: str) -> list[InboundGroupSession]:
        return []


# ============================================================================
# Pipeline fixtures
# ============================================================================


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore(lock_stripes=8)


@pytest.fixture
def engine() -> MegolmRatchetEngine:
    return MegolmRatchetEngine()


@pytest.fixture
def fake_engine() -> FakeRatchetEngine:
    return FakeRatchetEngine()


@pytest.fixture
def handler(store, engine, config) -> RoomKeyEventHandler:
    return RoomKeyEventHandler(store, engine, config=config)


@pytest.fixture
def resolver(store) -> SharedHistoryResolver:
    return SharedHistoryResolver(store)


@pytest.fixture
def dispatcher(store, engine, config, handler) -> DecryptionDispatcher:
    dispatcher = DecryptionDispatcher(store, engine, config=config)
    dispatcher.attach(handler)
    return dispatcher


@pytest.fixture
def outbound() -> OutboundGroupSession:
    return OutboundGroupSession()


# ============================================================================
# Event builders
# ============================================================================


def make_room_key_event(
    session_id: str,
    session_key: str,
    room_id: str = ROOM_ID,
    sender_key: str = SENDER_KEY,
    algorithm: str = MEGOLM_ALGORITHM,
    shared_history: bool | None = None,
) -> dict[str, Any]:
    """A decrypted ``m.room_key`` to-device event."""
    return {
        "type": "m.room_key",
        "sender": SENDER,
        "sender_key": sender_key,
        "keys": {"ed25519": SENDER_ED25519},
        "content": room_key_content(room_id, session_id, session_key, algorithm, shared_history),
    }


def make_encrypted_event(
    outbound: OutboundGroupSession,
    body: str = "hello",
    room_id: str = ROOM_ID,
    event_id: str = "$event1",
    sender_key: str = SENDER_KEY,
) -> dict[str, Any]:
    """Encrypt a message with ``outbound`` and wrap it as a timeline event."""
    clear = {"type": "m.room.message", "room_id": room_id, "content": {"msgtype": "m.text", "body": body}}
    return {
        "type": "m.room.encrypted",
        "room_id": room_id,
        "event_id": event_id,
        "sender": SENDER,
        "content": {
            "algorithm": MEGOLM_ALGORITHM,
            "sender_key": sender_key,
            "session_id": outbound.session_id,
            "device_id": "ALICEDEVICE",
            "ciphertext": outbound.encrypt(json.dumps(clear).encode("utf-8")),
        },
    }
