# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Decryption of ``m.room.encrypted`` events with stored inbound sessions.

Every failure is raised as a DecryptionError subclass carrying a stable
``code`` and a ``retry`` policy:

- SessionNotFoundError: no session yet; retry after a key request
- RatchetIndexUnavailableError: session starts after this message; retry
  only if a fresh key share arrives
- MalformedCiphertextError, AlgorithmMismatchError, RoomMismatchError,
  MessageAuthenticationError, DuplicateMessageIndexError: permanent for
  this event

Events that failed for lack of keys are parked and retried automatically
when the handler stores the missing session (see ``attach``). Parking is
bounded per session and across all sessions, and replay detection
remembers a bounded window of message indexes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from enum import Enum
from typing import Any

from .core.config import RoomKeysSettings, get_config
from .core.exceptions import RoomKeysException, ValidationException
from .core.lru_cache import LRUDict
from .crypto.ratchet import (
    BadMessageFormatError,
    BadMessageMacError,
    CryptoError,
    RatchetEngine,
    UnknownMessageIndexError,
)
from .handler import RoomKeyEventHandler
from .models import DecryptionResult, EncryptedEvent, InboundGroupSession
from .storage.store import SessionStore

logger = logging.getLogger(__name__)

DecryptedCallback = Callable[[dict[str, Any], DecryptionResult], None]
PendingEntry = tuple[dict[str, Any], str | None]


class RetryPolicy(str, Enum):
    """What a caller may do after a decryption failure."""

    AFTER_KEY_REQUEST = "after_key_request"
    AFTER_KEY_SHARE = "after_key_share"
    NEVER = "never"


# =============================================================================
# Exceptions
# =============================================================================


class DecryptionError(RoomKeysException):
    """Base exception for a failed event decryption."""

    code = "DECRYPTION_FAILED"
    retry = RetryPolicy.NEVER

    def __init__(self, message: str, session_id: str | None = None, sender_key: str | None = None):
        details = {"code": self.code, "retry": self.retry.value}
        if session_id:
            details["session_id"] = session_id
        if sender_key:
            details["sender_key"] = sender_key
        super().__init__(message, details)
        self.session_id = session_id
        self.sender_key = sender_key

    @property
    def retryable(self) -> bool:
        return self.retry is not RetryPolicy.NEVER


class SessionNotFoundError(DecryptionError):
    """No inbound session is stored for the event's session."""

    code = "UNKNOWN_INBOUND_SESSION_ID"
    retry = RetryPolicy.AFTER_KEY_REQUEST


class RatchetIndexUnavailableError(DecryptionError):
    """The stored session cannot reach the message's ratchet index."""

    code = "UNKNOWN_MESSAGE_INDEX"
    retry = RetryPolicy.AFTER_KEY_SHARE


class MalformedCiphertextError(DecryptionError):
    code = "BAD_ENCRYPTED_MESSAGE"


class AlgorithmMismatchError(DecryptionError):
    code = "ALGORITHM_MISMATCH"


class MessageAuthenticationError(DecryptionError):
    code = "BAD_MESSAGE_MAC"


class RoomMismatchError(DecryptionError):
    """Session or decrypted payload belongs to a different room."""

    code = "ROOM_MISMATCH"


class DuplicateMessageIndexError(DecryptionError):
    """Another event already used this message index (replay)."""

    code = "DUPLICATE_MESSAGE_INDEX"


# =============================================================================
# Dispatcher
# =============================================================================


class DecryptionDispatcher:
    """Resolves sessions for encrypted events and decrypts them.

    Example:
        >>> dispatcher = DecryptionDispatcher(store, engine)
        >>> dispatcher.attach(handler)
        >>> result = dispatcher.decrypt(event)
        >>> result.clear_event["content"]["body"]
    """

    def __init__(
        self,
        store: SessionStore,
        engine: RatchetEngine,
        config: RoomKeysSettings | None = None,
    ):
        self.store = store
        self.engine = engine
        config = config or get_config()
        self.max_pending_events = config.max_pending_events
        self.max_pending_total = config.max_pending_total

        self._lock = threading.Lock()
        # (timeline, sender_key, session_id, message_index) -> event_id
        self._seen_indexes: LRUDict[tuple[str, str, str, int], str] = LRUDict(max_size=config.replay_window)
        # (sender_key, session_id) -> event_id -> (event, timeline); least recently parked bucket first
        self._pending: OrderedDict[tuple[str, str], OrderedDict[str, PendingEntry]] = OrderedDict()
        self._pending_total = 0
        self._callbacks: list[DecryptedCallback] = []

    def attach(self, handler: RoomKeyEventHandler) -> None:
        """Retry parked events whenever ``handler`` stores a session."""
        handler.add_session_listener(self._on_session_added)

    def on_decrypted(self, callback: DecryptedCallback) -> None:
        """Register a callback for events decrypted on retry."""
        self._callbacks.append(callback)

    def decrypt(self, event: dict[str, Any], timeline: str | None = None) -> DecryptionResult:
        """Decrypt an ``m.room.encrypted`` event.

        An event that fails for lack of keys is parked. If the missing
        session is stored while the event is being parked, the event is
        retried at once and delivered through ``on_decrypted``.

        Args:
            event: Room timeline event
            timeline: Replay-protection scope; defaults to the event's room

        Returns:
            DecryptionResult with the clear event and session provenance

        Raises:
            DecryptionError: One of the subclasses described in the module docstring
            StoreException: If the session store cannot be read
        """
        try:
            encrypted = EncryptedEvent.from_event(event)
        except ValidationException as e:
            raise MalformedCiphertextError(f"Malformed encrypted event: {e.message}") from e

        session = self.store.get(encrypted.session_id, encrypted.sender_key)
        if session is None:
            if self._park(encrypted, event, timeline):
                self._retry_if_session_changed(encrypted, None)
            raise SessionNotFoundError(
                f"No inbound session {encrypted.session_id} from {encrypted.sender_key}",
                encrypted.session_id,
                encrypted.sender_key,
            )

        if session.algorithm != encrypted.algorithm:
            raise AlgorithmMismatchError(
                f"Event uses {encrypted.algorithm}, session was built for {session.algorithm}",
                encrypted.session_id,
                encrypted.sender_key,
            )

        if not encrypted.query.matches(session):
            raise RoomMismatchError(
                f"Session {encrypted.session_id} belongs to {session.room_id}, event is in {encrypted.room_id}",
                encrypted.session_id,
                encrypted.sender_key,
            )

        try:
            payload = self.engine.decrypt(session.handle, encrypted.ciphertext)
        except UnknownMessageIndexError as e:
            if self._park(encrypted, event, timeline):
                self._retry_if_session_changed(encrypted, session)
            raise RatchetIndexUnavailableError(str(e), encrypted.session_id, encrypted.sender_key) from e
        except BadMessageMacError as e:
            logger.warning("Authentication failed for event %s: %s", encrypted.event_id, e)
            raise MessageAuthenticationError(str(e), encrypted.session_id, encrypted.sender_key) from e
        except BadMessageFormatError as e:
            raise MalformedCiphertextError(str(e), encrypted.session_id, encrypted.sender_key) from e
        except CryptoError as e:
            raise MalformedCiphertextError(str(e), encrypted.session_id, encrypted.sender_key) from e

        # Only an event that passes every check may claim its message index
        clear_event = self._parse_clear_event(encrypted, payload.plaintext)
        self._check_replay(encrypted, payload.message_index, timeline or encrypted.room_id)

        return DecryptionResult(
            clear_event=clear_event,
            session_id=session.session_id,
            sender_key=session.sender_key,
            message_index=payload.message_index,
            shared_history=session.shared_history,
            forwarding_chain=session.forwarding_chain,
            keys_claimed=dict(session.keys_claimed),
        )

    async def decrypt_async(self, event: dict[str, Any], timeline: str | None = None) -> DecryptionResult:
        """Run ``decrypt`` on a worker thread."""
        return await asyncio.to_thread(self.decrypt, event, timeline)

    # -------------------------------------------------------------------------
    # Pending events
    # -------------------------------------------------------------------------

    def pending_count(self, sender_key: str | None = None, session_id: str | None = None) -> int:
        with self._lock:
            if sender_key is not None and session_id is not None:
                return len(self._pending.get((sender_key, session_id), {}))
            return self._pending_total

    def retry_pending(self, sender_key: str, session_id: str) -> list[DecryptionResult]:
        """Retry parked events for one session.

        Events that still fail are parked again by ``decrypt`` if the
        failure is retryable, and dropped otherwise. If a retry fails with
        anything other than a DecryptionError (a store outage, say), the
        events not yet retried are parked again and the error propagates.
        """
        key = (sender_key, session_id)
        with self._lock:
            bucket = self._pending.pop(key, None)
            if bucket:
                self._pending_total -= len(bucket)
        if not bucket:
            return []

        entries = list(bucket.items())
        results = []
        for position, (event_id, (event, timeline)) in enumerate(entries):
            try:
                result = self.decrypt(event, timeline)
            except DecryptionError as e:
                logger.debug("Retry of event %s failed: %s", event_id, e.code)
                continue
            except Exception:
                self._restore(key, entries[position:])
                raise
            results.append(result)
            for callback in list(self._callbacks):
                try:
                    callback(event, result)
                except Exception:
                    logger.exception("Decrypted-event callback failed for %s", event_id)
        return results

    def _on_session_added(self, session: InboundGroupSession) -> None:
        results = self.retry_pending(session.sender_key, session.session_id)
        if results:
            logger.info("Decrypted %d pending events for session %s", len(results), session.session_id)

    def _retry_if_session_changed(self, encrypted: EncryptedEvent, seen: InboundGroupSession | None) -> None:
        # A session stored between the lookup and the park found an empty queue
        current = self.store.get(encrypted.session_id, encrypted.sender_key)
        if current is None:
            return
        if seen is None or current.first_known_index < seen.first_known_index:
            self.retry_pending(encrypted.sender_key, encrypted.session_id)

    def _park(self, encrypted: EncryptedEvent, event: dict[str, Any], timeline: str | None) -> bool:
        if self.max_pending_events <= 0 or self.max_pending_total <= 0:
            return False
        key = (encrypted.sender_key, encrypted.session_id)
        with self._lock:
            self._add_pending(key, [(encrypted.event_id, (event, timeline))])
        return True

    def _restore(self, key: tuple[str, str], entries: list[tuple[str, PendingEntry]]) -> None:
        with self._lock:
            self._add_pending(key, entries)
        logger.warning("Re-parked %d events for session %s after a failed retry", len(entries), key[1])

    def _add_pending(self, key: tuple[str, str], entries: list[tuple[str, PendingEntry]]) -> None:
        """Park entries under ``key`` and enforce both limits. Caller holds the lock."""
        bucket = self._pending.get(key)
        if bucket is None:
            bucket = self._pending[key] = OrderedDict()
        self._pending.move_to_end(key)

        for event_id, entry in entries:
            if event_id not in bucket:
                self._pending_total += 1
            bucket[event_id] = entry
            bucket.move_to_end(event_id)

        while len(bucket) > self.max_pending_events:
            dropped, _ = bucket.popitem(last=False)
            self._pending_total -= 1
            logger.debug("Pending queue full for session %s; dropped %s", key[1], dropped)

        while self._pending_total > self.max_pending_total:
            oldest_key, oldest = next(iter(self._pending.items()))
            dropped, _ = oldest.popitem(last=False)
            self._pending_total -= 1
            if not oldest:
                del self._pending[oldest_key]
            logger.debug("Pending limit reached; dropped %s for session %s", dropped, oldest_key[1])

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _check_replay(self, encrypted: EncryptedEvent, message_index: int, timeline: str) -> None:
        key = (timeline, encrypted.sender_key, encrypted.session_id, message_index)
        seen = self._seen_indexes.setdefault(key, encrypted.event_id)
        if seen != encrypted.event_id:
            logger.warning(
                "Event %s reuses message index %d of session %s already used by %s",
                encrypted.event_id,
                message_index,
                encrypted.session_id,
                seen,
            )
            raise DuplicateMessageIndexError(
                f"Message index {message_index} already used by {seen}",
                encrypted.session_id,
                encrypted.sender_key,
            )

    def _parse_clear_event(self, encrypted: EncryptedEvent, plaintext: bytes) -> dict[str, Any]:
        try:
            clear_event = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedCiphertextError(
                "Decrypted payload is not JSON", encrypted.session_id, encrypted.sender_key
            ) from e
        if not isinstance(clear_event, dict):
            raise MalformedCiphertextError(
                "Decrypted payload is not an object", encrypted.session_id, encrypted.sender_key
            )

        payload_room = clear_event.get("room_id")
        if payload_room is not None and payload_room != encrypted.room_id:
            raise RoomMismatchError(
                f"Payload is for {payload_room}, event is in {encrypted.room_id}",
                encrypted.session_id,
                encrypted.sender_key,
            )
        return clear_event
