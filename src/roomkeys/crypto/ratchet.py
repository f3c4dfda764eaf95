# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Megolm ratchet engine.

Defines the narrow interface the session pipeline uses to turn shared key
material into decryption capability, plus a reference implementation for
``m.megolm.v1.aes-sha2``:

- RatchetEngine: abstract interface (create a handle, decrypt with it)
- MegolmRatchetEngine: Megolm inbound sessions built on ``cryptography``
- OutboundGroupSession: the sending half, producing session keys and messages

Ratchet layout:
    Four 32-byte parts R0..R3. R3 advances on every message, R2 every 2^8,
    R1 every 2^16 and R0 every 2^24 messages. Advancing R(i) re-seeds all
    lower parts from it, so a key at index n can derive every later key and
    none of the earlier ones.

Wire formats (unpadded base64):
    shared session key:   0x02 | index u32 | ratchet | ed25519 pub | signature
    exported session key: 0x01 | index u32 | ratchet | ed25519 pub
    message:              0x03 | index u32 | aes-cbc ciphertext | mac[8] | signature

Example:
    >>> outbound = OutboundGroupSession()
    >>> engine = MegolmRatchetEngine()
    >>> handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)
    >>> message = outbound.encrypt(b"hello")
    >>> engine.decrypt(handle, message).plaintext
    b'hello'
"""

from __future__ import annotations

import base64
import hmac
import os
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.hmac import HMAC
from cryptography.hazmat.primitives.kdf.hkdf import HKDF


# =============================================================================
# CONSTANTS
# =============================================================================

MEGOLM_ALGORITHM = "m.megolm.v1.aes-sha2"

RATCHET_PARTS = 4
RATCHET_PART_LENGTH = 32
RATCHET_LENGTH = RATCHET_PARTS * RATCHET_PART_LENGTH

SESSION_KEY_VERSION = 0x02
SESSION_EXPORT_VERSION = 0x01
MESSAGE_VERSION = 0x03

PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64
MAC_LENGTH = 8
AES_BLOCK_LENGTH = 16

KDF_INFO_MESSAGE_KEYS = b"MEGOLM_KEYS"
HASH_KEY_SEEDS = (b"\x00", b"\x01", b"\x02", b"\x03")

_U32 = 0xFFFFFFFF


# =============================================================================
# EXCEPTIONS
# =============================================================================


class CryptoError(Exception):
    """Base exception for ratchet engine failures."""
    pass


class UnsupportedAlgorithmError(CryptoError):
    """The engine does not implement the requested algorithm."""
    pass


class BadSessionKeyError(CryptoError):
    """Session key is truncated, has the wrong version or a bad signature."""
    pass


class BadMessageFormatError(CryptoError):
    """Ciphertext could not be decoded or has the wrong version."""
    pass


class BadMessageMacError(CryptoError):
    """Message MAC or signature did not verify."""
    pass


class UnknownMessageIndexError(CryptoError):
    """Message index is earlier than the session's first known index."""

    def __init__(self, message_index: int, first_known_index: int):
        super().__init__(
            f"Message index {message_index} precedes first known index {first_known_index}"
        )
        self.message_index = message_index
        self.first_known_index = first_known_index


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class SessionHandle:
    """Opaque decryption capability produced by a RatchetEngine.

    Attributes:
        session_id: Identifier the engine derived from the key material
        algorithm: Algorithm the handle was built for
        first_known_index: Earliest message index the handle can decrypt
        state: Engine-private state; callers must not inspect it
    """

    session_id: str
    algorithm: str
    first_known_index: int = 0
    state: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class DecryptedPayload:
    """Result of a successful engine decryption."""

    plaintext: bytes
    message_index: int


@dataclass(frozen=True)
class _MegolmKeyMaterial:
    ratchet: bytes
    signing_public_key: bytes


# =============================================================================
# Helpers
# =============================================================================


def encode_base64(data: bytes) -> str:
    """Unpadded standard base64, as used on the wire."""
    return base64.b64encode(data).decode("ascii").rstrip("=")


def decode_base64(data: str) -> bytes:
    """Decode unpadded (or padded) standard base64."""
    padded = data + "=" * (-len(data) % 4)
    return base64.b64decode(padded, validate=True)


def _hmac_sha256(key: bytes, data: bytes) -> bytes:
    mac = HMAC(key, hashes.SHA256())
    mac.update(data)
    return mac.finalize()


class MegolmRatchet:
    """Mutable 4-part Megolm hash ratchet."""

    def __init__(self, data: bytes, counter: int):
        if len(data) != RATCHET_LENGTH:
            raise ValueError(f"Ratchet must be {RATCHET_LENGTH} bytes, got {len(data)}")
        self._parts = [
            data[i * RATCHET_PART_LENGTH:(i + 1) * RATCHET_PART_LENGTH]
            for i in range(RATCHET_PARTS)
        ]
        self.counter = counter & _U32

    @property
    def data(self) -> bytes:
        return b"".join(self._parts)

    def _rehash(self, from_part: int, to_part: int) -> None:
        self._parts[to_part] = _hmac_sha256(self._parts[from_part], HASH_KEY_SEEDS[to_part])

    def advance(self) -> None:
        """Advance by exactly one message."""
        mask = 0x00FFFFFF
        h = 0
        self.counter = (self.counter + 1) & _U32

        while h < RATCHET_PARTS:
            if not (self.counter & mask):
                break
            h += 1
            mask >>= 8

        # R(h) is read by every rehash, so it is updated last
        for i in range(RATCHET_PARTS - 1, h - 1, -1):
            self._rehash(h, i)

    def advance_to(self, index: int) -> None:
        """Advance to ``index`` without stepping through every message."""
        if index < self.counter:
            raise ValueError(f"Cannot rewind ratchet from {self.counter} to {index}")

        for j in range(RATCHET_PARTS):
            shift = (RATCHET_PARTS - j - 1) * 8
            mask = (_U32 << shift) & _U32
            steps = ((index >> shift) - (self.counter >> shift)) & 0xFF
            if steps == 0:
                continue

            while steps > 1:
                self._rehash(j, j)
                steps -= 1

            for k in range(RATCHET_PARTS - 1, j - 1, -1):
                self._rehash(j, k)

            self.counter = index & mask

    def copy(self) -> MegolmRatchet:
        return MegolmRatchet(self.data, self.counter)


def _derive_message_keys(ratchet: bytes) -> tuple[bytes, bytes, bytes]:
    """Split HKDF output into (aes_key, mac_key, iv)."""
    okm = HKDF(
        algorithm=hashes.SHA256(),
        length=32 + 32 + AES_BLOCK_LENGTH,
        salt=None,
        info=KDF_INFO_MESSAGE_KEYS,
    ).derive(ratchet)
    return okm[:32], okm[32:64], okm[64:]


def _public_key_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


# =============================================================================
# Abstract Engine
# =============================================================================


class RatchetEngine(ABC):
    """Abstract interface for group-session ratchet operations.

    The session pipeline never touches ratchet state directly; it only
    creates handles from key material and hands them back for decryption.
    """

    @abstractmethod
    def supports(self, algorithm: str) -> bool:
        """Whether the engine can build sessions for ``algorithm``."""
        pass

    @abstractmethod
    def create_inbound_session(self, session_key: str, algorithm: str) -> SessionHandle:
        """Build a decryption handle from shared key material.

        Args:
            session_key: Session key as received in a room-key event
            algorithm: Algorithm identifier from the event

        Returns:
            New SessionHandle

        Raises:
            UnsupportedAlgorithmError: If the algorithm is not supported
            BadSessionKeyError: If the key cannot be parsed or verified
        """
        pass

    @abstractmethod
    def decrypt(self, handle: SessionHandle, ciphertext: str) -> DecryptedPayload:
        """Decrypt one message with a handle.

        The message index travels inside the ciphertext and is returned
        with the plaintext. The handle itself is never modified.

        Raises:
            BadMessageFormatError: If the ciphertext is malformed
            BadMessageMacError: If authentication fails
            UnknownMessageIndexError: If the index precedes the handle's first known index
        """
        pass


# =============================================================================
# Megolm Implementation
# =============================================================================


class MegolmRatchetEngine(RatchetEngine):
    """Inbound Megolm sessions for ``m.megolm.v1.aes-sha2``."""

    algorithms = frozenset({MEGOLM_ALGORITHM})

    def supports(self, algorithm: str) -> bool:
        return algorithm in self.algorithms

    def create_inbound_session(self, session_key: str, algorithm: str) -> SessionHandle:
        if not self.supports(algorithm):
            raise UnsupportedAlgorithmError(f"Unsupported algorithm: {algorithm}")

        try:
            raw = decode_base64(session_key)
        except (ValueError, TypeError) as e:
            raise BadSessionKeyError(f"Session key is not valid base64: {e}") from e

        if not raw:
            raise BadSessionKeyError("Session key is empty")

        version = raw[0]
        export_length = 1 + 4 + RATCHET_LENGTH + PUBLIC_KEY_LENGTH
        if version == SESSION_KEY_VERSION:
            expected = export_length + SIGNATURE_LENGTH
        elif version == SESSION_EXPORT_VERSION:
            expected = export_length
        else:
            raise BadSessionKeyError(f"Unknown session key version: {version}")

        if len(raw) != expected:
            raise BadSessionKeyError(
                f"Session key has length {len(raw)}, expected {expected}"
            )

        (index,) = struct.unpack(">I", raw[1:5])
        ratchet = raw[5:5 + RATCHET_LENGTH]
        public_bytes = raw[5 + RATCHET_LENGTH:export_length]
        public_key = Ed25519PublicKey.from_public_bytes(public_bytes)

        if version == SESSION_KEY_VERSION:
            try:
                public_key.verify(raw[export_length:], raw[:export_length])
            except InvalidSignature as e:
                raise BadSessionKeyError("Session key signature does not verify") from e

        return SessionHandle(
            session_id=encode_base64(public_bytes),
            algorithm=algorithm,
            first_known_index=index,
            state=_MegolmKeyMaterial(ratchet=ratchet, signing_public_key=public_bytes),
        )

    def decrypt(self, handle: SessionHandle, ciphertext: str) -> DecryptedPayload:
        material = handle.state
        if not isinstance(material, _MegolmKeyMaterial):
            raise CryptoError("Handle was not created by MegolmRatchetEngine")

        try:
            raw = decode_base64(ciphertext)
        except (ValueError, TypeError) as e:
            raise BadMessageFormatError(f"Ciphertext is not valid base64: {e}") from e

        minimum = 1 + 4 + AES_BLOCK_LENGTH + MAC_LENGTH + SIGNATURE_LENGTH
        if len(raw) < minimum:
            raise BadMessageFormatError(f"Ciphertext too short: {len(raw)} bytes")
        if raw[0] != MESSAGE_VERSION:
            raise BadMessageFormatError(f"Unknown message version: {raw[0]}")

        signed, signature = raw[:-SIGNATURE_LENGTH], raw[-SIGNATURE_LENGTH:]
        body, mac = signed[:-MAC_LENGTH], signed[-MAC_LENGTH:]
        (index,) = struct.unpack(">I", body[1:5])
        payload = body[5:]
        if len(payload) % AES_BLOCK_LENGTH:
            raise BadMessageFormatError("Ciphertext is not a whole number of blocks")

        try:
            Ed25519PublicKey.from_public_bytes(material.signing_public_key).verify(signature, signed)
        except InvalidSignature as e:
            raise BadMessageMacError("Message signature does not verify") from e

        if index < handle.first_known_index:
            raise UnknownMessageIndexError(index, handle.first_known_index)

        ratchet = MegolmRatchet(material.ratchet, handle.first_known_index)
        ratchet.advance_to(index)
        aes_key, mac_key, iv = _derive_message_keys(ratchet.data)

        if not hmac.compare_digest(_hmac_sha256(mac_key, body)[:MAC_LENGTH], mac):
            raise BadMessageMacError("Message MAC does not verify")

        decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(payload) + decryptor.finalize()
        unpadder = padding.PKCS7(AES_BLOCK_LENGTH * 8).unpadder()
        try:
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise BadMessageFormatError("Invalid padding") from e

        return DecryptedPayload(plaintext=plaintext, message_index=index)


class OutboundGroupSession:
    """Sending half of a Megolm session.

    Owns a fresh random ratchet and an Ed25519 signing key. Each call to
    ``encrypt`` consumes one ratchet step.
    """

    def __init__(self):
        self._ratchet = MegolmRatchet(os.urandom(RATCHET_LENGTH), 0)
        self._signing_key = Ed25519PrivateKey.generate()
        self._public_bytes = _public_key_bytes(self._signing_key.public_key())

    @property
    def session_id(self) -> str:
        return encode_base64(self._public_bytes)

    @property
    def message_index(self) -> int:
        return self._ratchet.counter

    def session_key(self) -> str:
        """Signed session key at the current index, for ``m.room_key``."""
        body = (
            bytes([SESSION_KEY_VERSION])
            + struct.pack(">I", self._ratchet.counter)
            + self._ratchet.data
            + self._public_bytes
        )
        return encode_base64(body + self._signing_key.sign(body))

    def export_session_key(self) -> str:
        """Unsigned export at the current index, for ``m.forwarded_room_key``."""
        body = (
            bytes([SESSION_EXPORT_VERSION])
            + struct.pack(">I", self._ratchet.counter)
            + self._ratchet.data
            + self._public_bytes
        )
        return encode_base64(body)

    def encrypt(self, plaintext: bytes) -> str:
        aes_key, mac_key, iv = _derive_message_keys(self._ratchet.data)
        padder = padding.PKCS7(AES_BLOCK_LENGTH * 8).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
        payload = encryptor.update(padded) + encryptor.finalize()

        body = bytes([MESSAGE_VERSION]) + struct.pack(">I", self._ratchet.counter) + payload
        signed = body + _hmac_sha256(mac_key, body)[:MAC_LENGTH]
        self._ratchet.advance()
        return encode_base64(signed + self._signing_key.sign(signed))
