"""Cryptographic primitives for roomkeys.

This module provides the ratchet engine abstraction consumed by the
session pipeline, and a Megolm implementation of it.
"""

from roomkeys.crypto.ratchet import (
    MEGOLM_ALGORITHM,
    BadMessageFormatError,
    BadMessageMacError,
    BadSessionKeyError,
    CryptoError,
    DecryptedPayload,
    MegolmRatchet,
    MegolmRatchetEngine,
    OutboundGroupSession,
    RatchetEngine,
    SessionHandle,
    UnknownMessageIndexError,
    UnsupportedAlgorithmError,
)

__all__ = [
    "MEGOLM_ALGORITHM",
    # Interfaces
    "RatchetEngine",
    "SessionHandle",
    "DecryptedPayload",
    # Megolm
    "MegolmRatchet",
    "MegolmRatchetEngine",
    "OutboundGroupSession",
    # Exceptions
    "CryptoError",
    "UnsupportedAlgorithmError",
    "BadSessionKeyError",
    "BadMessageFormatError",
    "BadMessageMacError",
    "UnknownMessageIndexError",
]
