"""Tests for the Megolm ratchet engine.

These tests verify the ratchet arithmetic, session key parsing, and
message decryption of MegolmRatchetEngine against OutboundGroupSession.
"""

import os
import struct

import pytest

from roomkeys.crypto.ratchet import (
    MEGOLM_ALGORITHM,
    RATCHET_LENGTH,
    BadMessageFormatError,
    BadMessageMacError,
    BadSessionKeyError,
    MegolmRatchet,
    MegolmRatchetEngine,
    OutboundGroupSession,
    SessionHandle,
    UnknownMessageIndexError,
    UnsupportedAlgorithmError,
    decode_base64,
    encode_base64,
)


# =============================================================================
# Ratchet Tests
# =============================================================================


class TestMegolmRatchet:
    """Tests for the 4-part hash ratchet."""

    @pytest.fixture
    def seed(self):
        return os.urandom(RATCHET_LENGTH)

    def test_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            MegolmRatchet(b"short", 0)

    def test_advance_changes_state(self, seed):
        ratchet = MegolmRatchet(seed, 0)
        ratchet.advance()

        assert ratchet.counter == 1
        assert ratchet.data != seed
        # Only R3 moves on an ordinary step
        assert ratchet.data[:96] == seed[:96]

    @pytest.mark.parametrize("target", [1, 255, 256, 257, 600])
    def test_advance_to_matches_stepping(self, seed, target):
        stepped = MegolmRatchet(seed, 0)
        for _ in range(target):
            stepped.advance()

        jumped = MegolmRatchet(seed, 0)
        jumped.advance_to(target)

        assert jumped.counter == target
        assert jumped.data == stepped.data

    def test_advance_to_across_r1_boundary(self, seed):
        direct = MegolmRatchet(seed, 0)
        direct.advance_to(0x10000 + 5)

        staged = MegolmRatchet(seed, 0)
        staged.advance_to(0x10000)
        for _ in range(5):
            staged.advance()

        assert direct.data == staged.data

    def test_advance_to_from_nonzero_start(self, seed):
        a = MegolmRatchet(seed, 10)
        a.advance_to(300)

        b = MegolmRatchet(seed, 10)
        for _ in range(290):
            b.advance()

        assert a.data == b.data

    def test_cannot_rewind(self, seed):
        ratchet = MegolmRatchet(seed, 5)

        with pytest.raises(ValueError):
            ratchet.advance_to(4)

    def test_copy_is_independent(self, seed):
        ratchet = MegolmRatchet(seed, 0)
        clone = ratchet.copy()
        clone.advance()

        assert ratchet.counter == 0
        assert ratchet.data == seed


# =============================================================================
# Session Key Tests
# =============================================================================


class TestCreateInboundSession:
    """Tests for MegolmRatchetEngine.create_inbound_session."""

    @pytest.fixture
    def engine(self):
        return MegolmRatchetEngine()

    def test_session_id_matches_outbound(self, engine):
        outbound = OutboundGroupSession()

        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)

        assert handle.session_id == outbound.session_id
        assert handle.algorithm == MEGOLM_ALGORITHM
        assert handle.first_known_index == 0

    def test_first_known_index_tracks_outbound(self, engine):
        outbound = OutboundGroupSession()
        outbound.encrypt(b"one")
        outbound.encrypt(b"two")

        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)

        assert handle.first_known_index == 2

    def test_exported_key_accepted(self, engine):
        outbound = OutboundGroupSession()

        handle = engine.create_inbound_session(outbound.export_session_key(), MEGOLM_ALGORITHM)

        assert handle.session_id == outbound.session_id

    def test_unsupported_algorithm(self, engine):
        outbound = OutboundGroupSession()

        with pytest.raises(UnsupportedAlgorithmError):
            engine.create_inbound_session(outbound.session_key(), "m.olm.v1.curve25519-aes-sha2")

    def test_supports(self, engine):
        assert engine.supports(MEGOLM_ALGORITHM)
        assert not engine.supports("456")

    @pytest.mark.parametrize("bad_key", ["", "not base64!!", encode_base64(b"\x02short")])
    def test_malformed_keys(self, engine, bad_key):
        with pytest.raises(BadSessionKeyError):
            engine.create_inbound_session(bad_key, MEGOLM_ALGORITHM)

    def test_unknown_version(self, engine):
        raw = bytearray(decode_base64(OutboundGroupSession().session_key()))
        raw[0] = 0x07

        with pytest.raises(BadSessionKeyError):
            engine.create_inbound_session(encode_base64(bytes(raw)), MEGOLM_ALGORITHM)

    def test_tampered_signature(self, engine):
        raw = bytearray(decode_base64(OutboundGroupSession().session_key()))
        raw[10] ^= 0xFF

        with pytest.raises(BadSessionKeyError):
            engine.create_inbound_session(encode_base64(bytes(raw)), MEGOLM_ALGORITHM)


# =============================================================================
# Decryption Tests
# =============================================================================


class TestDecrypt:
    """Tests for MegolmRatchetEngine.decrypt."""

    @pytest.fixture
    def engine(self):
        return MegolmRatchetEngine()

    @pytest.fixture
    def outbound(self):
        return OutboundGroupSession()

    def test_roundtrip(self, engine, outbound):
        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)
        message = outbound.encrypt(b"hello world")

        payload = engine.decrypt(handle, message)

        assert payload.plaintext == b"hello world"
        assert payload.message_index == 0

    def test_out_of_order_messages(self, engine, outbound):
        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)
        messages = [outbound.encrypt(f"m{i}".encode()) for i in range(5)]

        assert engine.decrypt(handle, messages[4]).plaintext == b"m4"
        assert engine.decrypt(handle, messages[1]).plaintext == b"m1"
        assert engine.decrypt(handle, messages[1]).message_index == 1

    def test_handle_is_not_advanced(self, engine, outbound):
        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)
        first = outbound.encrypt(b"first")
        engine.decrypt(handle, outbound.encrypt(b"second"))

        assert engine.decrypt(handle, first).plaintext == b"first"
        assert handle.first_known_index == 0

    def test_unknown_message_index(self, engine, outbound):
        early = outbound.encrypt(b"before key")
        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)

        with pytest.raises(UnknownMessageIndexError) as exc_info:
            engine.decrypt(handle, early)

        assert exc_info.value.message_index == 0
        assert exc_info.value.first_known_index == 1

    def test_tampered_ciphertext(self, engine, outbound):
        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)
        raw = bytearray(decode_base64(outbound.encrypt(b"hello")))
        raw[6] ^= 0x01

        with pytest.raises(BadMessageMacError):
            engine.decrypt(handle, encode_base64(bytes(raw)))

    def test_message_from_other_session(self, engine, outbound):
        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)
        other = OutboundGroupSession()

        with pytest.raises(BadMessageMacError):
            engine.decrypt(handle, other.encrypt(b"hello"))

    def test_truncated_message(self, engine, outbound):
        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)

        with pytest.raises(BadMessageFormatError):
            engine.decrypt(handle, encode_base64(b"\x03" + struct.pack(">I", 0)))

    def test_wrong_message_version(self, engine, outbound):
        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)
        raw = bytearray(decode_base64(outbound.encrypt(b"hello")))
        raw[0] = 0x04

        with pytest.raises(BadMessageFormatError):
            engine.decrypt(handle, encode_base64(bytes(raw)))

    def test_non_base64(self, engine, outbound):
        handle = engine.create_inbound_session(outbound.session_key(), MEGOLM_ALGORITHM)

        with pytest.raises(BadMessageFormatError):
            engine.decrypt(handle, "%%%")

    def test_foreign_handle(self, engine):
        from roomkeys.crypto.ratchet import CryptoError

        handle = SessionHandle(session_id="x", algorithm=MEGOLM_ALGORITHM)

        with pytest.raises(CryptoError):
            engine.decrypt(handle, "AwAAAAA")


class TestOutboundGroupSession:
    """Tests for OutboundGroupSession."""

    def test_index_advances_per_message(self):
        outbound = OutboundGroupSession()
        assert outbound.message_index == 0

        outbound.encrypt(b"a")
        outbound.encrypt(b"b")

        assert outbound.message_index == 2

    def test_session_ids_unique(self):
        assert OutboundGroupSession().session_id != OutboundGroupSession().session_id

    def test_base64_is_unpadded(self):
        outbound = OutboundGroupSession()

        assert "=" not in outbound.session_key()
        assert "=" not in outbound.encrypt(b"x")
