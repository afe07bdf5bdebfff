"""
Tests for document hashing, AES-GCM envelopes and key wrapping.
"""

import hashlib

import pytest

from credvault.core.exceptions import InternalError, InvalidAddress, InvalidHash
from credvault.services.crypto_service import (
    EncryptedEnvelope,
    KeyWrapper,
    compute_document_hash,
    constant_time_equals,
    decrypt_document,
    encrypt_document,
    generate_document_key,
    is_valid_hash,
    normalize_address,
    normalize_hash,
)


class TestDocumentHash:
    """SHA-256 content addressing."""

    def test_matches_sha256_with_prefix(self):
        data = b"%PDF-1.4 transcript"
        assert compute_document_hash(data) == "0x" + hashlib.sha256(data).hexdigest()

    def test_deterministic(self):
        assert compute_document_hash(b"abc") == compute_document_hash(b"abc")

    def test_format(self):
        digest = compute_document_hash(b"")
        assert len(digest) == 66
        assert is_valid_hash(digest)

    def test_normalize_lowercases(self):
        digest = "0x" + "AB" * 32
        assert normalize_hash(digest) == "0x" + "ab" * 32

    @pytest.mark.parametrize("value", ["", "0x1234", "ab" * 32, "0x" + "g" * 64, None])
    def test_normalize_rejects_malformed(self, value):
        with pytest.raises(InvalidHash):
            normalize_hash(value)

    def test_normalize_address(self):
        assert normalize_address("0x" + "AbCd" * 10) == "0x" + "abcd" * 10
        with pytest.raises(InvalidAddress):
            normalize_address("0x123")

    def test_constant_time_equals_ignores_case(self):
        assert constant_time_equals("0xABCDEF", "0xabcdef")
        assert not constant_time_equals("0xabcdef", "0xabcdee")
        assert not constant_time_equals(None, "0xabc")


class TestEnvelope:
    """Per-document AES-256-GCM encryption."""

    def test_decrypt_restores_plaintext(self):
        data = b"credential bytes" * 64
        document_hash = compute_document_hash(data)
        key = generate_document_key()

        envelope = encrypt_document(data, key, document_hash)
        assert envelope.ciphertext != data
        assert decrypt_document(envelope.to_bytes(), key, document_hash) == data

    def test_ciphertext_bound_to_document_hash(self):
        data = b"credential bytes"
        key = generate_document_key()
        envelope = encrypt_document(data, key, compute_document_hash(data))

        with pytest.raises(InternalError):
            decrypt_document(envelope.to_bytes(), key, compute_document_hash(b"other"))

    def test_wrong_key_fails(self):
        data = b"credential bytes"
        document_hash = compute_document_hash(data)
        envelope = encrypt_document(data, generate_document_key(), document_hash)

        with pytest.raises(InternalError):
            decrypt_document(envelope.to_bytes(), generate_document_key(), document_hash)

    def test_envelope_does_not_contain_key(self):
        data = b"credential bytes"
        key = generate_document_key()
        raw = encrypt_document(data, key, compute_document_hash(data)).to_bytes()
        assert key not in raw
        assert key.hex().encode() not in raw

    def test_malformed_envelope(self):
        with pytest.raises(InternalError):
            EncryptedEnvelope.from_bytes(b"not json")

    def test_key_must_be_256_bits(self):
        with pytest.raises(InternalError):
            encrypt_document(b"x", b"short", compute_document_hash(b"x"))


class TestKeyWrapper:
    """Key sealing under the master secret."""

    def test_unwrap_returns_key(self):
        wrapper = KeyWrapper("master")
        key = generate_document_key()
        document_hash = compute_document_hash(b"doc")
        assert wrapper.unwrap(wrapper.wrap(key, document_hash), document_hash) == key

    def test_wrapped_key_bound_to_document(self):
        wrapper = KeyWrapper("master")
        wrapped = wrapper.wrap(generate_document_key(), compute_document_hash(b"doc"))
        with pytest.raises(InternalError):
            wrapper.unwrap(wrapped, compute_document_hash(b"other"))

    def test_different_master_secret_fails(self):
        document_hash = compute_document_hash(b"doc")
        wrapped = KeyWrapper("master").wrap(generate_document_key(), document_hash)
        with pytest.raises(InternalError):
            KeyWrapper("another").unwrap(wrapped, document_hash)

    def test_empty_master_secret_rejected(self):
        with pytest.raises(ValueError):
            KeyWrapper("")
