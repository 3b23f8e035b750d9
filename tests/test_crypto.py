"""Tests for chronoseal/utils/crypto.py and chronoseal/utils/encoding.py."""

from __future__ import annotations

import os

import pytest
from cryptography.exceptions import InvalidTag

from chronoseal.utils.crypto import (
    DOC_ID_SIZE,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    derive_passphrase_key,
    derive_subkey,
    ed25519_public_bytes,
    ed25519_signing_key,
    ed25519_verify,
    generate_doc_id,
    hmac_sha256,
    xor_bytes,
)
from chronoseal.utils.encoding import b64d, b64e

FAST = {"time_cost": 1, "memory_cost": 1024, "parallelism": 1}


class TestDerivePassphraseKey:
    def test_deterministic(self) -> None:
        salt = os.urandom(16)
        assert derive_passphrase_key("pw", salt, **FAST) == derive_passphrase_key("pw", salt, **FAST)

    def test_salt_matters(self) -> None:
        assert derive_passphrase_key("pw", os.urandom(16), **FAST) != derive_passphrase_key(
            "pw", os.urandom(16), **FAST
        )

    def test_length(self) -> None:
        assert len(derive_passphrase_key("pw", os.urandom(16), **FAST)) == 32


class TestDeriveSubkey:
    def test_info_separates_keys(self) -> None:
        master = os.urandom(32)
        assert derive_subkey(master, b"partition:a") != derive_subkey(master, b"partition:b")

    def test_deterministic(self) -> None:
        master = os.urandom(32)
        assert derive_subkey(master, b"x") == derive_subkey(master, b"x")


class TestAesGcm:
    def test_round_trip_with_aad(self) -> None:
        key = os.urandom(32)
        data = aes_gcm_encrypt(key, b"secret", aad=b"ctx")
        assert aes_gcm_decrypt(key, data, aad=b"ctx") == b"secret"

    def test_nonce_is_fresh(self) -> None:
        key = os.urandom(32)
        assert aes_gcm_encrypt(key, b"same") != aes_gcm_encrypt(key, b"same")

    def test_wrong_aad(self) -> None:
        key = os.urandom(32)
        data = aes_gcm_encrypt(key, b"secret", aad=b"ctx")
        with pytest.raises(InvalidTag):
            aes_gcm_decrypt(key, data, aad=b"other")

    def test_tampered(self) -> None:
        key = os.urandom(32)
        data = bytearray(aes_gcm_encrypt(key, b"secret"))
        data[-1] ^= 1
        with pytest.raises(InvalidTag):
            aes_gcm_decrypt(key, bytes(data))


class TestHelpers:
    def test_doc_id(self) -> None:
        doc_id = generate_doc_id()
        assert len(bytes.fromhex(doc_id)) == DOC_ID_SIZE
        assert generate_doc_id() != doc_id

    def test_hmac_raw_digest(self) -> None:
        assert len(hmac_sha256(b"k", b"m")) == 32

    def test_xor_is_involution(self) -> None:
        a, b = os.urandom(12), os.urandom(12)
        assert xor_bytes(xor_bytes(a, b), b) == a

    def test_xor_length_mismatch(self) -> None:
        with pytest.raises(ValueError):
            xor_bytes(b"ab", b"a")


class TestEd25519:
    def test_seeded_key_is_deterministic(self) -> None:
        seed = os.urandom(32)
        assert ed25519_public_bytes(ed25519_signing_key(seed)) == ed25519_public_bytes(
            ed25519_signing_key(seed)
        )

    def test_sign_and_verify(self) -> None:
        key = ed25519_signing_key(os.urandom(32))
        public = ed25519_public_bytes(key)
        signature = key.sign(b"msg")
        assert ed25519_verify(public, signature, b"msg")
        assert not ed25519_verify(public, signature, b"other")

    def test_wrong_key_or_malformed_key(self) -> None:
        key = ed25519_signing_key(os.urandom(32))
        other = ed25519_public_bytes(ed25519_signing_key(os.urandom(32)))
        signature = key.sign(b"msg")
        assert not ed25519_verify(other, signature, b"msg")
        assert not ed25519_verify(b"short", signature, b"msg")


class TestBase64:
    def test_round_trip(self) -> None:
        assert b64d(b64e(b"\x00\xff")) == b"\x00\xff"

    @pytest.mark.parametrize("text", ["%%%", "abc", "é"])
    def test_strict(self, text: str) -> None:
        with pytest.raises(ValueError):
            b64d(text)
