"""Low-level cryptographic primitives for Chronoseal.

Pure functions with no domain knowledge, used as building blocks for the
key store, the structured index and the ABE hybrid layer.
"""

from __future__ import annotations

import hashlib
import hmac
import os

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

NONCE_SIZE = 12
DOC_ID_SIZE = 12  # 96-bit document identifiers

# Argon2id parameters (OWASP recommendation). Stored next to sealed key
# files so they can be raised later without breaking old files.
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536
ARGON2_PARALLELISM = 1


def derive_passphrase_key(
    passphrase: str,
    salt: bytes,
    *,
    time_cost: int = ARGON2_TIME_COST,
    memory_cost: int = ARGON2_MEMORY_COST,
    parallelism: int = ARGON2_PARALLELISM,
) -> bytes:
    """Derive a 256-bit sealing key from a passphrase using Argon2id.

    Uses argon2.low_level.hash_secret_raw() to get raw key bytes
    (not the PHC-formatted string from the high-level PasswordHasher).
    """
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=32,
        type=Type.ID,
    )


def derive_subkey(master: bytes, info: bytes, length: int = 32) -> bytes:
    """Derive a sub-key from a 256-bit secret using HKDF-SHA256.

    Salt is None because every input secret is already uniformly random.
    """
    hkdf = HKDF(
        algorithm=SHA256(),
        length=length,
        salt=None,
        info=info,
    )
    return hkdf.derive(master)


def aes_gcm_encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes:
    """Encrypt plaintext with AES-256-GCM.

    Returns nonce (12 bytes) || ciphertext+tag.
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, aad)
    return nonce + ciphertext


def aes_gcm_decrypt(key: bytes, data: bytes, aad: bytes | None = None) -> bytes:
    """Decrypt data produced by aes_gcm_encrypt.

    Raises cryptography.exceptions.InvalidTag on tampered data or wrong key.
    """
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ciphertext, aad)


def generate_secret(length: int = 32) -> bytes:
    """Generate fresh random key material."""
    return os.urandom(length)


def generate_doc_id() -> str:
    """Generate a fresh 96-bit document identifier as 24 hex characters."""
    return os.urandom(DOC_ID_SIZE).hex()


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    """Compute HMAC-SHA256(key, data). Returns the raw 32-byte digest."""
    return hmac.new(key, data, hashlib.sha256).digest()


def xor_bytes(a: bytes, b: bytes) -> bytes:
    """XOR two equal-length byte strings."""
    if len(a) != len(b):
        raise ValueError(f"Length mismatch: {len(a)} != {len(b)}")
    return bytes(x ^ y for x, y in zip(a, b))


def ed25519_signing_key(seed: bytes) -> Ed25519PrivateKey:
    """Deterministic Ed25519 signing key from a 32-byte seed."""
    return Ed25519PrivateKey.from_private_bytes(seed)


def ed25519_public_bytes(signing_key: Ed25519PrivateKey) -> bytes:
    """Raw 32-byte public key of ``signing_key``."""
    return signing_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def ed25519_verify(public_key: bytes, signature: bytes, message: bytes) -> bool:
    """Check an Ed25519 signature against a raw public key.

    Returns False for a bad signature or a malformed key instead of raising.
    """
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True
