"""Attribute-based field encryption for Chronoseal.

Domain-aware wrapper over an ABE engine: compiles policy labels, encrypts
and decrypts record fields, and derives attribute-restricted keys. The
engine itself is an opaque capability (``ABEEngine``); the production one
is ``chronoseal.services.abe_engine.CharmCPABEEngine``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from chronoseal.errors import DecodeError, KeyDerivationError, PolicyCompileError
from chronoseal.services.policy import compile_policy, encode_attribute
from chronoseal.utils.encoding import b64d, b64e

logger = logging.getLogger(__name__)


class ABEEngine(Protocol):
    """Capability interface of a ciphertext-policy ABE scheme.

    Keys and ciphertexts are opaque bytes. ``decrypt`` must raise
    AccessDenied for unsatisfied policies and DecodeError for malformed
    input; ``keygen`` raises KeyDerivationError.
    """

    def setup(self) -> tuple[bytes, bytes]: ...

    def keygen(self, attributes: list[str], msk: bytes, pk: bytes) -> bytes: ...

    def encrypt(self, plaintext: bytes, policy: str, pk: bytes) -> bytes: ...

    def decrypt(self, ciphertext: bytes, attr_key: bytes, pk: bytes) -> bytes: ...


@dataclass(frozen=True, slots=True)
class AttributeKey:
    """Decryption key restricted to a set of attribute labels."""

    attributes: frozenset[str]
    blob: bytes

    def to_dict(self) -> dict[str, object]:
        return {"attributes": sorted(self.attributes), "key": b64e(self.blob)}

    @classmethod
    def from_dict(cls, data: dict) -> AttributeKey:
        try:
            return cls(
                attributes=frozenset(str(a) for a in data["attributes"]),
                blob=b64d(data["key"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed attribute key: {exc}") from exc


class PolicyCipher:
    """Policy-scoped field encryption.

    Borrows the owner's public key for the process lifetime. Encryption and
    decryption need only the public key; key derivation takes the master
    secret key explicitly so that searcher processes, which never hold it,
    can use the same class.
    """

    __slots__ = ("_engine", "_public_key")

    def __init__(self, engine: ABEEngine, public_key: bytes) -> None:
        self._engine = engine
        self._public_key = public_key

    @property
    def public_key(self) -> bytes:
        return self._public_key

    def encrypt_field(self, plaintext: bytes, policy_label: str) -> bytes:
        """Encrypt one field under ``policy_label``.

        Raises PolicyCompileError if the label does not compile.
        """
        policy = compile_policy(policy_label)
        return self._engine.encrypt(plaintext, policy.engine_policy, self._public_key)

    def derive_attribute_key(self, attributes: Iterable[str], msk: bytes) -> AttributeKey:
        """Derive a key for ``attributes``. No policy check happens here."""
        labels = frozenset(attributes)
        if not labels:
            raise KeyDerivationError("Cannot derive a key for an empty attribute set")
        try:
            tokens = sorted(encode_attribute(label) for label in labels)
        except PolicyCompileError as exc:
            raise KeyDerivationError(str(exc)) from exc
        blob = self._engine.keygen(tokens, msk, self._public_key)
        logger.debug("Derived attribute key for %d attribute(s)", len(labels))
        return AttributeKey(attributes=labels, blob=blob)

    def decrypt_field(self, ciphertext: bytes, attr_key: AttributeKey) -> bytes:
        """Decrypt one field.

        Raises AccessDenied when the key's attributes do not satisfy the
        policy and DecodeError when the ciphertext is malformed.
        """
        return self._engine.decrypt(ciphertext, attr_key.blob, self._public_key)
