"""Pairing-based CP-ABE engine (Bethencourt–Sahai–Waters 2007, via Charm).

KEM/DEM hybrid: a random GT element is encrypted under the access policy
with CP-ABE, hashed into an AES-256 key, and that key encrypts the field
with AES-GCM. The engine policy string is bound to the DEM as associated
data, so swapping the policy of a stored ciphertext breaks decryption.

All keys and ciphertexts cross the engine boundary as JSON bytes with
base64-encoded group elements; the engine never unpickles foreign data.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from cryptography.exceptions import InvalidTag

from charm.core.math.pairing import pc_element
from charm.schemes.abenc.abenc_bsw07 import CPabe_BSW07
from charm.toolbox.pairinggroup import GT, PairingGroup

from chronoseal.errors import AccessDenied, DecodeError, KeyDerivationError
from chronoseal.utils.crypto import aes_gcm_decrypt, aes_gcm_encrypt
from chronoseal.utils.encoding import b64d, b64e


class CharmCPABEEngine:
    """CP-ABE engine on a Charm pairing group."""

    SCHEME = "cpabe-bsw07"
    VERSION = 1

    __slots__ = ("curve", "_group", "_cpabe")

    def __init__(self, curve: str = "SS512") -> None:
        self.curve = curve
        self._group = PairingGroup(curve)
        self._cpabe = CPabe_BSW07(self._group)

    # -- serialization ---------------------------------------------------

    def _serialize(self, obj: Any) -> Any:
        """Recursively serialize Charm group elements to base64 JSON."""
        if isinstance(obj, pc_element):
            return {"__charm__": b64e(self._group.serialize(obj))}
        if isinstance(obj, dict):
            return {str(k): self._serialize(v) for k, v in obj.items()}
        if isinstance(obj, (list, tuple)):
            return [self._serialize(v) for v in obj]
        return obj

    def _deserialize(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            if set(obj) == {"__charm__"}:
                return self._group.deserialize(b64d(obj["__charm__"]))
            return {k: self._deserialize(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [self._deserialize(v) for v in obj]
        return obj

    def _dump(self, kind: str, payload: dict[str, Any]) -> bytes:
        doc = {
            "scheme": self.SCHEME,
            "version": self.VERSION,
            "curve": self.curve,
            "kind": kind,
            **payload,
        }
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    def _load(self, kind: str, blob: bytes) -> dict[str, Any]:
        try:
            doc = json.loads(blob)
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed {kind}: {exc}") from exc
        if not isinstance(doc, dict):
            raise DecodeError(f"Malformed {kind}: expected a JSON object")
        if doc.get("scheme") != self.SCHEME or doc.get("kind") != kind:
            raise DecodeError(
                f"Unsupported {kind}: scheme={doc.get('scheme')!r} kind={doc.get('kind')!r}"
            )
        if doc.get("curve") != self.curve:
            raise DecodeError(f"{kind} is for curve {doc.get('curve')!r}, engine uses {self.curve!r}")
        return doc

    def _load_elements(self, kind: str, blob: bytes, field: str) -> Any:
        doc = self._load(kind, blob)
        try:
            return self._deserialize(doc[field])
        except (KeyError, ValueError, TypeError) as exc:
            raise DecodeError(f"Malformed {kind}: {exc}") from exc

    def _session_key(self, element: Any) -> bytes:
        return hashlib.sha256(self._group.serialize(element)).digest()

    # -- capability ------------------------------------------------------

    def setup(self) -> tuple[bytes, bytes]:
        """Generate (public key, master secret key)."""
        pk, msk = self._cpabe.setup()
        return (
            self._dump("public-key", {"key": self._serialize(pk)}),
            self._dump("master-secret-key", {"key": self._serialize(msk)}),
        )

    def keygen(self, attributes: list[str], msk: bytes, pk: bytes) -> bytes:
        try:
            pk_obj = self._load_elements("public-key", pk, "key")
            msk_obj = self._load_elements("master-secret-key", msk, "key")
            key = self._cpabe.keygen(pk_obj, msk_obj, list(attributes))
        except DecodeError as exc:
            raise KeyDerivationError(f"Cannot use key material: {exc}") from exc
        except Exception as exc:  # pairing library raises bare Exception subclasses
            raise KeyDerivationError(f"CP-ABE keygen failed: {exc}") from exc
        return self._dump("attribute-key", {"key": self._serialize(key)})

    def encrypt(self, plaintext: bytes, policy: str, pk: bytes) -> bytes:
        pk_obj = self._load_elements("public-key", pk, "key")
        element = self._group.random(GT)
        encapsulated = self._cpabe.encrypt(pk_obj, element, policy)
        data = aes_gcm_encrypt(
            self._session_key(element), plaintext, aad=policy.encode("utf-8")
        )
        return self._dump(
            "ciphertext",
            {
                "policy": policy,
                "kem": self._serialize(encapsulated),
                "dem": b64e(data),
            },
        )

    def decrypt(self, ciphertext: bytes, attr_key: bytes, pk: bytes) -> bytes:
        """Decrypt, raising AccessDenied when the key's attributes miss the policy."""
        doc = self._load("ciphertext", ciphertext)
        try:
            policy = doc["policy"]
            encapsulated = self._deserialize(doc["kem"])
            data = b64d(doc["dem"])
        except (KeyError, ValueError, TypeError) as exc:
            raise DecodeError(f"Malformed ciphertext: {exc}") from exc
        if not isinstance(policy, str) or not isinstance(encapsulated, dict):
            raise DecodeError("Malformed ciphertext: bad policy or encapsulation")
        encapsulated["policy"] = policy

        pk_obj = self._load_elements("public-key", pk, "key")
        key_obj = self._load_elements("attribute-key", attr_key, "key")
        try:
            element = self._cpabe.decrypt(pk_obj, key_obj, encapsulated)
        except (KeyError, TypeError) as exc:
            raise DecodeError(f"Malformed ciphertext: {exc}") from exc
        if element is False:
            raise AccessDenied("Attribute key does not satisfy the ciphertext policy")

        try:
            return aes_gcm_decrypt(
                self._session_key(element), data, aad=policy.encode("utf-8")
            )
        except InvalidTag as exc:
            raise DecodeError("Ciphertext failed authentication") from exc
