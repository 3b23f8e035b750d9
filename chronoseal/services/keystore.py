"""Owner key store: generate once, persist, reload thereafter.

Holds the ABE key pair and the structured-index secret. The key file lives
at ``<store_path>/keys.json`` (mode 0600). With a passphrase the payload is
sealed with AES-256-GCM under an Argon2id-derived key; the salt and KDF
parameters are stored beside it so they can be raised later.

Everything here is immutable after ``load_or_init`` returns.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from argon2.exceptions import Argon2Error
from cryptography.exceptions import InvalidTag

from chronoseal.errors import ConfigError
from chronoseal.services.policy_cipher import ABEEngine
from chronoseal.utils.crypto import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    derive_passphrase_key,
    generate_secret,
)
from chronoseal.utils.encoding import b64d, b64e

logger = logging.getLogger(__name__)

KEY_FILE_NAME = "keys.json"
INDEX_DB_NAME = "index.db"
KEY_FILE_VERSION = 1
_SEAL_AAD = b"chronoseal-keystore-v1"


class KeyStore:
    """Process-wide owner secrets with an explicit init-or-load lifecycle."""

    __slots__ = ("_path", "_public_key", "_master_secret_key", "_index_secret")

    def __init__(
        self,
        path: Path,
        public_key: bytes,
        master_secret_key: bytes,
        index_secret: bytes,
    ) -> None:
        self._path = path
        self._public_key = public_key
        self._master_secret_key = master_secret_key
        self._index_secret = index_secret

    @property
    def path(self) -> Path:
        return self._path

    @property
    def public_key(self) -> bytes:
        return self._public_key

    @property
    def master_secret_key(self) -> bytes:
        return self._master_secret_key

    @property
    def index_secret(self) -> bytes:
        return self._index_secret

    @property
    def index_db_url(self) -> str:
        return f"sqlite:///{self._path / INDEX_DB_NAME}"

    def __repr__(self) -> str:
        return f"KeyStore(path={str(self._path)!r})"

    # -- lifecycle -------------------------------------------------------

    @classmethod
    def load_or_init(
        cls,
        path: Path | str,
        engine: ABEEngine,
        passphrase: str | None = None,
    ) -> KeyStore:
        """Load the key file under ``path``, generating it on first run.

        Raises ConfigError when the directory or key file is unusable, the
        file is malformed, or the passphrase is missing or wrong.
        """
        path = Path(path)
        if path.exists() and not path.is_dir():
            raise ConfigError(f"Store path {path} is not a directory")
        key_file = path / KEY_FILE_NAME
        if key_file.exists():
            store = cls._load(path, key_file, passphrase)
            logger.info("Loaded owner key store from %s", key_file)
            return store

        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"Cannot create store path {path}: {exc}") from exc
        public_key, master_secret_key = engine.setup()
        store = cls(path, public_key, master_secret_key, generate_secret(32))
        store._write(key_file, passphrase)
        logger.info("Generated new owner key store at %s", key_file)
        return store

    def _payload(self) -> dict[str, str]:
        return {
            "public_key": b64e(self._public_key),
            "master_secret_key": b64e(self._master_secret_key),
            "index_secret": b64e(self._index_secret),
        }

    def _write(self, key_file: Path, passphrase: str | None) -> None:
        doc: dict[str, object] = {
            "version": KEY_FILE_VERSION,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        if passphrase:
            salt = generate_secret(16)
            seal_key = derive_passphrase_key(
                passphrase,
                salt,
                time_cost=ARGON2_TIME_COST,
                memory_cost=ARGON2_MEMORY_COST,
                parallelism=ARGON2_PARALLELISM,
            )
            sealed = aes_gcm_encrypt(
                seal_key, json.dumps(self._payload()).encode("utf-8"), aad=_SEAL_AAD
            )
            doc["sealed"] = True
            doc["kdf"] = {
                "name": "argon2id",
                "salt": b64e(salt),
                "time_cost": ARGON2_TIME_COST,
                "memory_cost": ARGON2_MEMORY_COST,
                "parallelism": ARGON2_PARALLELISM,
            }
            doc["payload"] = b64e(sealed)
        else:
            doc["sealed"] = False
            doc["payload"] = self._payload()

        tmp = key_file.with_suffix(".tmp")
        try:
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2)
            os.replace(tmp, key_file)
        except OSError as exc:
            raise ConfigError(f"Cannot write key file {key_file}: {exc}") from exc

    @classmethod
    def _load(cls, path: Path, key_file: Path, passphrase: str | None) -> KeyStore:
        try:
            doc = json.loads(key_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigError(f"Cannot read key file {key_file}: {exc}") from exc
        if not isinstance(doc, dict) or doc.get("version") != KEY_FILE_VERSION:
            raise ConfigError(f"Unsupported key file format in {key_file}")

        if doc.get("sealed"):
            payload = cls._unseal(doc, key_file, passphrase)
        else:
            if passphrase:
                logger.warning("Key file %s is not sealed; ignoring passphrase", key_file)
            payload = doc.get("payload")

        if not isinstance(payload, dict):
            raise ConfigError(f"Key file {key_file} has no payload")
        try:
            return cls(
                path,
                public_key=b64d(payload["public_key"]),
                master_secret_key=b64d(payload["master_secret_key"]),
                index_secret=b64d(payload["index_secret"]),
            )
        except (KeyError, ValueError) as exc:
            raise ConfigError(f"Key file {key_file} is missing key material: {exc}") from exc

    @staticmethod
    def _unseal(doc: dict, key_file: Path, passphrase: str | None) -> object:
        if not passphrase:
            raise ConfigError(f"Key file {key_file} is sealed; a passphrase is required")
        try:
            kdf = doc["kdf"]
            seal_key = derive_passphrase_key(
                passphrase,
                b64d(kdf["salt"]),
                time_cost=int(kdf["time_cost"]),
                memory_cost=int(kdf["memory_cost"]),
                parallelism=int(kdf["parallelism"]),
            )
            plaintext = aes_gcm_decrypt(seal_key, b64d(doc["payload"]), aad=_SEAL_AAD)
            return json.loads(plaintext)
        except InvalidTag as exc:
            raise ConfigError(f"Wrong passphrase for key file {key_file}") from exc
        except (KeyError, TypeError, ValueError, Argon2Error) as exc:
            raise ConfigError(f"Malformed sealed key file {key_file}: {exc}") from exc
