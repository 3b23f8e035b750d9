from __future__ import annotations

import os
import tempfile

# Set test environment BEFORE importing chronoseal modules.
# chronoseal.db creates the engine at module level using get_settings().db_url.
_test_tmp = tempfile.mkdtemp(prefix="chronoseal-test-")
os.environ.setdefault("CHRONOSEAL_DB_URL", "sqlite://")
os.environ.setdefault("CHRONOSEAL_STORE_PATH", os.path.join(_test_tmp, "owner"))

import json
from datetime import datetime, timezone

import pytest
from cryptography.exceptions import InvalidTag
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from chronoseal.db import get_session
from chronoseal.errors import AccessDenied, DecodeError, KeyDerivationError
from chronoseal.main import app as fastapi_app
from chronoseal.models.credential import OwnerConfig
from chronoseal.models.record import Record
from chronoseal.services.owner import Owner
from chronoseal.services.policy import Leaf, PolicyNode, compile_policy
from chronoseal.utils.crypto import aes_gcm_decrypt, aes_gcm_encrypt, generate_secret
from chronoseal.utils.encoding import b64d, b64e


def satisfies(node: PolicyNode, held: set[str]) -> bool:
    """Evaluate a compiled policy tree over a set of attribute tokens."""
    if isinstance(node, Leaf):
        return node.label in held
    if node.op == "and":
        return satisfies(node.left, held) and satisfies(node.right, held)
    return satisfies(node.left, held) or satisfies(node.right, held)


class FakeABEEngine:
    """Non-pairing stand-in honouring the ABEEngine contract.

    Policies are evaluated in the clear over the attribute tokens; field
    data is still AES-GCM encrypted so tampering is detected.
    """

    def setup(self) -> tuple[bytes, bytes]:
        secret = b64e(generate_secret(32))
        return (
            json.dumps({"kind": "pk", "secret": secret}).encode(),
            json.dumps({"kind": "msk", "secret": secret}).encode(),
        )

    @staticmethod
    def _secret(blob: bytes, kind: str) -> bytes:
        try:
            doc = json.loads(blob)
            if doc["kind"] != kind:
                raise ValueError(kind)
            return b64d(doc["secret"])
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"bad {kind}") from exc

    def keygen(self, attributes: list[str], msk: bytes, pk: bytes) -> bytes:
        try:
            if self._secret(msk, "msk") != self._secret(pk, "pk"):
                raise KeyDerivationError("msk does not belong to pk")
        except DecodeError as exc:
            raise KeyDerivationError(str(exc)) from exc
        return json.dumps({"kind": "ak", "attributes": sorted(attributes)}).encode()

    def encrypt(self, plaintext: bytes, policy: str, pk: bytes) -> bytes:
        data = aes_gcm_encrypt(self._secret(pk, "pk"), plaintext, aad=policy.encode())
        return json.dumps({"kind": "ct", "policy": policy, "data": b64e(data)}).encode()

    def decrypt(self, ciphertext: bytes, attr_key: bytes, pk: bytes) -> bytes:
        try:
            doc = json.loads(ciphertext)
            policy = doc["policy"]
            data = b64d(doc["data"])
            attributes = json.loads(attr_key)["attributes"]
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError("malformed ciphertext") from exc
        if not satisfies(compile_policy(policy).tree, set(attributes)):
            raise AccessDenied("policy not satisfied")
        try:
            return aes_gcm_decrypt(self._secret(pk, "pk"), data, aad=policy.encode())
        except InvalidTag as exc:
            raise DecodeError("ciphertext failed authentication") from exc


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(session):
    """FastAPI TestClient for the store with an overridden DB session."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    with TestClient(fastapi_app) as client:
        yield client
    fastapi_app.dependency_overrides.clear()


# ── Owner fixtures ────────────────────────────────────────────────────


@pytest.fixture(name="abe_engine")
def abe_engine_fixture() -> FakeABEEngine:
    return FakeABEEngine()


@pytest.fixture(name="owner_config")
def owner_config_fixture(tmp_path) -> OwnerConfig:
    return OwnerConfig(
        store_path=tmp_path / "owner",
        set_list=[],
        server_addr="http://testserver",
    )


@pytest.fixture(name="owner")
def owner_fixture(owner_config, abe_engine, client):
    with Owner.open(owner_config, engine=abe_engine, http_client=client) as owner:
        yield owner


@pytest.fixture(name="records")
def records_fixture() -> list[Record]:
    return [
        Record(user_id="alice", location="paris", set="grpA", time=utc(2024, 1, 10, 12)),
        Record(user_id="alice", location="berlin", set="grpA", time=utc(2024, 1, 20, 8)),
        Record(user_id="bob", location="paris", set="grpA", time=utc(2024, 1, 15, 9, 30)),
        Record(user_id="alice", location="paris", set="grpB", time=utc(2024, 1, 12)),
    ]
