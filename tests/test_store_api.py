"""Tests for the reference store service (chronoseal/routers/store.py)."""

from __future__ import annotations

import json

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine, select

from chronoseal.models.record import EncryptedDocument
from chronoseal.models.store import STATUS_OK, IndexEntry, StoredDocument
from chronoseal.services.range_cover import IndexLabel
from chronoseal.services.structured_index import (
    DelegatedIndexClient,
    Dimension,
    StructuredIndexClient,
    UpdateTag,
    make_keyword,
    parse_update_tag,
)
from chronoseal.utils.crypto import (
    ed25519_signing_key,
    generate_doc_id,
    generate_secret,
    hmac_sha256,
    xor_bytes,
)
from chronoseal.utils.encoding import b64d, b64e

LABEL = IndexLabel(level=0, prefix=1_704_888_000)


@pytest.fixture(name="index")
def index_fixture() -> StructuredIndexClient:
    """Owner-side index state, kept apart from the store database."""
    owner_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return StructuredIndexClient(generate_secret(), owner_engine)


def _doc(doc_id: str) -> bytes:
    return EncryptedDocument(
        id=doc_id,
        fields={"UserId": b"ct-user", "Location": b"ct-loc", "Set": b"ct-set", "Time": b"ct-time"},
    ).to_bytes()


def _insert(client, index, doc_ids, value="alice"):
    with index.batch() as batch:
        tags = [batch.tag_for_insert(d, "grpA", Dimension.A, value, LABEL) for d in doc_ids]
        response = client.post(
            "/api/store/insert",
            json={"docs": [b64e(_doc(d)) for d in doc_ids], "tkns": [b64e(t) for t in tags]},
        )
        assert response.status_code == 200
        assert response.json()["msg"] == STATUS_OK
    return tags


class TestInsert:
    def test_stores_documents_and_entries(self, client, index, session) -> None:
        ids = [generate_doc_id(), generate_doc_id()]
        _insert(client, index, ids)
        assert {d.id for d in session.exec(select(StoredDocument)).all()} == set(ids)
        assert len(session.exec(select(IndexEntry)).all()) == 2

    def test_empty_batch_ok(self, client) -> None:
        response = client.post("/api/store/insert", json={"docs": [], "tkns": []})
        assert response.json()["msg"] == STATUS_OK

    def test_malformed_token_stores_nothing(self, client, index, session) -> None:
        doc_id = generate_doc_id()
        with index.batch() as batch:
            tag = batch.tag_for_insert(doc_id, "grpA", Dimension.A, "alice", LABEL)
        response = client.post(
            "/api/store/insert",
            json={"docs": [b64e(_doc(doc_id))], "tkns": [b64e(tag), b64e(b"junk")]},
        )
        assert response.status_code == 200
        assert response.json()["msg"] != STATUS_OK
        assert session.exec(select(StoredDocument)).all() == []
        assert session.exec(select(IndexEntry)).all() == []

    def test_malformed_document_stores_nothing(self, client, session) -> None:
        response = client.post(
            "/api/store/insert",
            json={"docs": [b64e(_doc(generate_doc_id())), b64e(b'{"no":"id"}')], "tkns": []},
        )
        assert "Malformed" in response.json()["msg"]
        assert session.exec(select(StoredDocument)).all() == []

    def test_non_base64_rejected(self, client) -> None:
        response = client.post("/api/store/insert", json={"docs": ["%%%"], "tkns": []})
        assert response.json()["msg"] != STATUS_OK

    def test_duplicate_document_id_rejected(self, client, index) -> None:
        doc_id = generate_doc_id()
        _insert(client, index, [doc_id])
        response = client.post(
            "/api/store/insert", json={"docs": [b64e(_doc(doc_id))], "tkns": []}
        )
        assert response.json()["msg"] == "Document id already stored"

    def test_reused_address_rolls_back(self, client, index, session) -> None:
        tags = _insert(client, index, [generate_doc_id()])
        fresh = generate_doc_id()
        response = client.post(
            "/api/store/insert",
            json={"docs": [b64e(_doc(fresh))], "tkns": [b64e(tags[0])]},
        )
        assert response.json()["msg"] != STATUS_OK
        assert session.get(StoredDocument, fresh) is None


class TestInsertAuthentication:
    def test_tag_signed_by_another_key_rejected(self, client, index, session) -> None:
        _insert(client, index, [generate_doc_id()])
        key = index.delegate("grpA")
        keyword_key = hmac_sha256(key.search_key, make_keyword(Dimension.A, "alice", LABEL))
        address = hmac_sha256(keyword_key, b"addr" + (1).to_bytes(8, "big"))
        mask = hmac_sha256(keyword_key, b"val" + (1).to_bytes(8, "big"))[:12]
        forged_id = generate_doc_id()
        masked = xor_bytes(bytes.fromhex(forged_id), mask)
        signature = ed25519_signing_key(generate_secret()).sign(
            b"chronoseal-update-v1|add|" + address + masked
        )
        tag = UpdateTag(key.partition_tag, address, masked, signature)

        response = client.post(
            "/api/store/insert",
            json={"docs": [b64e(_doc(forged_id))], "tkns": [b64e(tag.to_bytes())]},
        )
        assert response.json()["msg"] == "Unauthenticated index update"
        assert session.get(StoredDocument, forged_id) is None
        assert len(session.exec(select(IndexEntry)).all()) == 1

    def test_tampered_owner_tag_rejected(self, client, index, session) -> None:
        doc_id = generate_doc_id()
        with index.batch() as batch:
            tag = parse_update_tag(
                batch.tag_for_insert(doc_id, "grpA", Dimension.A, "alice", LABEL)
            )
        other = xor_bytes(tag.masked_id, b"\x01" + bytes(11))
        tampered = UpdateTag(tag.partition_tag, tag.address, other, tag.signature)
        response = client.post(
            "/api/store/insert",
            json={"docs": [b64e(_doc(doc_id))], "tkns": [b64e(tampered.to_bytes())]},
        )
        assert response.json()["msg"] == "Unauthenticated index update"
        assert session.exec(select(IndexEntry)).all() == []


class TestFind:
    def test_projects_requested_fields(self, client, index) -> None:
        doc_id = generate_doc_id()
        _insert(client, index, [doc_id])
        trapdoor = index.trapdoor_for_query("grpA", Dimension.A, "alice", LABEL)
        response = client.post(
            "/api/store/find", json={"fields": ["UserId"], "tkns": [b64e(trapdoor)]}
        )
        body = response.json()
        assert body["msg"] == STATUS_OK
        docs = [json.loads(b64d(d)) for d in body["docs"]]
        assert docs == [{"_id": doc_id, "UserId": b64e(b"ct-user")}]

    def test_deduplicates_across_trapdoors(self, client, index) -> None:
        doc_id = generate_doc_id()
        _insert(client, index, [doc_id])
        owner_td = index.trapdoor_for_query("grpA", Dimension.A, "alice", LABEL)
        delegated_td = DelegatedIndexClient(index.delegate("grpA")).trapdoor_for_query(
            "grpA", Dimension.A, "alice", LABEL
        )
        response = client.post(
            "/api/store/find",
            json={"fields": ["UserId"], "tkns": [b64e(owner_td), b64e(delegated_td)]},
        )
        assert len(response.json()["docs"]) == 1

    def test_no_tokens_no_docs(self, client) -> None:
        response = client.post("/api/store/find", json={"fields": ["UserId"], "tkns": []})
        assert response.json() == {"msg": STATUS_OK, "docs": []}

    def test_malformed_trapdoor(self, client) -> None:
        response = client.post(
            "/api/store/find", json={"fields": ["UserId"], "tkns": [b64e(b"{}")]}
        )
        assert response.json()["msg"] != STATUS_OK


class TestPreFind:
    def test_keeps_only_matching_trapdoors(self, client, index) -> None:
        _insert(client, index, [generate_doc_id()])
        delegated = DelegatedIndexClient(index.delegate("grpA"))
        hit = b64e(delegated.trapdoor_for_query("grpA", Dimension.A, "alice", LABEL))
        miss = b64e(delegated.trapdoor_for_query("grpA", Dimension.A, "bob", LABEL))
        response = client.post("/api/store/prefind", json={"tkns": [hit, miss]})
        assert response.json() == {"msg": STATUS_OK, "tkns": [hit]}


def test_health(client) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
