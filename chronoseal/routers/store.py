"""Remote store router: Insert, Find and PreFind over encrypted documents.

The store never sees plaintext: documents are opaque per-field ciphertexts
and the index holds only (partition tag, address, masked id) triples until a
search trapdoor unlocks one keyword's chain. The partition tag is the
partition's public update key, and every update tag must carry a valid
signature under it.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from chronoseal.db import get_session
from chronoseal.errors import DecodeError
from chronoseal.models.record import EncryptedDocument
from chronoseal.models.store import (
    STATUS_OK,
    FindQuery,
    FindResponse,
    IndexEntry,
    InsertQuery,
    InsertResponse,
    PreFindQuery,
    PreFindResponse,
    StoredDocument,
)
from chronoseal.services.structured_index import (
    SearchTrapdoor,
    parse_trapdoor,
    parse_update_tag,
    resolve_trapdoor,
)
from chronoseal.utils.crypto import DOC_ID_SIZE
from chronoseal.utils.encoding import b64d, b64e

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/store", tags=["store"])


def _lookup(session: Session) -> Callable[[bytes, bytes], bytes | None]:
    def lookup(partition_tag: bytes, address: bytes) -> bytes | None:
        row = session.get(IndexEntry, (partition_tag.hex(), address.hex()))
        return bytes.fromhex(row.masked_id) if row is not None else None

    return lookup


def _decode_document(item: str) -> tuple[str, str]:
    blob = b64d(item)
    document = EncryptedDocument.from_bytes(blob)
    try:
        raw_id = bytes.fromhex(document.id)
    except ValueError as exc:
        raise DecodeError(f"Document id is not hex: {document.id!r}") from exc
    if len(raw_id) != DOC_ID_SIZE:
        raise DecodeError(f"Document id must be {DOC_ID_SIZE} bytes")
    return document.id, blob.decode("utf-8")


def _decode_trapdoors(items: list[str]) -> list[SearchTrapdoor]:
    return [parse_trapdoor(b64d(item)) for item in items]


def _project(body: str, fields: list[str]) -> bytes:
    doc = json.loads(body)
    if fields:
        doc = {name: value for name, value in doc.items() if name == "_id" or name in fields}
    return json.dumps(doc, separators=(",", ":")).encode("utf-8")


@router.post("/insert", response_model=InsertResponse)
async def insert(
    body: InsertQuery,
    session: Session = Depends(get_session),
) -> InsertResponse:
    """Store a batch of documents and update tags; all or nothing."""
    try:
        documents = [_decode_document(item) for item in body.docs]
        tags = [parse_update_tag(b64d(item)) for item in body.tkns]
    except (ValueError, DecodeError) as exc:
        logger.warning("Rejected malformed insert batch: %s", exc)
        return InsertResponse(msg=f"Malformed insert batch: {exc}")

    if not all(tag.is_authentic() for tag in tags):
        logger.warning("Rejected insert batch with an unsigned or forged index update")
        return InsertResponse(msg="Unauthenticated index update")

    doc_ids = [doc_id for doc_id, _ in documents]
    if len(set(doc_ids)) != len(doc_ids):
        return InsertResponse(msg="Duplicate document id in batch")
    if any(session.get(StoredDocument, doc_id) is not None for doc_id in doc_ids):
        return InsertResponse(msg="Document id already stored")
    slots = [(tag.partition_tag.hex(), tag.address.hex()) for tag in tags]
    if len(set(slots)) != len(slots) or any(
        session.get(IndexEntry, slot) is not None for slot in slots
    ):
        return InsertResponse(msg="Index address already in use")

    for doc_id, doc_body in documents:
        session.add(StoredDocument(id=doc_id, body=doc_body))
    for (partition_tag, address), tag in zip(slots, tags):
        session.add(
            IndexEntry(
                partition_tag=partition_tag,
                address=address,
                masked_id=tag.masked_id.hex(),
            )
        )
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.warning("Insert batch collided with an existing index entry")
        return InsertResponse(msg="Index address already in use")

    logger.info("Stored %d document(s) and %d index entries", len(documents), len(tags))
    return InsertResponse(msg=STATUS_OK)


@router.post("/find", response_model=FindResponse)
async def find(
    body: FindQuery,
    session: Session = Depends(get_session),
) -> FindResponse:
    """Documents matched by any trapdoor, each once, projected to ``fields``."""
    try:
        trapdoors = _decode_trapdoors(body.tkns)
    except (ValueError, DecodeError) as exc:
        return FindResponse(msg=f"Malformed search token: {exc}")

    lookup = _lookup(session)
    doc_ids: dict[str, None] = {}
    for trapdoor in trapdoors:
        for doc_id in resolve_trapdoor(trapdoor, lookup):
            doc_ids.setdefault(doc_id, None)

    docs: list[str] = []
    for doc_id in doc_ids:
        stored = session.get(StoredDocument, doc_id)
        if stored is None:
            logger.warning("Index points at missing document %s", doc_id)
            continue
        docs.append(b64e(_project(stored.body, body.fields)))
    return FindResponse(msg=STATUS_OK, docs=docs)


@router.post("/prefind", response_model=PreFindResponse)
async def prefind(
    body: PreFindQuery,
    session: Session = Depends(get_session),
) -> PreFindResponse:
    """The supplied trapdoors that match at least one index entry."""
    try:
        trapdoors = _decode_trapdoors(body.tkns)
    except (ValueError, DecodeError) as exc:
        return PreFindResponse(msg=f"Malformed search token: {exc}")

    lookup = _lookup(session)
    kept = [
        item
        for item, trapdoor in zip(body.tkns, trapdoors)
        if resolve_trapdoor(trapdoor, lookup)
    ]
    return PreFindResponse(msg=STATUS_OK, tkns=kept)
