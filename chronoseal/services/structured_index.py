"""Dynamic searchable index scoped by partition.

Counter-based construction:

- each partition has a search key ``k_p = HKDF(index_secret, "partition:" + name)``
  and a separate Ed25519 update key seeded by
  ``HKDF(index_secret, "update:" + name)``; the raw public update key is the
  partition's opaque namespace tag;
- a keyword maps to ``k_w = HMAC(k_p, keyword)``;
- the i-th document added under a keyword lives at ``HMAC(k_w, "addr" || i)``
  with value ``doc_id XOR HMAC(k_w, "val" || i)[:12]``;
- every update tag is signed with the partition's update key and the store
  checks the signature against the tag, so only the owner can add entries.
  A delegate gets ``k_p`` and the tag, never the update key.

The store sees only addresses and masked ids until it is handed ``k_w`` in a
search trapdoor. Per-keyword counters are owner-side state in SQLite; an
insert batch stages its increments and commits them only when the caller's
``with`` block completes, so a rejected batch leaves no trace. A batch whose
fate at the store is unknown is committed together with a PendingInsert row
so its slots are never reused.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, select

from chronoseal.errors import DecodeError, DelegationScopeError, KeyDerivationError
from chronoseal.models.index_state import KeywordCounter, PendingInsert
from chronoseal.services.range_cover import IndexLabel, label_keyword
from chronoseal.utils.crypto import (
    DOC_ID_SIZE,
    derive_subkey,
    ed25519_public_bytes,
    ed25519_signing_key,
    ed25519_verify,
    hmac_sha256,
    xor_bytes,
)
from chronoseal.utils.encoding import b64d, b64e

logger = logging.getLogger(__name__)

# Upper bound for an unbounded (delegated) trapdoor walk.
MAX_WALK = 1 << 24

ADDRESS_SIZE = 32
PARTITION_TAG_SIZE = 32
SIGNATURE_SIZE = 64
_UPDATE_CONTEXT = b"chronoseal-update-v1"


class Dimension(str, Enum):
    A = "A"  # UserId
    B = "B"  # Location


class UpdateOp(str, Enum):
    ADD = "add"


def make_keyword(dimension: Dimension | str, field_value: str, label: IndexLabel) -> bytes:
    return f"{Dimension(dimension).value}:{field_value}:{label_keyword(label)}".encode("utf-8")


@dataclass(frozen=True, slots=True)
class _PartitionKeys:
    search_key: bytes
    update_key: Ed25519PrivateKey
    tag: bytes


def _partition_keys(index_secret: bytes, partition: str) -> _PartitionKeys:
    name = partition.encode("utf-8")
    update_key = ed25519_signing_key(derive_subkey(index_secret, b"update:" + name))
    return _PartitionKeys(
        search_key=derive_subkey(index_secret, b"partition:" + name),
        update_key=update_key,
        tag=ed25519_public_bytes(update_key),
    )


def _address(keyword_key: bytes, i: int) -> bytes:
    return hmac_sha256(keyword_key, b"addr" + i.to_bytes(8, "big"))


def _mask(keyword_key: bytes, i: int) -> bytes:
    return hmac_sha256(keyword_key, b"val" + i.to_bytes(8, "big"))[:DOC_ID_SIZE]


def _update_message(op: UpdateOp, address: bytes, masked_id: bytes) -> bytes:
    return _UPDATE_CONTEXT + b"|" + op.value.encode("ascii") + b"|" + address + masked_id


# ---------------------------------------------------------------------------
# Token wire format
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class UpdateTag:
    partition_tag: bytes
    address: bytes
    masked_id: bytes
    signature: bytes
    op: UpdateOp = UpdateOp.ADD

    def to_bytes(self) -> bytes:
        return json.dumps(
            {
                "t": "update",
                "p": b64e(self.partition_tag),
                "a": b64e(self.address),
                "v": b64e(self.masked_id),
                "op": self.op.value,
                "s": b64e(self.signature),
            },
            separators=(",", ":"),
        ).encode("utf-8")

    def is_authentic(self) -> bool:
        """True when the signature was made by the partition's update key."""
        return ed25519_verify(
            self.partition_tag,
            self.signature,
            _update_message(self.op, self.address, self.masked_id),
        )


@dataclass(frozen=True, slots=True)
class SearchTrapdoor:
    partition_tag: bytes
    keyword_key: bytes
    count: int | None  # None: walk until the first missing address

    def to_bytes(self) -> bytes:
        return json.dumps(
            {
                "t": "search",
                "p": b64e(self.partition_tag),
                "k": b64e(self.keyword_key),
                "n": self.count,
            },
            separators=(",", ":"),
        ).encode("utf-8")


def _parse(blob: bytes, kind: str) -> dict:
    try:
        doc = json.loads(blob)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"Malformed {kind} token: {exc}") from exc
    if not isinstance(doc, dict) or doc.get("t") != kind:
        raise DecodeError(f"Not a {kind} token")
    return doc


def parse_update_tag(blob: bytes) -> UpdateTag:
    doc = _parse(blob, "update")
    try:
        tag = UpdateTag(
            partition_tag=b64d(doc["p"]),
            address=b64d(doc["a"]),
            masked_id=b64d(doc["v"]),
            signature=b64d(doc["s"]),
            op=UpdateOp(doc["op"]),
        )
    except (KeyError, ValueError) as exc:
        raise DecodeError(f"Malformed update token: {exc}") from exc
    for name, value, size in (
        ("Partition tag", tag.partition_tag, PARTITION_TAG_SIZE),
        ("Address", tag.address, ADDRESS_SIZE),
        ("Masked id", tag.masked_id, DOC_ID_SIZE),
        ("Signature", tag.signature, SIGNATURE_SIZE),
    ):
        if len(value) != size:
            raise DecodeError(f"{name} must be {size} bytes")
    return tag


def parse_trapdoor(blob: bytes) -> SearchTrapdoor:
    doc = _parse(blob, "search")
    try:
        count = doc["n"]
        trapdoor = SearchTrapdoor(
            partition_tag=b64d(doc["p"]),
            keyword_key=b64d(doc["k"]),
            count=count,
        )
    except (KeyError, ValueError) as exc:
        raise DecodeError(f"Malformed search token: {exc}") from exc
    if count is not None and (not isinstance(count, int) or isinstance(count, bool) or count < 0):
        raise DecodeError(f"Invalid trapdoor count: {count!r}")
    return trapdoor


def resolve_trapdoor(
    trapdoor: SearchTrapdoor,
    lookup: Callable[[bytes, bytes], bytes | None],
) -> list[str]:
    """Store-side walk: return the document ids a trapdoor matches.

    ``lookup(partition_tag, address)`` returns the stored masked id or None.
    A bounded (owner) walk steps over missing addresses; an unbounded
    (delegated) walk stops at the first one. The owner never allocates
    slots past an unresolved pending insert, so that miss is the end of the
    chain.
    """
    doc_ids: list[str] = []
    bounded = trapdoor.count is not None
    limit = trapdoor.count if bounded else MAX_WALK
    for i in range(limit):
        masked = lookup(trapdoor.partition_tag, _address(trapdoor.keyword_key, i))
        if masked is None:
            if bounded:
                continue
            break
        doc_ids.append(xor_bytes(masked, _mask(trapdoor.keyword_key, i)).hex())
    return doc_ids


# ---------------------------------------------------------------------------
# Owner side
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DelegatedIndexKey:
    """Search capability for one partition.

    Holds the search key and the public partition tag. The update key is not
    part of it, so it cannot produce update tags the store accepts.
    """

    partition: str
    search_key: bytes
    partition_tag: bytes

    def to_dict(self) -> dict[str, str]:
        return {
            "partition": self.partition,
            "key": b64e(self.search_key),
            "tag": b64e(self.partition_tag),
        }

    @classmethod
    def from_dict(cls, data: dict) -> DelegatedIndexKey:
        try:
            return cls(
                partition=str(data["partition"]),
                search_key=b64d(data["key"]),
                partition_tag=b64d(data["tag"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed index delegation key: {exc}") from exc


class IndexBatch:
    """Update tags for one insert batch. Counter increments are staged."""

    def __init__(self, client: StructuredIndexClient, session: Session) -> None:
        self._client = client
        self._session = session
        self._staged: dict[str, int] = {}
        self._seen: set[tuple[str, str, bytes]] = set()

    def _next_index(self, keyword_key: bytes) -> int:
        key_hex = keyword_key.hex()
        if key_hex not in self._staged:
            row = self._session.get(KeywordCounter, key_hex)
            self._staged[key_hex] = row.count if row is not None else 0
        i = self._staged[key_hex]
        self._staged[key_hex] = i + 1
        return i

    def tag_for_insert(
        self,
        doc_id: str,
        partition: str,
        dimension: Dimension | str,
        field_value: str,
        label: IndexLabel,
    ) -> bytes:
        """Signed update tag adding ``doc_id`` under the keyword built from the arguments."""
        keyword = make_keyword(dimension, field_value, label)
        marker = (doc_id, partition, keyword)
        if marker in self._seen:
            raise ValueError(f"Document {doc_id} already tagged for this keyword")
        try:
            raw_id = bytes.fromhex(doc_id)
        except ValueError as exc:
            raise ValueError(f"Document id must be hex: {doc_id!r}") from exc
        if len(raw_id) != DOC_ID_SIZE:
            raise ValueError(f"Document id must be {DOC_ID_SIZE} bytes, got {len(raw_id)}")

        keys = self._client._keys_for(partition)
        keyword_key = hmac_sha256(keys.search_key, keyword)
        i = self._next_index(keyword_key)
        self._seen.add(marker)
        address = _address(keyword_key, i)
        masked_id = xor_bytes(raw_id, _mask(keyword_key, i))
        return UpdateTag(
            partition_tag=keys.tag,
            address=address,
            masked_id=masked_id,
            signature=keys.update_key.sign(_update_message(UpdateOp.ADD, address, masked_id)),
        ).to_bytes()

    def commit(self, pending: PendingInsert | None = None) -> None:
        """Persist the staged counters, plus ``pending`` in the same transaction."""
        now = datetime.now(timezone.utc)
        for key_hex, count in self._staged.items():
            row = self._session.get(KeywordCounter, key_hex)
            if row is None:
                row = KeywordCounter(keyword_key=key_hex, count=count, updated_at=now)
            else:
                row.count = count
                row.updated_at = now
            self._session.add(row)
        if pending is not None:
            self._session.add(pending)
        self._session.commit()
        logger.debug("Committed %d keyword counter(s)", len(self._staged))


class StructuredIndexClient:
    """Owner-side handle on the structured index.

    ``partitions`` restricts the namespaces the owner may use; None allows any.
    """

    def __init__(
        self,
        index_secret: bytes,
        engine: Engine,
        partitions: list[str] | None = None,
    ) -> None:
        self._index_secret = index_secret
        self._engine = engine
        self._partitions = frozenset(partitions) if partitions else None
        self._keys: dict[str, _PartitionKeys] = {}
        SQLModel.metadata.create_all(
            engine, tables=[KeywordCounter.__table__, PendingInsert.__table__]
        )

    def _keys_for(self, partition: str) -> _PartitionKeys:
        if self._partitions is not None and partition not in self._partitions:
            raise KeyDerivationError(f"Unknown partition {partition!r}")
        keys = self._keys.get(partition)
        if keys is None:
            keys = self._keys[partition] = _partition_keys(self._index_secret, partition)
        return keys

    @contextmanager
    def batch(self) -> Iterator[IndexBatch]:
        """Stage update tags; counters are committed when the block exits cleanly."""
        with Session(self._engine) as session:
            batch = IndexBatch(self, session)
            yield batch
            batch.commit()

    def pending_inserts(self) -> list[PendingInsert]:
        with Session(self._engine) as session:
            return list(session.exec(select(PendingInsert).order_by(PendingInsert.id)).all())

    def resolve_pending(self, pending_id: int) -> None:
        with Session(self._engine) as session:
            row = session.get(PendingInsert, pending_id)
            if row is not None:
                session.delete(row)
                session.commit()

    def trapdoor_for_query(
        self,
        partition: str,
        dimension: Dimension | str,
        field_value: str,
        label: IndexLabel,
    ) -> bytes | None:
        """Search trapdoor for one keyword, or None when nothing was ever indexed under it."""
        keys = self._keys_for(partition)
        keyword_key = hmac_sha256(keys.search_key, make_keyword(dimension, field_value, label))
        with Session(self._engine) as session:
            row = session.get(KeywordCounter, keyword_key.hex())
        if row is None or row.count == 0:
            return None
        return SearchTrapdoor(
            partition_tag=keys.tag,
            keyword_key=keyword_key,
            count=row.count,
        ).to_bytes()

    def delegate(self, partition: str) -> DelegatedIndexKey:
        keys = self._keys_for(partition)
        return DelegatedIndexKey(
            partition=partition, search_key=keys.search_key, partition_tag=keys.tag
        )


class DelegatedIndexClient:
    """Searcher-side handle: trapdoors for exactly one partition."""

    __slots__ = ("_key",)

    def __init__(self, key: DelegatedIndexKey) -> None:
        self._key = key

    @property
    def partition(self) -> str:
        return self._key.partition

    def trapdoor_for_query(
        self,
        partition: str,
        dimension: Dimension | str,
        field_value: str,
        label: IndexLabel,
    ) -> bytes:
        """Unbounded trapdoor; raises DelegationScopeError for any other partition."""
        if partition != self._key.partition:
            raise DelegationScopeError(partition, self._key.partition)
        keyword_key = hmac_sha256(
            self._key.search_key, make_keyword(dimension, field_value, label)
        )
        return SearchTrapdoor(
            partition_tag=self._key.partition_tag,
            keyword_key=keyword_key,
            count=None,
        ).to_bytes()
