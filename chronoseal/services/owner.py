"""The data owner's orchestration of field encryption and indexing.

Insert encrypts every field of every record under the record's Set policy,
tags each record's timestamp at all 64 trie levels in both dimensions
(A: UserId, B: Location) and ships the whole batch in one request. Find
turns a time range into its dyadic cover, asks the store with one trapdoor
per cover node and decrypts what comes back. Delegation hands a searcher a
single-partition credential.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from datetime import datetime

import httpx
from sqlmodel import create_engine

from chronoseal.errors import RemoteError, StoreRejected
from chronoseal.models.credential import DelegatedCredential, OwnerConfig, SearcherConfig
from chronoseal.models.index_state import PendingInsert
from chronoseal.models.record import (
    FIELD_SET,
    FIELD_USER_ID,
    RECORD_FIELDS,
    EncryptedDocument,
    FindResult,
    Record,
    unix_seconds,
)
from chronoseal.services.keystore import KeyStore
from chronoseal.services.policy import compile_policy
from chronoseal.services.policy_cipher import ABEEngine, PolicyCipher
from chronoseal.services.range_cover import insertion_labels
from chronoseal.services.range_query import (
    Deadline,
    check_fields,
    decrypt_documents,
    range_trapdoors,
)
from chronoseal.services.remote import RemoteStoreClient
from chronoseal.services.structured_index import (
    Dimension,
    IndexBatch,
    StructuredIndexClient,
)
from chronoseal.utils.crypto import generate_doc_id

_module_logger = logging.getLogger(__name__)


class Owner:
    """Holds the owner's keys and talks to the remote store.

    ``insert`` calls are serialised on one lock because the index counters
    are mutable state; ``find_range`` only reads and may run concurrently.
    """

    def __init__(
        self,
        config: OwnerConfig,
        keystore: KeyStore,
        cipher: PolicyCipher,
        index: StructuredIndexClient,
        remote: RemoteStoreClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._keystore = keystore
        self._cipher = cipher
        self._index = index
        self._remote = remote
        self._logger = logger or _module_logger
        self._insert_lock = threading.Lock()

    @classmethod
    def open(
        cls,
        config: OwnerConfig,
        *,
        engine: ABEEngine | None = None,
        passphrase: str | None = None,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> Owner:
        """Load (or create on first run) the key store and connect to the store.

        Raises ConfigError when the key material under ``config.store_path``
        is unusable.
        """
        if engine is None:
            from chronoseal.services.abe_engine import CharmCPABEEngine

            engine = CharmCPABEEngine()
        keystore = KeyStore.load_or_init(config.store_path, engine, passphrase)
        db_engine = create_engine(
            keystore.index_db_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )
        index = StructuredIndexClient(
            keystore.index_secret, db_engine, partitions=config.set_list or None
        )
        remote = RemoteStoreClient(config.server_addr, client=http_client, timeout=timeout)
        return cls(
            config,
            keystore,
            PolicyCipher(engine, keystore.public_key),
            index,
            remote,
            logger=logger,
        )

    def close(self) -> None:
        self._remote.close()

    def __enter__(self) -> Owner:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- insert ----------------------------------------------------------

    def _encrypt_record(self, doc_id: str, record: Record) -> EncryptedDocument:
        values = record.field_values()
        return EncryptedDocument(
            id=doc_id,
            fields={
                name: self._cipher.encrypt_field(values[name].encode("utf-8"), record.set)
                for name in RECORD_FIELDS
            },
        )

    @staticmethod
    def _record_tokens(batch: IndexBatch, doc_id: str, record: Record) -> list[bytes]:
        """128 update tags: every trie ancestor of the timestamp, in both dimensions."""
        tokens: list[bytes] = []
        for label in insertion_labels(unix_seconds(record.time)):
            tokens.append(batch.tag_for_insert(doc_id, record.set, Dimension.A, record.user_id, label))
            tokens.append(batch.tag_for_insert(doc_id, record.set, Dimension.B, record.location, label))
        return tokens

    def insert(self, records: Sequence[Record], *, deadline: float | None = None) -> list[str]:
        """Encrypt, tag and submit ``records`` as one batch; returns the new document ids.

        Any encryption or tagging failure aborts the whole batch before the
        network is touched. When the store rejects the batch (StoreRejected)
        the index counters are left as they were. When the outcome is
        unknown (a transport error or timeout after submission) the batch's
        index slots are reserved and the batch is kept as pending; it is
        resubmitted before the next insert runs, or by ``replay_pending``.
        """
        if not records:
            return []
        budget = Deadline(deadline)
        with self._insert_lock:
            self._replay_pending(budget)
            with self._index.batch() as batch:
                docs: list[bytes] = []
                tokens: list[bytes] = []
                doc_ids: list[str] = []
                for record in records:
                    doc_id = generate_doc_id()
                    self._logger.debug("Encrypting record %s for partition %r", doc_id, record.set)
                    document = self._encrypt_record(doc_id, record)
                    tokens.extend(self._record_tokens(batch, doc_id, record))
                    docs.append(document.to_bytes())
                    doc_ids.append(doc_id)

                self._logger.info(
                    "Inserting %d document(s) with %d index token(s)", len(docs), len(tokens)
                )
                submitted = False
                try:
                    timeout = budget.remaining()
                    submitted = True
                    self._remote.insert(docs, tokens, timeout=timeout)
                except RemoteError as exc:
                    self._logger.error("Insert of %d document(s) failed: %s", len(docs), exc)
                    if submitted and not isinstance(exc, StoreRejected):
                        self._logger.warning(
                            "Store outcome unknown; reserving index slots for resubmission"
                        )
                        batch.commit(PendingInsert.from_blobs(docs, tokens))
                    raise
        self._logger.info("Inserted %d document(s)", len(doc_ids))
        return doc_ids

    def replay_pending(self, *, deadline: float | None = None) -> int:
        """Resubmit inserts whose outcome was unknown; returns how many were resolved."""
        with self._insert_lock:
            return self._replay_pending(Deadline(deadline))

    def _replay_pending(self, budget: Deadline) -> int:
        pending = self._index.pending_inserts()
        for item in pending:
            try:
                self._remote.insert(item.doc_blobs(), item.token_blobs(), timeout=budget.remaining())
            except StoreRejected as exc:
                # The store is atomic: a byte-identical batch is refused only
                # when the earlier submission already landed.
                self._logger.info("Pending insert %d was already applied (%s)", item.id, exc)
            else:
                self._logger.info("Pending insert %d resubmitted", item.id)
            self._index.resolve_pending(item.id)
        return len(pending)

    # -- find ------------------------------------------------------------

    def find_range(
        self,
        partition: str,
        dimension: Dimension | str,
        field_value: str,
        time_a: datetime,
        time_b: datetime,
        fields: Iterable[str] = (FIELD_USER_ID,),
        *,
        deadline: float | None = None,
    ) -> list[FindResult]:
        """Documents in ``partition`` whose ``dimension`` value is ``field_value``
        and whose time lies in ``[time_a, time_b]``.

        The owner decrypts with a key holding every label of ``partition``,
        so formula partitions are searchable too. Per-document
        AccessDenied/DecodeError land on ``FindResult.error``. No match is
        an empty list.
        """
        requested = check_fields(fields)
        budget = Deadline(deadline)
        trapdoors = range_trapdoors(
            self._index.trapdoor_for_query, partition, dimension, field_value, time_a, time_b
        )
        self._logger.debug("Generated %d search trapdoor(s)", len(trapdoors))
        if not trapdoors:
            return []

        attr_key = self._cipher.derive_attribute_key(
            compile_policy(partition).labels, self._keystore.master_secret_key
        )
        blobs = self._remote.find(requested, trapdoors, timeout=budget.remaining())
        self._logger.info("Find matched %d document(s)", len(blobs))
        return decrypt_documents(self._cipher, attr_key, blobs, requested, self._logger)

    def find_user_ids(
        self,
        partition: str,
        dimension: Dimension | str,
        field_value: str,
        time_a: datetime,
        time_b: datetime,
        *,
        deadline: float | None = None,
    ) -> list[FindResult]:
        return self.find_range(
            partition, dimension, field_value, time_a, time_b, (FIELD_USER_ID,), deadline=deadline
        )

    def find_user_ids_and_sets(
        self,
        partition: str,
        dimension: Dimension | str,
        field_value: str,
        time_a: datetime,
        time_b: datetime,
        *,
        deadline: float | None = None,
    ) -> list[FindResult]:
        return self.find_range(
            partition,
            dimension,
            field_value,
            time_a,
            time_b,
            (FIELD_USER_ID, FIELD_SET),
            deadline=deadline,
        )

    # -- delegation ------------------------------------------------------

    def delegate_keys(self, partition: str) -> DelegatedCredential:
        """Search + decrypt capability for ``partition`` only."""
        attr_key = self._cipher.derive_attribute_key({partition}, self._keystore.master_secret_key)
        index_key = self._index.delegate(partition)
        return DelegatedCredential(
            partition=partition,
            index_key=index_key,
            attribute_key=attr_key,
            public_key=self._keystore.public_key,
        )

    def export_searcher_credential(self, partition: str) -> str:
        """JSON document a separate searcher process can load."""
        credential = self.delegate_keys(partition)
        return SearcherConfig(
            set_list=list(self.config.set_list),
            server_addr=self.config.server_addr,
            keys=credential.to_dict(),
        ).to_json()
