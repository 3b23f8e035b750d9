"""Delegated searcher: queries one partition with a DelegatedCredential.

It can build trapdoors and decrypt for its own partition only. Trapdoors
are unbounded (the searcher does not know the owner's counters), so the
store walks each keyword's entries until the first gap.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

import httpx

from chronoseal.errors import DelegationScopeError
from chronoseal.models.credential import DelegatedCredential, SearcherConfig
from chronoseal.models.record import FIELD_SET, FIELD_USER_ID, FindResult
from chronoseal.services.policy_cipher import ABEEngine, PolicyCipher
from chronoseal.services.range_query import (
    Deadline,
    check_fields,
    decrypt_documents,
    range_trapdoors,
)
from chronoseal.services.remote import RemoteStoreClient
from chronoseal.services.structured_index import DelegatedIndexClient, Dimension

logger = logging.getLogger(__name__)


class Searcher:
    def __init__(
        self,
        credential: DelegatedCredential,
        cipher: PolicyCipher,
        remote: RemoteStoreClient,
    ) -> None:
        self.credential = credential
        self._cipher = cipher
        self._index = DelegatedIndexClient(credential.index_key)
        self._remote = remote

    @classmethod
    def from_config(
        cls,
        config: SearcherConfig,
        *,
        engine: ABEEngine | None = None,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> Searcher:
        if engine is None:
            from chronoseal.services.abe_engine import CharmCPABEEngine

            engine = CharmCPABEEngine()
        credential = config.credential()
        return cls(
            credential,
            PolicyCipher(engine, credential.public_key),
            RemoteStoreClient(config.server_addr, client=http_client, timeout=timeout),
        )

    @classmethod
    def from_config_json(cls, text: str, **kwargs) -> Searcher:
        return cls.from_config(SearcherConfig.from_json(text), **kwargs)

    @property
    def partition(self) -> str:
        return self.credential.partition

    def close(self) -> None:
        self._remote.close()

    def find_range(
        self,
        partition: str,
        dimension: Dimension | str,
        field_value: str,
        time_a: datetime,
        time_b: datetime,
        fields: Iterable[str] = (FIELD_USER_ID,),
        *,
        prefetch: bool = False,
        deadline: float | None = None,
    ) -> list[FindResult]:
        """Same contract as ``Owner.find_range`` within the delegated partition.

        Raises DelegationScopeError for any other partition. With
        ``prefetch`` a PreFind round trip first drops trapdoors that match
        nothing.
        """
        if partition != self.partition:
            raise DelegationScopeError(partition, self.partition)
        requested = check_fields(fields)
        budget = Deadline(deadline)
        trapdoors = range_trapdoors(
            self._index.trapdoor_for_query, partition, dimension, field_value, time_a, time_b
        )
        if prefetch:
            trapdoors = self._remote.prefind(trapdoors, timeout=budget.remaining())
            logger.debug("PreFind kept %d trapdoor(s)", len(trapdoors))
        if not trapdoors:
            return []

        blobs = self._remote.find(requested, trapdoors, timeout=budget.remaining())
        logger.info("Find matched %d document(s)", len(blobs))
        return decrypt_documents(
            self._cipher, self.credential.attribute_key, blobs, requested, logger
        )

    def find_user_ids(self, partition: str, dimension: Dimension | str, field_value: str,
                      time_a: datetime, time_b: datetime, **kwargs) -> list[FindResult]:
        return self.find_range(partition, dimension, field_value, time_a, time_b,
                               (FIELD_USER_ID,), **kwargs)

    def find_user_ids_and_sets(self, partition: str, dimension: Dimension | str, field_value: str,
                               time_a: datetime, time_b: datetime, **kwargs) -> list[FindResult]:
        return self.find_range(partition, dimension, field_value, time_a, time_b,
                               (FIELD_USER_ID, FIELD_SET), **kwargs)
