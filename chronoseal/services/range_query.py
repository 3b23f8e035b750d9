"""Range-query steps shared by the owner and delegated searchers."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime

from chronoseal.errors import AccessDenied, DecodeError, OperationCancelled
from chronoseal.models.record import RECORD_FIELDS, EncryptedDocument, FindResult, unix_seconds
from chronoseal.services.policy_cipher import AttributeKey, PolicyCipher
from chronoseal.services.range_cover import IndexLabel, range_cover
from chronoseal.services.structured_index import Dimension

TrapdoorFn = Callable[[str, Dimension, str, IndexLabel], "bytes | None"]


class Deadline:
    """Time budget for one call; ``None`` seconds means unbounded."""

    __slots__ = ("_expires_at",)

    def __init__(self, seconds: float | None) -> None:
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    def remaining(self) -> float | None:
        """Seconds left, raising OperationCancelled once the budget is spent."""
        if self._expires_at is None:
            return None
        left = self._expires_at - time.monotonic()
        if left <= 0:
            raise OperationCancelled("Deadline expired before the remote call")
        return left


def check_fields(fields: Iterable[str]) -> list[str]:
    requested = list(dict.fromkeys(fields))
    if not requested:
        raise ValueError("At least one field must be requested")
    unknown = [f for f in requested if f not in RECORD_FIELDS]
    if unknown:
        raise ValueError(f"Unknown field(s) {unknown}; expected a subset of {list(RECORD_FIELDS)}")
    return requested


def range_trapdoors(
    trapdoor_for_query: TrapdoorFn,
    partition: str,
    dimension: Dimension | str,
    field_value: str,
    time_a: datetime,
    time_b: datetime,
) -> list[bytes]:
    """One trapdoor per cover label, skipping keywords that were never indexed."""
    dimension = Dimension(dimension)
    trapdoors: list[bytes] = []
    for label in range_cover(unix_seconds(time_a), unix_seconds(time_b)):
        trapdoor = trapdoor_for_query(partition, dimension, field_value, label)
        if trapdoor is not None:
            trapdoors.append(trapdoor)
    return trapdoors


def decrypt_documents(
    cipher: PolicyCipher,
    attr_key: AttributeKey,
    blobs: Sequence[bytes],
    fields: Sequence[str],
    logger: logging.Logger,
) -> list[FindResult]:
    """Decrypt the requested fields of each returned document.

    A failure is recorded on that document's result; it never turns into an
    empty value and never drops the rest of the result set.
    """
    results: list[FindResult] = []
    for blob in blobs:
        try:
            doc = EncryptedDocument.from_bytes(blob)
        except DecodeError as exc:
            logger.warning("Skipping undecodable document: %s", exc)
            results.append(FindResult(doc_id=None, error=exc))
            continue

        values: dict[str, str] = {}
        error: AccessDenied | DecodeError | None = None
        for name in fields:
            ciphertext = doc.fields.get(name)
            if ciphertext is None:
                error = DecodeError(f"Document {doc.id} has no field {name!r}")
                break
            try:
                values[name] = cipher.decrypt_field(ciphertext, attr_key).decode("utf-8")
            except (AccessDenied, DecodeError) as exc:
                error = exc
                break
            except UnicodeDecodeError as exc:
                error = DecodeError(f"Field {name!r} of document {doc.id} is not UTF-8")
                error.__cause__ = exc
                break

        if error is not None:
            logger.warning("Cannot decrypt document %s: %s", doc.id, error)
            results.append(FindResult(doc_id=doc.id, error=error))
        else:
            results.append(FindResult(doc_id=doc.id, fields=values))
    return results
