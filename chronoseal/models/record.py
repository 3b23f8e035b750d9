"""Record and document types exchanged between the owner and the store."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

from chronoseal.errors import AccessDenied, DecodeError, RecordError
from chronoseal.utils.encoding import b64d, b64e

FIELD_USER_ID = "UserId"
FIELD_LOCATION = "Location"
FIELD_SET = "Set"
FIELD_TIME = "Time"
RECORD_FIELDS = (FIELD_USER_ID, FIELD_LOCATION, FIELD_SET, FIELD_TIME)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def unix_seconds(moment: datetime) -> int:
    """Whole seconds since the epoch; naive datetimes are taken as UTC.

    The index covers unsigned 64-bit seconds, so times before 1970-01-01 UTC
    raise RecordError.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if moment < EPOCH:
        raise RecordError(f"Time {moment.isoformat()} is before 1970-01-01T00:00:00Z")
    return int(moment.timestamp())


@dataclass(frozen=True, slots=True)
class Record:
    """Cleartext input to an insert. Never persisted as-is."""

    user_id: str
    location: str
    set: str  # access-policy label and index partition
    time: datetime

    def field_values(self) -> dict[str, str]:
        moment = self.time if self.time.tzinfo else self.time.replace(tzinfo=timezone.utc)
        return {
            FIELD_USER_ID: self.user_id,
            FIELD_LOCATION: self.location,
            FIELD_SET: self.set,
            FIELD_TIME: moment.astimezone(timezone.utc).isoformat(),
        }


@dataclass(frozen=True, slots=True)
class EncryptedDocument:
    """One stored document: an opaque 96-bit id plus per-field ABE ciphertexts."""

    id: str
    fields: dict[str, bytes]

    def to_bytes(self) -> bytes:
        doc = {"_id": self.id}
        doc.update({name: b64e(value) for name, value in self.fields.items()})
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, blob: bytes) -> EncryptedDocument:
        try:
            doc = json.loads(blob)
            if not isinstance(doc, dict):
                raise ValueError("expected a JSON object")
            doc_id = doc.pop("_id")
            if not isinstance(doc_id, str):
                raise ValueError("_id must be a string")
            fields = {str(name): b64d(value) for name, value in doc.items()}
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed document: {exc}") from exc
        return cls(id=doc_id, fields=fields)


@dataclass(frozen=True, slots=True)
class FindResult:
    """Decrypted fields of one matched document, or the reason they are missing."""

    doc_id: str | None
    fields: dict[str, str] = field(default_factory=dict)
    error: AccessDenied | DecodeError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def user_id(self) -> str | None:
        return self.fields.get(FIELD_USER_ID)

    @property
    def set(self) -> str | None:
        return self.fields.get(FIELD_SET)
