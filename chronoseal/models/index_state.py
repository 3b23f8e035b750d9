"""Owner-side state of the structured index: keyword counters and pending inserts."""
from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlmodel import Field, SQLModel

from chronoseal.utils.encoding import b64d, b64e


class KeywordCounter(SQLModel, table=True):
    __tablename__ = "keyword_counters"

    # Hex of the keyword key; the plaintext keyword is never stored.
    keyword_key: str = Field(primary_key=True)
    count: int = Field(default=0)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PendingInsert(SQLModel, table=True):
    """An insert batch whose outcome at the store is unknown.

    Its index slots are already reserved in ``keyword_counters``; the batch
    is resubmitted verbatim before the next insert.
    """

    __tablename__ = "pending_inserts"

    id: int | None = Field(default=None, primary_key=True)
    docs: str  # JSON list of base64 document blobs
    tokens: str  # JSON list of base64 update tags
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_blobs(cls, docs: list[bytes], tokens: list[bytes]) -> PendingInsert:
        return cls(
            docs=json.dumps([b64e(d) for d in docs]),
            tokens=json.dumps([b64e(t) for t in tokens]),
        )

    def doc_blobs(self) -> list[bytes]:
        return [b64d(item) for item in json.loads(self.docs)]

    def token_blobs(self) -> list[bytes]:
        return [b64d(item) for item in json.loads(self.tokens)]
