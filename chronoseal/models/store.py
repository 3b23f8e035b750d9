"""Remote store tables and wire schemas.

Blobs travel as base64 strings inside JSON. ``msg`` is ``"Ok"`` on success
and a human-readable error otherwise.
"""
from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel
from sqlmodel import Field, SQLModel

STATUS_OK = "Ok"


class StoredDocument(SQLModel, table=True):
    __tablename__ = "documents"

    id: str = Field(primary_key=True)  # 96-bit document id, hex
    body: str  # JSON object: field name -> base64 ciphertext
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class IndexEntry(SQLModel, table=True):
    __tablename__ = "index_entries"

    partition_tag: str = Field(primary_key=True)  # hex
    address: str = Field(primary_key=True)  # hex
    masked_id: str  # hex
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# --- Pydantic schemas for request/response validation ---


class InsertQuery(BaseModel):
    docs: list[str] = []
    tkns: list[str] = []


class InsertResponse(BaseModel):
    msg: str


class PreFindQuery(BaseModel):
    tkns: list[str] = []


class PreFindResponse(BaseModel):
    msg: str
    tkns: list[str] = []


class FindQuery(BaseModel):
    fields: list[str] = []
    tkns: list[str] = []


class FindResponse(BaseModel):
    msg: str
    docs: list[str] = []
