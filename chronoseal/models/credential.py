"""Delegated credentials and the configuration documents that carry them."""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from chronoseal.config import Settings
from chronoseal.errors import ConfigError, DecodeError
from chronoseal.services.policy_cipher import AttributeKey
from chronoseal.services.structured_index import DelegatedIndexKey
from chronoseal.utils.encoding import b64d, b64e


@dataclass(frozen=True, slots=True)
class DelegatedCredential:
    """Search + decrypt capability for exactly one partition.

    Carries no master secret key and cannot produce update tags.
    """

    partition: str
    index_key: DelegatedIndexKey
    attribute_key: AttributeKey
    public_key: bytes

    def to_dict(self) -> dict[str, object]:
        return {
            "set": self.partition,
            "index_key": self.index_key.to_dict(),
            "abe_attr_key": self.attribute_key.to_dict(),
            "abe_pk": b64e(self.public_key),
        }

    @classmethod
    def from_dict(cls, data: dict) -> DelegatedCredential:
        try:
            credential = cls(
                partition=str(data["set"]),
                index_key=DelegatedIndexKey.from_dict(data["index_key"]),
                attribute_key=AttributeKey.from_dict(data["abe_attr_key"]),
                public_key=b64d(data["abe_pk"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed delegated credential: {exc}") from exc
        if credential.index_key.partition != credential.partition:
            raise DecodeError("Delegated index key does not match the credential partition")
        return credential


class OwnerConfig(BaseModel):
    """Owner configuration file (JSON)."""

    store_path: Path
    set_list: list[str] = Field(default_factory=list)
    server_addr: str

    @classmethod
    def from_settings(cls, settings: Settings) -> OwnerConfig:
        return cls(
            store_path=settings.store_path,
            set_list=list(settings.set_list),
            server_addr=settings.server_addr,
        )

    @classmethod
    def from_file(cls, path: Path | str) -> OwnerConfig:
        try:
            return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"Cannot read owner config {path}: {exc}") from exc
        except ValidationError as exc:
            raise ConfigError(f"Invalid owner config {path}: {exc}") from exc


class SearcherConfig(BaseModel):
    """Document handed to a searcher process: public settings plus its credential."""

    set_list: list[str] = Field(default_factory=list)
    server_addr: str
    keys: dict

    def credential(self) -> DelegatedCredential:
        try:
            return DelegatedCredential.from_dict(self.keys)
        except DecodeError as exc:
            raise ConfigError(f"Invalid searcher credential: {exc}") from exc

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=1)

    @classmethod
    def from_json(cls, text: str) -> SearcherConfig:
        try:
            return cls.model_validate_json(text)
        except ValidationError as exc:
            raise ConfigError(f"Invalid searcher config: {exc}") from exc
