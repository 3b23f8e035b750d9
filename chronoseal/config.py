from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHRONOSEAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Owner
    store_path: Path = Path("./data/owner")
    set_list: list[str] = []  # known partitions; JSON list in the environment
    server_addr: str = "http://localhost:8000"
    request_timeout_seconds: float = 30.0
    keystore_passphrase: str = ""  # empty: key file is written unsealed
    abe_curve: str = "SS512"
    log_level: str = "INFO"

    # Reference store service
    db_url: str = "sqlite:///./data/store.db"

    @model_validator(mode="after")
    def _check_set_list(self) -> Settings:
        cleaned = [s.strip() for s in self.set_list]
        if any(not s for s in cleaned):
            raise ValueError("SET_LIST contains an empty partition name")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("SET_LIST contains duplicate partition names")
        self.set_list = cleaned
        if self.request_timeout_seconds <= 0:
            raise ValueError(
                f"REQUEST_TIMEOUT_SECONDS must be > 0, got {self.request_timeout_seconds}"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
