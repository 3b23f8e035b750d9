"""Tests for chronoseal/config.py and the owner/searcher config documents."""
from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from chronoseal.errors import ConfigError
from chronoseal.models.credential import OwnerConfig, SearcherConfig


class TestSettings:
    def test_set_list_from_env(self):
        from chronoseal.config import Settings

        env = {"CHRONOSEAL_SET_LIST": '[" grpA ", "grpB"]'}
        with patch.dict(os.environ, env, clear=False):
            s = Settings(_env_file=None)
        assert s.set_list == ["grpA", "grpB"]

    def test_duplicate_set_rejected(self):
        from chronoseal.config import Settings

        env = {"CHRONOSEAL_SET_LIST": '["grpA", "grpA"]'}
        with patch.dict(os.environ, env, clear=False):
            with pytest.raises(ValueError, match="duplicate"):
                Settings(_env_file=None)

    def test_empty_set_rejected(self):
        from chronoseal.config import Settings

        env = {"CHRONOSEAL_SET_LIST": '["grpA", "  "]'}
        with patch.dict(os.environ, env, clear=False):
            with pytest.raises(ValueError, match="empty partition"):
                Settings(_env_file=None)

    def test_timeout_must_be_positive(self):
        from chronoseal.config import Settings

        env = {"CHRONOSEAL_REQUEST_TIMEOUT_SECONDS": "0"}
        with patch.dict(os.environ, env, clear=False):
            with pytest.raises(ValueError, match="REQUEST_TIMEOUT_SECONDS"):
                Settings(_env_file=None)


class TestOwnerConfig:
    def test_from_file(self, tmp_path):
        path = tmp_path / "owner.json"
        path.write_text(
            json.dumps(
                {"store_path": "/var/lib/owner", "set_list": ["grpA"], "server_addr": "http://s"}
            )
        )
        config = OwnerConfig.from_file(path)
        assert config.store_path == Path("/var/lib/owner")
        assert config.set_list == ["grpA"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            OwnerConfig.from_file(tmp_path / "absent.json")

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "owner.json"
        path.write_text(json.dumps({"set_list": ["grpA"]}))
        with pytest.raises(ConfigError, match="Invalid"):
            OwnerConfig.from_file(path)

    def test_from_settings(self, tmp_path):
        from chronoseal.config import Settings

        settings = Settings(_env_file=None, store_path=tmp_path, set_list=["a"], server_addr="http://x")
        config = OwnerConfig.from_settings(settings)
        assert config == OwnerConfig(store_path=tmp_path, set_list=["a"], server_addr="http://x")


class TestSearcherConfig:
    def test_json_round_trip(self):
        config = SearcherConfig(set_list=["grpA"], server_addr="http://s", keys={"set": "grpA"})
        assert SearcherConfig.from_json(config.to_json()) == config

    def test_missing_fields(self):
        with pytest.raises(ConfigError):
            SearcherConfig.from_json('{"set_list": []}')
