"""
Tests for dibcord.config — configuration loading, dataclasses, validation.
"""

import json

import pytest

from dibcord.config import (
    ChannelConfig,
    DibcordConfig,
    EngineConfig,
    RateLimitConfig,
    StoreConfig,
    ValidationError,
    load_config,
)


def _write(tmp_path, data, name="config.json"):
    path = str(tmp_path / name)
    with open(path, "w", encoding="utf-8") as f:
        if isinstance(data, str):
            f.write(data)
        else:
            json.dump(data, f)
    return path


class TestDefaults:
    def test_engine(self):
        cfg = EngineConfig()
        assert cfg.chunk_size == 3800
        assert cfg.retrieval_window == 100

    def test_channel(self):
        cfg = ChannelConfig()
        assert cfg.max_payload_chars == 4096
        assert cfg.bulk_delete_max_age_days == 14
        assert cfg.bulk_delete_max_ids == 100

    def test_store_and_rate_limit(self):
        assert StoreConfig().db_path == ".dibcord/dibcord.db"
        assert RateLimitConfig().enabled is False

    def test_defaults_are_valid(self):
        assert DibcordConfig().validate() == []


class TestLoadConfig:
    def test_load_valid_json(self, tmp_path):
        path = _write(tmp_path, {
            "engine": {"chunk_size": 1000, "retrieval_window": 50},
            "rate_limit": {"enabled": True, "writes_per_minute": 30},
        })
        cfg = load_config(path)
        assert cfg.engine.chunk_size == 1000
        assert cfg.engine.retrieval_window == 50
        assert cfg.rate_limit.enabled is True
        assert cfg.rate_limit.writes_per_minute == 30
        assert cfg.channel.max_payload_chars == 4096

    def test_none_path(self):
        assert load_config(None) == DibcordConfig()

    def test_missing_file(self, tmp_path):
        assert load_config(str(tmp_path / "nope.json")) == DibcordConfig()

    def test_invalid_json(self, tmp_path):
        assert load_config(_write(tmp_path, "not json {{{")) == DibcordConfig()

    def test_unknown_key(self, tmp_path):
        path = _write(tmp_path, {"engine": {"bogus": 1}})
        assert load_config(path) == DibcordConfig()

    def test_strict_rejects_out_of_range(self, tmp_path):
        path = _write(tmp_path, {"engine": {"chunk_size": 0}})
        assert load_config(path).engine.chunk_size == 0
        with pytest.raises(ValidationError, match="engine.chunk_size"):
            load_config(path, strict=True)

    def test_round_trip(self):
        cfg = DibcordConfig(engine=EngineConfig(chunk_size=500))
        assert DibcordConfig.from_dict(cfg.to_dict()) == cfg


class TestValidation:
    def test_wrong_type(self):
        errors = EngineConfig(chunk_size="big").validate()
        assert errors and "expected int" in errors[0]

    def test_chunk_larger_than_payload(self):
        cfg = DibcordConfig(
            engine=EngineConfig(chunk_size=5000),
            channel=ChannelConfig(max_payload_chars=4096),
        )
        assert any("exceeds" in e for e in cfg.validate())

    def test_empty_db_path(self):
        assert StoreConfig(db_path="").validate()

    def test_burst_factor_range(self):
        assert RateLimitConfig(burst_factor=0.5).validate()
        assert RateLimitConfig(burst_factor=2.0).validate() == []

    def test_validation_error_is_value_error(self):
        assert issubclass(ValidationError, ValueError)
