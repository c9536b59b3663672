"""Tests for config loading, defaults and environment overrides."""

from __future__ import annotations

import pytest
import yaml

from stagehand.config import DEFAULT_CONFIG_YAML, EngineConfig, GatewayConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("STAGEHAND_DB_PATH", "STAGEHAND_GATEWAY_URL", "STAGEHAND_ENGINE_ID",
                 "STAGEHAND_GATEWAY_TOKEN"):
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, content: str):
    (tmp_path / "config.yaml").write_text(content)
    return tmp_path


class TestDefaults:
    def test_engine_defaults(self):
        config = EngineConfig()

        assert config.claim_ttl_seconds == 900
        assert config.stale_operation_age_seconds == 1200
        assert config.active_session_max_age_seconds == 300
        assert config.lease_ttl_seconds == 60
        assert config.tick_limit == 25
        assert config.ceo_session_key == "agent:main:main"
        assert config.actor == "system:manager"
        assert config.engine_id.startswith("engine-")
        assert config.agents == []

    @pytest.mark.parametrize("limit,expected", [(None, 25), (0, 1), (-3, 1), (7, 7), (500, 100)])
    def test_clamp_limit(self, limit, expected):
        assert EngineConfig().clamp_limit(limit) == expected

    @pytest.mark.parametrize(
        "fields",
        [{"tick_limit": 0}, {"tick_limit": 50, "max_tick_limit": 10}, {"claim_ttl_seconds": 0},
         {"lease_ttl_seconds": -1}],
    )
    def test_invalid_limits(self, fields):
        with pytest.raises(ValueError):
            EngineConfig(**fields)

    def test_default_yaml_is_loadable(self):
        config = EngineConfig(**yaml.safe_load(DEFAULT_CONFIG_YAML))

        assert [a.id for a in config.agents] == [
            "planner", "builder", "reviewer", "sentinel", "operator"
        ]


class TestGatewayConfig:
    def test_base_url_trailing_slash(self):
        assert GatewayConfig(base_url="http://gw:9000/").base_url == "http://gw:9000"

    def test_token_from_env(self, monkeypatch):
        gateway = GatewayConfig(token_env="MY_TOKEN")
        monkeypatch.delenv("MY_TOKEN", raising=False)
        assert gateway.resolve_token() is None

        monkeypatch.setenv("MY_TOKEN", "abc")
        assert gateway.resolve_token() == "abc"


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_empty_file_uses_defaults(self, tmp_path):
        config = load_config(write_config(tmp_path, ""))

        assert config.tick_limit == 25

    def test_non_mapping_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            load_config(write_config(tmp_path, "- just\n- a list\n"))

    def test_values_and_nested_gateway(self, tmp_path):
        config = load_config(
            write_config(
                tmp_path,
                "engine_id: alpha\ntick_limit: 5\ngateway:\n  base_url: http://gw.local/\n",
            )
        )

        assert config.engine_id == "alpha"
        assert config.tick_limit == 5
        assert config.gateway.base_url == "http://gw.local"

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STAGEHAND_DB_PATH", "/data/engine.db")
        monkeypatch.setenv("STAGEHAND_GATEWAY_URL", "http://other:1234/")
        monkeypatch.setenv("STAGEHAND_ENGINE_ID", "engine-env")

        config = load_config(write_config(tmp_path, "engine_id: from-file\n"))

        assert config.database_path == "/data/engine.db"
        assert config.gateway.base_url == "http://other:1234"
        assert config.engine_id == "engine-env"
