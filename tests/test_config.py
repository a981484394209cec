"""Tests for configuration loading and startup validation."""

from __future__ import annotations

import pytest

from meme_agent.config import (
    AgentConfig,
    CacheConfig,
    ContentConfig,
    ExecutionConfig,
    load_config,
    required_credentials,
    validate_environment,
)
from meme_agent.errors import FatalConfigError


class TestDefaults:
    def test_defaults(self) -> None:
        cfg = AgentConfig()
        assert cfg.trading.symbol == "ELONA"
        assert cfg.trading.min_confidence == 0.7
        assert cfg.engine.cycle_interval_ms == 10_000
        assert cfg.cache.ttl_secs == 300
        assert cfg.execution.max_retries == 3
        assert cfg.execution.retry_base_delay_ms == 5000
        assert cfg.execution.dry_run is True

    def test_staleness_ceiling_defaults_to_twice_ttl(self) -> None:
        assert CacheConfig(ttl_secs=120).staleness_ceiling_secs == 240
        assert CacheConfig(ttl_secs=120, max_staleness_secs=500).staleness_ceiling_secs == 500

    def test_resolve_symbol(self) -> None:
        cfg = AgentConfig()
        assert cfg.trading.resolve("elona") == cfg.trading.tokens["ELONA"]
        assert cfg.trading.resolve("MintXYZ") == "MintXYZ"


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path) -> None:
        cfg = load_config(tmp_path / "nope.yaml", environ={})
        assert cfg == AgentConfig()

    def test_yaml_values(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(
            "trading:\n"
            "  min_confidence: 0.5\n"
            "engine:\n"
            "  cycle_interval_ms: 2500\n"
            "cache:\n"
            "  backend: sqlite\n"
        )
        cfg = load_config(path, environ={})
        assert cfg.trading.min_confidence == 0.5
        assert cfg.engine.cycle_interval_ms == 2500
        assert cfg.cache.backend == "sqlite"

    def test_env_overrides_yaml(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("trading:\n  min_confidence: 0.5\n")
        cfg = load_config(path, environ={
            "MIN_CONFIDENCE": "0.8",
            "CYCLE_INTERVAL_MS": "1000",
            "CACHE_TTL_S": "60",
            "MAX_RETRIES": "5",
            "RETRY_BASE_DELAY_MS": "250",
        })
        assert cfg.trading.min_confidence == 0.8
        assert cfg.engine.cycle_interval_ms == 1000
        assert cfg.cache.ttl_secs == 60
        assert cfg.execution.max_retries == 5
        assert cfg.execution.retry_base_delay_ms == 250

    def test_empty_env_value_is_ignored(self, tmp_path) -> None:
        cfg = load_config(tmp_path / "nope.yaml", environ={"MIN_CONFIDENCE": ""})
        assert cfg.trading.min_confidence == 0.7

    def test_out_of_range_value_is_fatal(self, tmp_path) -> None:
        with pytest.raises(FatalConfigError):
            load_config(tmp_path / "nope.yaml", environ={"MIN_CONFIDENCE": "1.5"})

    def test_non_numeric_env_is_fatal(self, tmp_path) -> None:
        with pytest.raises(FatalConfigError):
            load_config(tmp_path / "nope.yaml", environ={"CYCLE_INTERVAL_MS": "soon"})

    def test_unknown_key_is_fatal(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("trading:\n  min_confidnce: 0.5\n")
        with pytest.raises(FatalConfigError):
            load_config(path, environ={})

    def test_bad_yaml_is_fatal(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("trading: [unclosed\n")
        with pytest.raises(FatalConfigError):
            load_config(path, environ={})

    def test_non_mapping_is_fatal(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(FatalConfigError):
            load_config(path, environ={})

    def test_confidence_scores_must_be_in_unit_interval(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("decision:\n  confidence_scores:\n    low: 0.1\n    medium: 0.5\n    high: 1.4\n")
        with pytest.raises(FatalConfigError):
            load_config(path, environ={})

    def test_bundled_config_loads(self) -> None:
        cfg = load_config(environ={})
        assert cfg.trading.symbol == "ELONA"
        assert cfg.content.mock_mode is True


class TestEnvironment:
    def test_mock_template_dry_run_needs_nothing(self) -> None:
        cfg = AgentConfig(content=ContentConfig(mock_mode=True))
        assert required_credentials(cfg) == []
        validate_environment(cfg, environ={})

    def test_live_posting_needs_twitter_token(self) -> None:
        cfg = AgentConfig(content=ContentConfig(mock_mode=False))
        with pytest.raises(FatalConfigError, match="TWITTER_ACCESS_TOKEN"):
            validate_environment(cfg, environ={})
        validate_environment(cfg, environ={"TWITTER_ACCESS_TOKEN": "t"})

    def test_llm_generator_needs_api_key(self) -> None:
        cfg = AgentConfig(content=ContentConfig(mock_mode=True, generator="llm"))
        assert required_credentials(cfg) == ["GROQ_API_KEY"]

    def test_live_trading_needs_wallet(self, monkeypatch) -> None:
        monkeypatch.setenv("ENABLE_LIVE_TRADING", "true")
        cfg = AgentConfig(
            content=ContentConfig(mock_mode=True),
            execution=ExecutionConfig(dry_run=False),
        )
        assert "SOLANA_PUBLIC_KEY" in required_credentials(cfg)

    def test_dry_run_ignores_live_flag(self, monkeypatch) -> None:
        monkeypatch.setenv("ENABLE_LIVE_TRADING", "true")
        cfg = AgentConfig(content=ContentConfig(mock_mode=True))
        assert required_credentials(cfg) == []
