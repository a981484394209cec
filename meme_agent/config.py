"""Configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides for the core tuning knobs
  - Closed models: unknown keys are rejected at load time
  - Startup credential checks (the only fatal error class)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from meme_agent.errors import FatalConfigError


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class _Closed(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TradingConfig(_Closed):
    symbol: str = "ELONA"
    quote_asset: str = "SOL"
    # symbol -> mint address
    tokens: dict[str, str] = Field(default_factory=lambda: {
        "ELONA": "8hVzPgFopqEQmNNoghr5WbPY1LEjW8GzgbLRwuwHpump",
        "SOL": "So11111111111111111111111111111111111111112",
        "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    })
    min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    base_amount: float = Field(default=0.1, gt=0.0)
    slippage_bps: int = Field(default=100, ge=0, le=10_000)

    def resolve(self, symbol: str) -> str:
        """Mint address for a symbol; unknown symbols are assumed to be addresses."""
        return self.tokens.get(symbol.upper(), symbol)


class ThresholdsConfig(_Closed):
    """Volume/liquidity cutoffs shared by confidence and risk bucketing."""
    high_volume: float = 100_000.0
    high_liquidity: float = 50_000.0
    medium_volume: float = 10_000.0
    medium_liquidity: float = 10_000.0


class DecisionConfig(_Closed):
    thresholds: ThresholdsConfig = Field(default_factory=ThresholdsConfig)
    confidence_scores: dict[Literal["low", "medium", "high"], float] = Field(
        default_factory=lambda: {"low": 0.3, "medium": 0.6, "high": 0.9},
    )
    degraded_penalty: float = Field(default=0.5, ge=0.0, le=1.0)
    max_turnover_ratio: float = Field(default=10.0, gt=0.0)

    @model_validator(mode="after")
    def _scores_in_range(self) -> "DecisionConfig":
        for level in ("low", "medium", "high"):
            score = self.confidence_scores.get(level)
            if score is None:
                raise ValueError(f"confidence_scores.{level} is required")
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"confidence_scores.{level} must be within [0, 1]")
        return self


class EngineConfig(_Closed):
    cycle_interval_ms: int = Field(default=10_000, gt=0)
    post_interval_secs: int = Field(default=1800, ge=0)  # 0 disables scheduled posts
    history_size: int = Field(default=100, gt=0)


class CacheConfig(_Closed):
    backend: Literal["memory", "sqlite"] = "memory"
    sqlite_path: str = "data/cache.db"
    key_prefix: str = "meme-agent:"
    ttl_secs: int = Field(default=300, gt=0)
    max_staleness_secs: int | None = None  # defaults to 2x ttl
    max_size_mb: int = 50
    breaker_failure_threshold: int = Field(default=1, ge=1)
    breaker_cooldown_secs: float = Field(default=30.0, ge=0.0)

    @property
    def staleness_ceiling_secs(self) -> int:
        if self.max_staleness_secs is None:
            return self.ttl_secs * 2
        return self.max_staleness_secs


class ExecutionConfig(_Closed):
    dry_run: bool = True
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay_ms: int = Field(default=5000, ge=0)


class ContentConfig(_Closed):
    generator: Literal["template", "llm"] = "template"
    llm_model: str = "llama-3.3-70b-versatile"
    llm_base_url: str = "https://api.groq.com/openai/v1"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 100
    max_length: int = 280
    max_hashtags: int = 0
    max_emojis: int = 0
    min_interval_secs: int = 300
    mock_mode: bool = False


class ConnectorsConfig(_Closed):
    dexscreener_base_url: str = "https://api.dexscreener.com"
    jupiter_base_url: str = "https://quote-api.jup.ag/v6"
    twitter_base_url: str = "https://api.twitter.com"
    timeout_secs: float = 15.0


class ObservabilityConfig(_Closed):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/agent.log"


class AgentConfig(_Closed):
    trading: TradingConfig = Field(default_factory=TradingConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    content: ContentConfig = Field(default_factory=ContentConfig)
    connectors: ConnectorsConfig = Field(default_factory=ConnectorsConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


# Env var name -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "MIN_CONFIDENCE": ("trading", "min_confidence"),
    "BASE_AMOUNT": ("trading", "base_amount"),
    "SLIPPAGE_BPS": ("trading", "slippage_bps"),
    "CYCLE_INTERVAL_MS": ("engine", "cycle_interval_ms"),
    "CACHE_TTL_S": ("cache", "ttl_secs"),
    "MAX_RETRIES": ("execution", "max_retries"),
    "RETRY_BASE_DELAY_MS": ("execution", "retry_base_delay_ms"),
}


def _apply_env_overrides(raw: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        block = raw.setdefault(section, {})
        if not isinstance(block, dict):
            raise FatalConfigError(f"Config section '{section}' must be a mapping")
        block[key] = value
    return raw


def load_config(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> AgentConfig:
    """Load config from YAML + env overrides, falling back to defaults.

    Raises FatalConfigError if the file is unreadable or any value fails
    validation.
    """
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    env = dict(os.environ) if environ is None else environ

    raw: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise FatalConfigError(f"Cannot read config file {path}: {e}") from e
        if not isinstance(raw, dict):
            raise FatalConfigError(f"Config file {path} must contain a mapping")

    raw = _apply_env_overrides(raw, env)
    try:
        return AgentConfig(**raw)
    except ValidationError as e:
        raise FatalConfigError(f"Invalid configuration: {e}") from e


def is_live_trading_enabled() -> bool:
    """Check if live trading is explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_TRADING", "").lower() == "true"


def required_credentials(config: AgentConfig) -> list[str]:
    """Env vars that must be present for the configured collaborators."""
    required: list[str] = []
    if not config.content.mock_mode:
        required.append("TWITTER_ACCESS_TOKEN")
    if config.content.generator == "llm":
        required.append("GROQ_API_KEY")
    if not config.execution.dry_run and is_live_trading_enabled():
        required.append("SOLANA_PUBLIC_KEY")
    return required


def validate_environment(
    config: AgentConfig,
    environ: dict[str, str] | None = None,
) -> None:
    """Fail fast on missing credentials. Only called at startup."""
    env = dict(os.environ) if environ is None else environ
    missing = [name for name in required_credentials(config) if not env.get(name)]
    if missing:
        raise FatalConfigError(
            f"Missing required environment variables: {', '.join(missing)}"
        )
