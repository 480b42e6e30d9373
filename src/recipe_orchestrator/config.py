"""Configuration for the orchestrator services.

Defaults mirror the production crawler settings; every knob can be overridden
from the environment via ``OrchestratorSettings.from_env()``.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError


def _f(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def _i(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


def _b(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _settings(model: type[BaseModel], values: dict) -> BaseModel:
    """Build ``model`` from ``values``, dropping any value its field rejects."""
    accepted = {}
    for name, value in values.items():
        try:
            model(**{name: value})
        except ValidationError:
            continue
        accepted[name] = value
    return model(**accepted)


# Conservative limits for major recipe sites (requests per second)
DEFAULT_DOMAIN_RATES: dict[str, float] = {
    "allrecipes.com": 0.5,
    "food.com": 0.5,
    "foodnetwork.com": 0.3,
    "bon-appetit.com": 0.3,
    "epicurious.com": 0.3,
    "seriouseats.com": 0.5,
    "tasteofhome.com": 0.5,
    "delish.com": 0.4,
    "foodandwine.com": 0.3,
    "myrecipes.com": 0.4,
}


class RateLimitSettings(BaseModel):
    """Adaptive rate limiter configuration."""
    enabled: bool = Field(default=True, description="Gate requests at all")
    requests_per_second: float = Field(default=1.0, gt=0, description="Base rate for unknown domains")
    burst_size: int = Field(default=10, ge=0, description="Burst tokens per domain")
    adaptive_throttling: bool = Field(default=True, description="React to reported outcomes")
    simulate_human_behavior: bool = Field(default=True, description="Apply +/-20% jitter to waits")
    domain_rates: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_DOMAIN_RATES))
    max_backoff_seconds: float = Field(default=300.0, description="Backoff ceiling")
    sweep_interval_seconds: float = Field(default=300.0, description="Eviction sweep period")
    idle_eviction_seconds: float = Field(default=3600.0, description="Evict domains idle this long")


class BlockSettings(BaseModel):
    """Block registry configuration."""
    block_threshold: int = Field(default=5, ge=1, description="Failures before a temporary block")
    permanent_threshold: int = Field(default=20, ge=1, description="Failures before a permanent block")
    cooldown_seconds: float = Field(default=3600.0, description="Temporary block duration")
    success_decay: int = Field(default=2, ge=1, description="Failures forgiven per success")
    store: Literal["memory", "json", "sqlite"] = Field(default="sqlite")
    path: Path = Field(default=Path("data/blocked-websites.sqlite"))


class AggregatorSettings(BaseModel):
    """Source cascade configuration."""
    default_timeout_seconds: float = Field(default=30.0, ge=1.0, le=60.0)
    high_completeness: int = Field(default=80, description="Completeness counted as 'complete'")
    consecutive_complete_sources: int = Field(default=2, description="Stop after this many complete sources in a row")
    coverage_threshold: int = Field(default=75, description="Stop once combined coverage reaches this")
    title_duplicate_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    ingredient_duplicate_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    simplify_queries: bool = Field(default=True, description="Strip descriptors before searching")


class OrchestratorSettings(BaseModel):
    """Top-level settings bundle."""
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    blocks: BlockSettings = Field(default_factory=BlockSettings)
    aggregator: AggregatorSettings = Field(default_factory=AggregatorSettings)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @classmethod
    def from_env(cls) -> OrchestratorSettings:
        """Build settings from environment variables, falling back to defaults."""
        rl = RateLimitSettings()
        bl = BlockSettings()
        ag = AggregatorSettings()
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        return cls(
            rate_limit=_settings(RateLimitSettings, dict(
                enabled=_b("RATE_LIMITING_ENABLED", rl.enabled),
                requests_per_second=_f("REQUESTS_PER_SECOND", rl.requests_per_second),
                burst_size=_i("BURST_SIZE", rl.burst_size),
                adaptive_throttling=_b("ADAPTIVE_THROTTLING", rl.adaptive_throttling),
                simulate_human_behavior=_b("SIMULATE_HUMAN_BEHAVIOR", rl.simulate_human_behavior),
                max_backoff_seconds=_f("MAX_BACKOFF_SECONDS", rl.max_backoff_seconds),
            )),
            blocks=_settings(BlockSettings, dict(
                block_threshold=_i("BLOCK_THRESHOLD", bl.block_threshold),
                permanent_threshold=_i("PERMANENT_THRESHOLD", bl.permanent_threshold),
                cooldown_seconds=_f("BLOCK_COOLDOWN_SECONDS", bl.cooldown_seconds),
                store=os.getenv("BLOCK_STORE", bl.store),
                path=Path(os.getenv("BLOCK_REGISTRY_PATH", str(bl.path))),
            )),
            aggregator=_settings(AggregatorSettings, dict(
                default_timeout_seconds=_f("SOURCE_TIMEOUT_SECONDS", ag.default_timeout_seconds),
                simplify_queries=_b("SIMPLIFY_QUERIES", ag.simplify_queries),
            )),
            log_level=log_level if log_level in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL") else "INFO",
        )
