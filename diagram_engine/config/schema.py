"""
Pydantic configuration schema for the Segment Diagram Engine.

An engine is described by an optional YAML file that conforms to these
models, plus DIAGRAM_ENGINE_* environment overrides applied by the
loader. Every knob has a default, so an empty file (or no file at all)
yields a working configuration.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ProviderName(str, Enum):
    GEMINI = "gemini"
    ANTHROPIC = "anthropic"


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------

class ProviderConfig(BaseModel):
    """Which completion service to call and how to authenticate."""
    name: ProviderName = ProviderName.GEMINI
    api_key_env: str = Field(
        "GOOGLE_API_KEY", description="Environment variable holding the API key"
    )
    base_url: Optional[str] = Field(
        None, description="Override the provider's API endpoint"
    )
    http_timeout_seconds: float = Field(
        120.0, gt=0, description="Hard ceiling for the HTTP client itself"
    )

    def resolve_api_key(self) -> Optional[str]:
        value = os.environ.get(self.api_key_env, "").strip()
        return value or None


class TierConfig(BaseModel):
    """Overrides for one model tier. Unset fields keep the tier defaults."""
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_output_tokens: Optional[int] = Field(None, gt=0)


class RetryConfig(BaseModel):
    """Per-tier retry budget and exponential backoff parameters."""
    max_retries: int = Field(3, ge=1, le=10)
    base_delay_seconds: float = Field(1.0, ge=0.0)
    max_delay_seconds: float = Field(32.0, ge=0.0)
    jitter_ratio: float = Field(
        0.3, ge=0.0, le=1.0, description="Jitter as a fraction of the exponential delay"
    )

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class RateLimitConfig(BaseModel):
    """Minimum spacing between outbound model calls."""
    min_interval_ms: int = Field(200, ge=0)


class ComplexityWeights(BaseModel):
    """Factor weights for the complexity score. Normalized on use."""
    vocabulary: float = Field(0.20, ge=0.0)
    structural: float = Field(0.25, ge=0.0)
    semantic: float = Field(0.30, ge=0.0)
    entities: float = Field(0.10, ge=0.0)
    relationships: float = Field(0.15, ge=0.0)

    @model_validator(mode="after")
    def validate_not_all_zero(self) -> "ComplexityWeights":
        total = (
            self.vocabulary + self.structural + self.semantic
            + self.entities + self.relationships
        )
        if total <= 0:
            raise ValueError("At least one complexity weight must be positive")
        return self


class ComplexityConfig(BaseModel):
    """Score thresholds separating simple / moderate / complex content."""
    simple_threshold: float = Field(0.25, gt=0.0, lt=1.0)
    complex_threshold: float = Field(0.45, gt=0.0, le=1.0)
    weights: ComplexityWeights = Field(default_factory=ComplexityWeights)

    @field_validator("complex_threshold")
    @classmethod
    def validate_threshold_order(cls, v: float, info) -> float:
        simple = info.data.get("simple_threshold")
        if simple is not None and v <= simple:
            raise ValueError(
                f"complex_threshold ({v}) must be greater than simple_threshold ({simple})"
            )
        return v


class CacheConfig(BaseModel):
    """Semantic cache sizing, expiry and persistence."""
    enabled: bool = True
    max_entries: int = Field(200, ge=1)
    ttl_minutes: float = Field(120.0, gt=0)
    similarity_threshold: float = Field(0.8, gt=0.0, le=1.0)
    persist_path: Optional[str] = Field(
        ".cache/llm/unified-cache.json",
        description="Set to null to keep the cache in memory only",
    )
    flush_every: int = Field(
        10, ge=1, description="Persist after this many writes"
    )


class TimeoutConfig(BaseModel):
    """Adaptive timeout derived from a rolling P95 of call latencies."""
    default_seconds: float = Field(30.0, gt=0)
    min_seconds: float = Field(15.0, gt=0)
    max_seconds: float = Field(60.0, gt=0)
    history_size: int = Field(20, ge=1)
    p95_multiplier: float = Field(1.5, ge=1.0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "TimeoutConfig":
        if not self.min_seconds <= self.default_seconds <= self.max_seconds:
            raise ValueError(
                "Timeout bounds must satisfy min_seconds <= default_seconds <= max_seconds"
            )
        return self


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    """
    Root configuration for a RequestExecutor.

    Loaded from YAML by `load_engine_config()`; construct directly in
    tests with keyword overrides.
    """
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    fast: TierConfig = Field(default_factory=TierConfig)
    accurate: TierConfig = Field(default_factory=TierConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    complexity: ComplexityConfig = Field(default_factory=ComplexityConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    timeout: TimeoutConfig = Field(default_factory=TimeoutConfig)
    concurrency_limit: int = Field(4, ge=1, le=64)
    disabled: bool = Field(
        False, description="Skip all model calls (rule-based fallback takes over)"
    )
