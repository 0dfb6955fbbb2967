"""Engine configuration: Pydantic schema plus YAML/env loader."""

from diagram_engine.config.loader import apply_env_overrides, load_engine_config
from diagram_engine.config.schema import (
    CacheConfig,
    ComplexityConfig,
    ComplexityWeights,
    EngineConfig,
    ProviderConfig,
    ProviderName,
    RateLimitConfig,
    RetryConfig,
    TierConfig,
    TimeoutConfig,
)

__all__ = [
    "CacheConfig",
    "ComplexityConfig",
    "ComplexityWeights",
    "EngineConfig",
    "ProviderConfig",
    "ProviderName",
    "RateLimitConfig",
    "RetryConfig",
    "TierConfig",
    "TimeoutConfig",
    "apply_env_overrides",
    "load_engine_config",
]
