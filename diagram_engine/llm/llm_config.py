"""
LLM Configuration — Model tiers and provider profiles.

Two tiers are available to the executor:
- FAST: cheap, low-latency model for simple and moderate segments
- ACCURATE: slower, stronger model for complex segments

Each tier is the other's fallback. The concrete model behind a tier
depends on the configured provider and can be overridden per tier.

Usage:
    from diagram_engine.llm.llm_config import TierRouting, ModelTier

    routing = TierRouting.for_provider("gemini")
    profile = routing.get_profile(ModelTier.FAST)
    # → ModelProfile(tier=FAST, provider="gemini", model="gemini-2.5-flash", ...)

    routing.fallback_for(ModelTier.FAST)
    # → ModelTier.ACCURATE
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------

class ModelTier(str, Enum):
    """The two model configurations a request can be routed to."""

    FAST = "fast"            # Cheap, quick; simple and moderate content
    ACCURATE = "accurate"    # Expensive, thorough; complex content

    @property
    def other(self) -> "ModelTier":
        return ModelTier.ACCURATE if self is ModelTier.FAST else ModelTier.FAST


# ---------------------------------------------------------------------------
# Model Profile
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelProfile:
    """A specific model configuration for one tier."""

    tier: ModelTier
    provider: str           # "gemini", "anthropic"
    model: str              # e.g., "gemini-2.5-flash"
    temperature: float = 0.1
    max_output_tokens: int = 2048
    cost_per_1k_input: float = 0.0   # USD per 1K input tokens
    cost_per_1k_output: float = 0.0  # USD per 1K output tokens

    @property
    def display_name(self) -> str:
        return f"{self.provider}/{self.model}"


# ---------------------------------------------------------------------------
# Default Model Profiles
# ---------------------------------------------------------------------------

# --- Gemini ---
GEMINI_FLASH = ModelProfile(
    tier=ModelTier.FAST,
    provider="gemini",
    model="gemini-2.5-flash",
    cost_per_1k_input=0.0003,
    cost_per_1k_output=0.0025,
)

GEMINI_PRO = ModelProfile(
    tier=ModelTier.ACCURATE,
    provider="gemini",
    model="gemini-2.5-pro",
    cost_per_1k_input=0.00125,
    cost_per_1k_output=0.01,
)

# --- Anthropic ---
CLAUDE_HAIKU = ModelProfile(
    tier=ModelTier.FAST,
    provider="anthropic",
    model="claude-3-5-haiku-20241022",
    cost_per_1k_input=0.001,
    cost_per_1k_output=0.005,
)

CLAUDE_SONNET = ModelProfile(
    tier=ModelTier.ACCURATE,
    provider="anthropic",
    model="claude-sonnet-4-20250514",
    cost_per_1k_input=0.003,
    cost_per_1k_output=0.015,
)

DEFAULT_TIERS: dict[str, dict[ModelTier, ModelProfile]] = {
    "gemini": {ModelTier.FAST: GEMINI_FLASH, ModelTier.ACCURATE: GEMINI_PRO},
    "anthropic": {ModelTier.FAST: CLAUDE_HAIKU, ModelTier.ACCURATE: CLAUDE_SONNET},
}


# ---------------------------------------------------------------------------
# Tier Routing
# ---------------------------------------------------------------------------

class TierRouting:
    """
    Maps tiers to model profiles.

    Built from the provider defaults; individual tiers can be overridden
    from config (model name, temperature, output budget).
    """

    def __init__(self, profiles: dict[ModelTier, ModelProfile]):
        missing = [t.value for t in ModelTier if t not in profiles]
        if missing:
            raise ValueError(f"Tier routing is missing profiles for: {', '.join(missing)}")
        self._profiles = dict(profiles)

    @classmethod
    def for_provider(cls, provider: str) -> "TierRouting":
        try:
            return cls(DEFAULT_TIERS[provider])
        except KeyError:
            raise ValueError(f"Unsupported provider: {provider}") from None

    @classmethod
    def from_config(cls, config: Any) -> "TierRouting":
        """Build routing from an EngineConfig, applying per-tier overrides."""
        routing = cls.for_provider(config.provider.name.value)
        for tier, tier_config in (
            (ModelTier.FAST, config.fast),
            (ModelTier.ACCURATE, config.accurate),
        ):
            routing.override_tier(
                tier,
                model=tier_config.model,
                temperature=tier_config.temperature,
                max_output_tokens=tier_config.max_output_tokens,
            )
        return routing

    def get_profile(self, tier: ModelTier | str) -> ModelProfile:
        return self._profiles[ModelTier(tier)]

    def fallback_for(self, tier: ModelTier | str) -> ModelTier:
        return ModelTier(tier).other

    def override_tier(
        self,
        tier: ModelTier,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> None:
        """Override fields of one tier's profile; None leaves a field unchanged."""
        changes: dict[str, Any] = {}
        if model is not None:
            changes["model"] = model
        if temperature is not None:
            changes["temperature"] = temperature
        if max_output_tokens is not None:
            changes["max_output_tokens"] = max_output_tokens
        if changes:
            self._profiles[tier] = replace(self._profiles[tier], **changes)
            logger.debug(
                "tier_overridden",
                extra={"tier": tier.value, "model": self._profiles[tier].model},
            )

    def list_tiers(self) -> list[dict[str, Any]]:
        """Return a summary of the configured tiers."""
        return [
            {
                "tier": profile.tier.value,
                "model": profile.display_name,
                "fallback": self.fallback_for(profile.tier).value,
                "temperature": profile.temperature,
                "max_output_tokens": profile.max_output_tokens,
            }
            for profile in self._profiles.values()
        ]
