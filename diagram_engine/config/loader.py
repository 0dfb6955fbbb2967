"""
Configuration loader for the Segment Diagram Engine.

Loads an optional YAML file, validates it against the Pydantic schema,
then applies DIAGRAM_ENGINE_* environment overrides. A `.env` file in
the working directory is loaded first so local credentials and
overrides work without exporting them.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from diagram_engine.config.schema import EngineConfig
from diagram_engine.exceptions import ConfigurationError

CONFIG_PATH_ENV = "DIAGRAM_ENGINE_CONFIG"

_TRUTHY = {"1", "true", "yes", "on"}


def _to_bool(value: str) -> bool:
    return value.strip().lower() in _TRUTHY


# env var -> (section, field, converter); section None means top-level
_ENV_OVERRIDES: dict[str, tuple[Optional[str], str, Callable[[str], Any]]] = {
    "DIAGRAM_ENGINE_PROVIDER": ("provider", "name", str),
    "DIAGRAM_ENGINE_API_KEY_ENV": ("provider", "api_key_env", str),
    "DIAGRAM_ENGINE_BASE_URL": ("provider", "base_url", str),
    "DIAGRAM_ENGINE_FAST_MODEL": ("fast", "model", str),
    "DIAGRAM_ENGINE_ACCURATE_MODEL": ("accurate", "model", str),
    "DIAGRAM_ENGINE_MAX_RETRIES": ("retry", "max_retries", int),
    "DIAGRAM_ENGINE_MIN_INTERVAL_MS": ("rate_limit", "min_interval_ms", int),
    "DIAGRAM_ENGINE_SIMPLE_THRESHOLD": ("complexity", "simple_threshold", float),
    "DIAGRAM_ENGINE_COMPLEX_THRESHOLD": ("complexity", "complex_threshold", float),
    "DIAGRAM_ENGINE_CACHE_PATH": ("cache", "persist_path", str),
    "DIAGRAM_ENGINE_CACHE_SIZE": ("cache", "max_entries", int),
    "DIAGRAM_ENGINE_CACHE_TTL_MINUTES": ("cache", "ttl_minutes", float),
    "DIAGRAM_ENGINE_SIMILARITY_THRESHOLD": ("cache", "similarity_threshold", float),
    "DIAGRAM_ENGINE_TIMEOUT_MIN_SECONDS": ("timeout", "min_seconds", float),
    "DIAGRAM_ENGINE_TIMEOUT_MAX_SECONDS": ("timeout", "max_seconds", float),
    "DIAGRAM_ENGINE_CONCURRENCY": (None, "concurrency_limit", int),
    "DIAGRAM_ENGINE_DISABLE_LLM": (None, "disabled", _to_bool),
}


def _read_yaml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise ConfigurationError(
            f"Config not found: {config_path}",
            config_path=str(config_path),
        )

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Config file is not valid YAML: {config_path}\n{e}",
                config_path=str(config_path),
            ) from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Config file must contain a mapping at the top level: {config_path}",
            config_path=str(config_path),
        )
    return raw


def apply_env_overrides(
    raw: dict[str, Any],
    environ: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    """
    Merge DIAGRAM_ENGINE_* environment overrides into a raw config dict.

    Returns a new dict; the input is not mutated. Empty variables are
    ignored so `FOO=` in a .env file does not clobber YAML values.
    """
    env = os.environ if environ is None else environ
    merged: dict[str, Any] = {
        k: dict(v) if isinstance(v, dict) else v for k, v in raw.items()
    }

    for var, (section, field, convert) in _ENV_OVERRIDES.items():
        value = env.get(var, "").strip()
        if not value:
            continue
        try:
            converted = convert(value)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for {var}: {value!r}",
                details={"variable": var},
            ) from e

        if section is None:
            merged[field] = converted
        else:
            merged.setdefault(section, {})
            merged[section][field] = converted

    return merged


def load_engine_config(
    config_path: Optional[str | Path] = None,
    *,
    environ: Optional[dict[str, str]] = None,
    load_env_file: bool = True,
) -> EngineConfig:
    """
    Load and validate the engine configuration.

    Args:
        config_path: Optional explicit path to a YAML file. Falls back to
                     $DIAGRAM_ENGINE_CONFIG, then to pure defaults.
        environ: Environment mapping (defaults to os.environ).
        load_env_file: Load `.env` from the working directory first.

    Returns:
        Validated EngineConfig instance.

    Raises:
        ConfigurationError: If the file is missing, malformed or invalid.
    """
    if load_env_file:
        load_dotenv(override=False)

    env = os.environ if environ is None else environ

    if config_path is None:
        env_path = env.get(CONFIG_PATH_ENV, "").strip()
        config_path = env_path or None

    raw: dict[str, Any] = {}
    if config_path is not None:
        raw = _read_yaml(Path(config_path))

    raw = apply_env_overrides(raw, environ=env)

    try:
        return EngineConfig(**raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid engine config:\n{e}",
            config_path=str(config_path) if config_path else None,
        ) from e
