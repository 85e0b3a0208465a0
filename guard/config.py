"""
Runaway Guard — Configuration Loader

Thresholds are static for the life of the process and come from three
tiers, highest wins:

  1. Environment variable overrides (GUARD_MAX_DEPTH=7, ...)
  2. Per-environment overlay file (config/{GUARD_ENV}.yaml)
  3. Base file (guard_config.yaml, or the path in GUARD_CONFIG_PATH)

All tiers use the same shape:

    runaway_guard:
      max_depth: 5
      max_unique_sessions: 10
      max_duration: 300          # seconds
      max_calls_per_window: 20
      rate_window: 60            # seconds
      max_total_calls: 100
      sweep_interval: 60         # seconds

Missing keys fall back to DEFAULT_LIMITS.

Environment variables:
    GUARD_CONFIG_PATH   — base config file
    GUARD_ENV           — active profile (dev, staging, prod)
    GUARD_CONFIG_DIR    — directory for overlay files (default: config/)
    GUARD_<KEY>         — flat override of one threshold
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from guard.rules import DEFAULT_LIMITS, GuardLimits

logger = logging.getLogger("runaway_guard.config")

SECTION = "runaway_guard"
ENV_PREFIX = "GUARD_"
_META_VARS = {"GUARD_ENV", "GUARD_CONFIG_DIR", "GUARD_CONFIG_PATH", "GUARD_VERSION"}


class ConfigError(ValueError):
    """Raised when a threshold is missing a usable value."""


def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ═══════════════════════════════════════════════════════════════════
# Tiers
# ═══════════════════════════════════════════════════════════════════

def _find_config_path() -> str | None:
    candidates = [
        os.environ.get("GUARD_CONFIG_PATH", ""),
        "guard_config.yaml",
        os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "guard_config.yaml"),
    ]
    for c in candidates:
        if c and os.path.isfile(c):
            return c
    return None


def _read_yaml(path: str | Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    """Load config/{env}.yaml. Returns empty dict if not found."""
    env = env or os.environ.get("GUARD_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("GUARD_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / "config" / f"{env}.yaml",
    ]
    for path in candidates:
        if path.exists():
            overlay = _read_yaml(path)
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """GUARD_MAX_DEPTH=7 → {"runaway_guard": {"max_depth": 7}}"""
    section: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue
        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value
        section[key[len(prefix):].lower()] = parsed

    if section:
        logger.debug("Loaded %d env var overrides", len(section))
        return {SECTION: section}
    return {}


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str | None = None,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Args:
        base_path: Path to base YAML config (default: search GUARD_CONFIG_PATH, cwd, repo root)
        env: Environment name (overrides GUARD_ENV)
        config_dir: Overlay directory (overrides GUARD_CONFIG_DIR)
        include_env_vars: Whether to apply GUARD_* env vars

    Returns:
        Merged configuration dict
    """
    base_path = base_path or _find_config_path() or ""

    config: dict[str, Any] = {}
    if base_path and os.path.exists(base_path):
        config = _read_yaml(base_path)
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("GUARD_ENV", "default")
    config["_config_source"] = base_path
    return config


def limits_from_config(config: dict[str, Any]) -> GuardLimits:
    """Build validated GuardLimits from the runaway_guard section."""
    section = config.get(SECTION) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{SECTION}' must be a mapping")

    known = {f.name: f for f in dataclasses.fields(GuardLimits)}
    for key in section:
        if key not in known:
            logger.warning("Ignoring unknown runaway_guard setting: %s", key)

    values: dict[str, Any] = {}
    for name in known:
        default = getattr(DEFAULT_LIMITS, name)
        raw = section.get(name, default)
        if isinstance(raw, bool):
            raise ConfigError(f"{name}: expected a number, got {raw!r}")
        if isinstance(default, int) and isinstance(raw, float) and not raw.is_integer():
            raise ConfigError(f"{name}: expected a whole number, got {raw!r}")
        try:
            value = type(default)(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"{name}: expected a number, got {raw!r}") from None
        if value <= 0:
            raise ConfigError(f"{name}: must be positive, got {value}")
        values[name] = value

    return GuardLimits(**values)


def load_limits(
    base_path: str | None = None,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> GuardLimits:
    cfg = load_config(base_path, env=env, config_dir=config_dir,
                      include_env_vars=include_env_vars)
    return limits_from_config(cfg)
