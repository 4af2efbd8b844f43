"""
QA Resolver — Config Provider

Layered configuration, highest wins:
  1. system_config rows in the resolver database (operator overrides)
  2. Environment variables (OPENAI_API_KEY, OPENAI_MODEL, RESOLVER_*)
  3. Per-environment overlay file (config/{RESOLVER_ENV}.yaml)
  4. Base config file (resolver_config.yaml)
  5. Built-in defaults

Reads are cached for 30 seconds. Callers that need to observe a toggle
immediately (e.g. the enqueue guard) pass bypass_cache=True.

Usage:
    from resolver.config import ConfigProvider

    provider = ConfigProvider(base_path="resolver_config.yaml", db=db)
    cfg = provider.get_config()
    cfg.generation_model                       # "gpt-4o-mini"
    provider.get_config(bypass_cache=True)     # skip the cache

Environment variables:
    RESOLVER_ENV                   — active profile (dev, staging, prod)
    RESOLVER_CONFIG_DIR            — directory for overlay files (default: config/)
    OPENAI_API_KEY                 — generation credential
    OPENAI_MODEL                   — generation model id
    RESOLVER_LLM_PROVIDER          — openai | azure
    RESOLVER_GENERATION_ENABLED    — background generation toggle
    RESOLVER_GENERATION_MAX_RETRY  — worker retry ceiling
    RESOLVER_TICK_INTERVAL_MS      — scheduler tick interval
"""

from __future__ import annotations

import copy
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from resolver.db import DatabaseBackend

logger = logging.getLogger("qa_resolver.config")

MASKED = "••••••"
DEFAULT_CACHE_TTL_SECONDS = 30.0


# ═══════════════════════════════════════════════════════════════════
# Resolved Settings
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ResolverConfig:
    """Effective settings consumed by resolvers, the queue and the scheduler."""
    generation_credential: str | None = field(default=None, repr=False)
    generation_model: str = "gpt-4o-mini"
    queue_tick_interval_ms: int = 60_000
    generation_feature_enabled: bool = True
    generation_max_retry: int = 3
    llm_provider: str = "openai"

    @property
    def has_credential(self) -> bool:
        return bool(self.generation_credential)

    def to_display(self) -> dict[str, Any]:
        """Settings safe to show an operator; the credential is masked."""
        return {
            "generation_credential": MASKED if self.generation_credential else None,
            "generation_model": self.generation_model,
            "queue_tick_interval_ms": self.queue_tick_interval_ms,
            "generation_feature_enabled": self.generation_feature_enabled,
            "generation_max_retry": self.generation_max_retry,
            "llm_provider": self.llm_provider,
        }


def _coerce_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_int(value: Any) -> int:
    return int(str(value).strip())


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# field → (yaml path, env var, system_config key, coercion)
FIELD_SOURCES: dict[str, tuple[str, str, str, Callable[[Any], Any]]] = {
    "generation_credential": ("generation.credential", "OPENAI_API_KEY", "openai_api_key", _coerce_str),
    "generation_model": ("generation.model", "OPENAI_MODEL", "openai_model", _coerce_str),
    "llm_provider": ("generation.provider", "RESOLVER_LLM_PROVIDER", "llm_provider", _coerce_str),
    "generation_feature_enabled": (
        "generation.feature_enabled", "RESOLVER_GENERATION_ENABLED", "ai_queue_enabled", _coerce_bool,
    ),
    "generation_max_retry": (
        "generation.max_retry", "RESOLVER_GENERATION_MAX_RETRY", "ai_testcase_max_retry", _coerce_int,
    ),
    "queue_tick_interval_ms": (
        "queue.tick_interval_ms", "RESOLVER_TICK_INTERVAL_MS", "scheduler_interval_ms", _coerce_int,
    ),
}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

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


def _set_nested(d: dict, keys: list[str], value: Any) -> None:
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# File and Environment Tiers
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    """Load config/{env}.yaml if present. Returns empty dict if not found."""
    env = env or os.environ.get("RESOLVER_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("RESOLVER_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


def _load_env_overrides() -> dict[str, Any]:
    """Map the known environment variables onto their YAML paths."""
    overrides: dict[str, Any] = {}
    for yaml_path, env_var, _, _ in FIELD_SOURCES.values():
        value = os.environ.get(env_var)
        if value is None or value == "":
            continue
        _set_nested(overrides, yaml_path.split("."), value)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


def load_config(
    base_path: str = "resolver_config.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load the file and environment tiers into one merged dict.

    Priority (highest wins):
      1. Environment variable overrides
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (resolver_config.yaml)
    """
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("RESOLVER_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(path: str, config: dict[str, Any], default: Any = None) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("generation.max_retry", cfg, 3)
    """
    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Provider
# ═══════════════════════════════════════════════════════════════════

class ConfigProvider:
    """
    Cached view over all configuration tiers.

    The provider is constructed explicitly and injected; there is no
    module-level instance.
    """

    def __init__(
        self,
        base_path: str = "resolver_config.yaml",
        db: DatabaseBackend | None = None,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        env: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_path = base_path
        self.db = db
        self.ttl_seconds = ttl_seconds
        self.env = env
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: tuple[ResolverConfig, dict[str, Any]] | None = None
        self._loaded_at = 0.0

    def get_config(self, bypass_cache: bool = False) -> ResolverConfig:
        return self._load(bypass_cache)[0]

    def settings(self, bypass_cache: bool = False) -> dict[str, Any]:
        """The merged file/env dict, for sections outside ResolverConfig (e.g. pricing)."""
        return self._load(bypass_cache)[1]

    def clear_cache(self) -> None:
        with self._lock:
            self._cached = None

    def set_override(self, key: str, value: Any) -> None:
        """Write a system_config row and drop the cache."""
        if self.db is None:
            raise ValueError("No database configured for system_config overrides")
        self.db.execute(
            "INSERT INTO system_config (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT (key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, str(value), time.time()),
        )
        self.clear_cache()
        logger.info("system_config override set: %s", key)

    def _load(self, bypass_cache: bool) -> tuple[ResolverConfig, dict[str, Any]]:
        with self._lock:
            now = self._clock()
            if (
                not bypass_cache
                and self._cached is not None
                and now - self._loaded_at < self.ttl_seconds
            ):
                return self._cached

            merged = load_config(base_path=self.base_path, env=self.env)
            resolved = self._resolve(merged, self._db_overrides())
            self._cached = (resolved, merged)
            self._loaded_at = now
            return self._cached

    def _db_overrides(self) -> dict[str, str]:
        if self.db is None:
            return {}
        rows = self.db.fetchall("SELECT key, value FROM system_config")
        return {r["key"]: r["value"] for r in rows}

    def _resolve(self, merged: dict[str, Any], db_rows: dict[str, str]) -> ResolverConfig:
        values: dict[str, Any] = {}
        for name, (yaml_path, _, db_key, coerce) in FIELD_SOURCES.items():
            raw = db_rows.get(db_key)
            if raw is None or raw == "":
                raw = get_config_value(yaml_path, merged)
            if raw is None:
                continue
            try:
                values[name] = coerce(raw)
            except ValueError:
                logger.warning("Ignoring invalid config value for %s", name)
        # coerce_str maps blanks to None; defaults apply except for the credential
        values = {k: v for k, v in values.items() if v is not None or k == "generation_credential"}
        return ResolverConfig(**values)
