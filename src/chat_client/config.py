"""Configuration loading utilities for the chat client.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_CLIENT_CONFIG
3. Fallback to "config/default.yaml"

Values from the file are merged over built-in defaults, then overridden by
environment variables with prefix ``CHAT_CLIENT__`` (e.g.
CHAT_CLIENT__SESSION__WINDOW_SIZE=10).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAT_CLIENT__"
STALE_REPLY_POLICIES = ("replace", "retain")

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "session": {
        "window_size": 20,
        "stale_reply_policy": "replace",
        "history_limit": 50,
    },
    "inference": {
        "provider": "openai",
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "api_key_env": "OPENAI_API_KEY",
        "timeout": 30.0,
        "max_retries": 2,
        "system_prompt": None,
    },
    "storage": {"data_dir": "data", "filename": "messages.jsonl"},
    "attachments": {
        "provider": "local",
        "upload_dir": "data/uploads",
        "public_base_url": "/uploads",
        "folder": "chat_uploads",
    },
    "logging": {"level": "INFO"},
}

_SECRET_KEYS = {"api_key", "api_secret", "password", "token"}


def _coerce(value: str) -> Any:
    # Attempt to parse simple types (bool, int, float)
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    if value.lower() in {"null", "none"}:
        return None
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CHAT_CLIENT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., CHAT_CLIENT__INFERENCE__MODEL -> cfg["inference"]["model"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def _deep_merge(base: Dict[str, Any], over: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in over.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def validate_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    session = cfg.get("session", {})
    window = session.get("window_size")
    if not isinstance(window, int) or window <= 0:
        raise ConfigError(f"session.window_size must be a positive integer, got {window!r}")
    policy = session.get("stale_reply_policy")
    if policy not in STALE_REPLY_POLICIES:
        raise ConfigError(
            f"session.stale_reply_policy must be one of {STALE_REPLY_POLICIES}, got {policy!r}"
        )
    limit = session.get("history_limit")
    if not isinstance(limit, int) or limit <= 0:
        raise ConfigError(f"session.history_limit must be a positive integer, got {limit!r}")
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat client.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_CLIENT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file, environment overrides applied.
    """
    if path is None:
        path = os.environ.get("CHAT_CLIENT_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    loaded: Dict[str, Any] = {}
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
    else:
        with path_obj.open("r", encoding="utf-8") as f:
            try:
                loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Failed to parse config file {path_obj}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"Invalid config format in {path_obj}, expected dict.")

    cfg = _apply_env_overrides(_deep_merge(DEFAULTS, loaded))
    return validate_config(cfg)


def redact(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``cfg`` with secret-looking values masked."""
    out: Dict[str, Any] = {}
    for key, value in cfg.items():
        if isinstance(value, dict):
            out[key] = redact(value)
        elif key in _SECRET_KEYS and value:
            out[key] = "***"
        else:
            out[key] = value
    return out


def configure_logging(cfg: Dict[str, Any]) -> None:
    level = str(cfg.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
