"""Configuration loading for the fs_chat server.

Layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable FS_CHAT_CONFIG
3. Fallback to "config/default.yaml"

Values from the file are merged over built-in defaults, then overridden by
environment variables with prefix ``FS_CHAT__`` (e.g.,
FS_CHAT__STORE__DATA_DIR=/tmp/records).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "server": {
        "cors_origins": ["*"],
        "public_url": "http://127.0.0.1:8000",
    },
    "store": {
        "backend": "disk",          # disk | memory | http
        "data_dir": "data",
        "url": None,
        "timeout": 30.0,
    },
    "executor": {
        "kind": "local",            # local | http | none
        "url": None,
        "timeout": 60.0,
    },
    "generation": {
        "api_url": "https://api.anthropic.com/v1/messages",
        "model": "claude-sonnet-4-5",
        "api_key_env": "ANTHROPIC_API_KEY",
        "anthropic_version": "2023-06-01",
        "max_output_tokens": 4096,
        "timeout": 120.0,
    },
    "history": {
        "max_depth": 10000,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix FS_CHAT__."""
    prefix = "FS_CHAT__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., FS_CHAT__STORE__DATA_DIR -> cfg["store"]["data_dir"]
        parts = key[len(prefix):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``FS_CHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file contents, with environment
        overrides applied.
    """
    if path is None:
        path = os.environ.get("FS_CHAT_CONFIG", "config/default.yaml")

    cfg = copy.deepcopy(DEFAULTS)
    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s; using defaults", path_obj)
        return _apply_env_overrides(cfg)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(cfg, loaded))
