"""Raw configuration assembly: ``config.toml``, then legacy env, then ``VCI__`` env, then defaults."""

from __future__ import annotations

import json
import os
import tomllib
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from core.config_defaults import default_config
from core.utils import REPO_ROOT


ENV_PREFIX = "VCI__"
CONFIG_PATH_ENV = "VCI_CONFIG_TOML"


def _split_csv(raw: str) -> Optional[List[str]]:
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or None


# env var -> (section, key, parser); a parser returning None leaves the key untouched
_LEGACY_ENV: Mapping[str, Tuple[str, str, Callable[[str], Any]]] = {
    "PG_DSN": ("postgres", "dsn", str),
    "NATS_SERVERS": ("nats", "servers", _split_csv),
    "PLATFORM_NAME": ("platform", "name", str),
    "SENDGRID_API_KEY": ("email", "api_key", str),
}


def _load_toml(path: Path) -> Dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _parse_env_value(raw: str) -> Any:
    value = (raw or "").strip()
    if not value:
        return ""
    try:
        return json.loads(value)
    except ValueError:
        return value


def _set_path(cfg: Dict[str, Any], path: List[str], value: Any) -> None:
    node = cfg
    for segment in path[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = node[segment] = {}
        node = child
    node[path[-1]] = value


def apply_env_overrides(
    cfg: Dict[str, Any],
    *,
    prefix: str = ENV_PREFIX,
    separator: str = "__",
) -> Dict[str, Any]:
    """``VCI__ISSUANCE__BATCH_SIZE=25`` sets ``cfg["issuance"]["batch_size"] = 25``."""
    for env_key, env_val in os.environ.items():
        if not env_key.startswith(prefix):
            continue
        path = [part.strip().lower() for part in env_key[len(prefix) :].split(separator) if part.strip()]
        if path:
            _set_path(cfg, path, _parse_env_value(env_val))
    return cfg


def apply_legacy_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    for env_key, (section, key, parse) in _LEGACY_ENV.items():
        raw = os.environ.get(env_key)
        if not raw:
            continue
        value = parse(raw)
        if value is not None:
            _set_path(cfg, [section, key], value)
    return cfg


def apply_defaults(cfg: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fill keys that are missing or ``None``; values already set win."""
    for key, default in (defaults or {}).items():
        current = cfg.get(key)
        if isinstance(default, dict):
            if current is None:
                current = cfg[key] = {}
            if isinstance(current, dict):
                apply_defaults(current, default)
        elif current is None:
            cfg[key] = default
    return cfg


def _load_raw_config(
    path: Optional[Path] = None,
    *,
    env_prefix: str = ENV_PREFIX,
    env_separator: str = "__",
) -> Dict[str, Any]:
    cfg_path = path or Path(os.environ.get(CONFIG_PATH_ENV) or (REPO_ROOT / "config.toml"))
    cfg: Dict[str, Any] = _load_toml(cfg_path) if cfg_path.exists() else {}
    apply_legacy_env_overrides(cfg)
    apply_env_overrides(cfg, prefix=env_prefix, separator=env_separator)
    return apply_defaults(cfg, default_config())
