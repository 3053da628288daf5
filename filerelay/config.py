import json
import logging
import math
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger("filerelay.config")

BYTES_PER_MB = 1024 * 1024

PROVIDER_NAMES = ("file_io", "gofile", "tmp_ninja", "anonfiles", "catbox", "litterbox")

LITTERBOX_RETENTIONS = {"1h": 3600, "12h": 12 * 3600, "24h": 24 * 3600, "72h": 72 * 3600}


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def _split_env_list(key: str) -> Optional[List[str]]:
    raw_value = os.environ.get(key)
    if raw_value is None:
        return None
    return [item.strip() for item in raw_value.split(",") if item.strip()]


DEFAULT_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "file_io": {
        "enabled": True,
        "endpoint": "https://file.io",
        "max_size_mb": 100.0,
    },
    "gofile": {
        "enabled": True,
        "endpoint": "https://{server}.gofile.io/uploadFile",
        "server_url": "https://api.gofile.io/getServer",
        "max_size_mb": 100.0,
    },
    "tmp_ninja": {
        "enabled": True,
        "endpoint": "https://tmp.ninja/api.php?d=upload",
        "max_size_mb": 500.0,
    },
    "anonfiles": {
        "enabled": True,
        "endpoint": "https://api.anonfiles.com/upload",
        "max_size_mb": 100.0,
    },
    "catbox": {
        "enabled": False,
        "endpoint": "https://catbox.moe/user/api.php",
        "max_size_mb": 200.0,
        "userhash": "",
    },
    "litterbox": {
        "enabled": False,
        "endpoint": "https://litterbox.catbox.moe/resources/internals/api.php",
        "max_size_mb": 1000.0,
        "retention": "24h",
    },
}

DEFAULT_CONFIG: Dict[str, Any] = {
    "max_upload_size_mb": 100.0,
    "registry_capacity": 1000.0,
    "sweep_interval_seconds": 60.0,
    "search_min_length": 3.0,
    "default_page_limit": 20.0,
    "max_page_limit": 100.0,
    "provider_timeout_seconds": 60.0,
    "discovery_timeout_seconds": 10.0,
    "cors_allow_origin": "*",
    "provider_order": list(PROVIDER_NAMES),
    "providers": DEFAULT_PROVIDERS,
}

CONFIG_NUMERIC_KEYS = {
    "max_upload_size_mb",
    "registry_capacity",
    "sweep_interval_seconds",
    "search_min_length",
    "default_page_limit",
    "max_page_limit",
    "provider_timeout_seconds",
    "discovery_timeout_seconds",
}

CONFIG_STRING_KEYS = {"cors_allow_origin"}

ENV_NUMERIC_OVERRIDES = {
    "FILERELAY_MAX_UPLOAD_SIZE_MB": "max_upload_size_mb",
    "FILERELAY_REGISTRY_CAPACITY": "registry_capacity",
    "FILERELAY_SWEEP_INTERVAL_SECONDS": "sweep_interval_seconds",
    "FILERELAY_SEARCH_MIN_LENGTH": "search_min_length",
    "FILERELAY_PROVIDER_TIMEOUT_SECONDS": "provider_timeout_seconds",
}


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity.

    Args:
        value: Value to coerce to float
        default: Default value to use if coercion fails

    Returns:
        Float value or default
    """
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _coerce_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default
    return bool(value)


def _normalize_provider(name: str, raw_entry: Any) -> Dict[str, Any]:
    entry = deepcopy(DEFAULT_PROVIDERS[name])
    if not isinstance(raw_entry, dict):
        return entry

    entry["enabled"] = _coerce_bool(raw_entry.get("enabled"), entry["enabled"])
    for key in ("endpoint", "server_url", "userhash"):
        value = raw_entry.get(key)
        if key in entry and isinstance(value, str):
            entry[key] = value.strip()

    if "max_size_mb" in raw_entry:
        size_mb = _coerce_numeric(raw_entry.get("max_size_mb"), entry["max_size_mb"])
        entry["max_size_mb"] = size_mb if size_mb > 0 else entry["max_size_mb"]

    if name == "litterbox":
        retention = str(raw_entry.get("retention", entry["retention"])).strip().lower()
        entry["retention"] = retention if retention in LITTERBOX_RETENTIONS else "24h"

    return entry


def _normalize_order(raw_order: Any) -> List[str]:
    if isinstance(raw_order, str):
        raw_order = [item.strip() for item in raw_order.split(",")]
    if not isinstance(raw_order, (list, tuple)):
        return list(PROVIDER_NAMES)

    order: List[str] = []
    for item in raw_order:
        name = str(item).strip().lower()
        if not name or name in order:
            continue
        if name not in PROVIDER_NAMES:
            logger.warning("config_unknown_provider name=%s", name)
            continue
        order.append(name)
    return order


def _normalize_config(raw_config: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw_config, Mapping):
        raw_config = {}

    config = deepcopy(DEFAULT_CONFIG)
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])

    for key in CONFIG_NUMERIC_KEYS:
        if config[key] <= 0:
            config[key] = float(DEFAULT_CONFIG[key])
    for key in CONFIG_NUMERIC_KEYS - {"max_upload_size_mb"}:
        config[key] = float(max(1, int(config[key])))

    if config["default_page_limit"] > config["max_page_limit"]:
        config["default_page_limit"] = config["max_page_limit"]

    for key in CONFIG_STRING_KEYS:
        value = raw_config.get(key)
        if isinstance(value, str) and value.strip():
            config[key] = value.strip()

    if "provider_order" in raw_config:
        config["provider_order"] = _normalize_order(raw_config.get("provider_order"))

    raw_providers = raw_config.get("providers")
    if not isinstance(raw_providers, Mapping):
        raw_providers = {}
    config["providers"] = {
        name: _normalize_provider(name, raw_providers.get(name)) for name in PROVIDER_NAMES
    }

    return config


def _merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if key == "providers" and isinstance(value, Mapping):
            providers = dict(merged.get("providers") or {})
            for name, entry in value.items():
                current = dict(providers.get(name) or {})
                if isinstance(entry, Mapping):
                    current.update(entry)
                providers[name] = current
            merged["providers"] = providers
        else:
            merged[key] = value
    return merged


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as config_file:
            raw = json.load(config_file)
    except FileNotFoundError:
        logger.warning("config_file_missing path=%s", path)
        return {}
    except (OSError, json.JSONDecodeError) as error:
        logger.warning("config_file_invalid path=%s error=%s", path, error)
        return {}
    if not isinstance(raw, dict):
        logger.warning("config_file_invalid path=%s error=not an object", path)
        return {}
    return raw


def _environment_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_key, config_key in ENV_NUMERIC_OVERRIDES.items():
        if not os.environ.get(env_key):
            continue
        if config_key == "max_upload_size_mb":
            # fractional megabytes are valid here
            overrides[config_key] = _coerce_numeric(
                os.environ.get(env_key), DEFAULT_CONFIG[config_key]
            )
        else:
            overrides[config_key] = _safe_int_env(env_key, int(DEFAULT_CONFIG[config_key]))

    order = _split_env_list("FILERELAY_PROVIDER_ORDER")
    if order is not None:
        overrides["provider_order"] = order

    disabled = _split_env_list("FILERELAY_DISABLED_PROVIDERS")
    if disabled:
        overrides["providers"] = {name.lower(): {"enabled": False} for name in disabled}

    origin = os.environ.get("FILERELAY_CORS_ALLOW_ORIGIN")
    if origin:
        overrides["cors_allow_origin"] = origin
    return overrides


def load_config(overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Build the effective configuration.

    Precedence, lowest first: defaults, the JSON file named by
    ``FILERELAY_CONFIG_PATH``, environment variables, then *overrides*.
    """

    raw: Dict[str, Any] = {}
    config_path = os.environ.get("FILERELAY_CONFIG_PATH")
    if config_path:
        raw = _merge(raw, _read_config_file(Path(config_path).expanduser()))
    raw = _merge(raw, _environment_overrides())
    if overrides:
        raw = _merge(raw, overrides)
    return _normalize_config(raw)


def max_upload_bytes(config: Mapping[str, Any]) -> int:
    return int(config["max_upload_size_mb"] * BYTES_PER_MB)
