import os
import json
from pathlib import Path
from typing import Dict, Any

CONFIG_DIR = Path(os.path.expanduser("~")) / ".opendbconnector"
SETTINGS_PATH = CONFIG_DIR / "settings.json"
ENV_PREFIX = "OPENDB_"

DEFAULTS: Dict[str, Any] = {
    "max_query_history_size": 100,
    "schema_cache_ttl_seconds": 300,
    "schema_cache_max_tables": 50,
    "connect_timeout_seconds": 30,
    "test_connect_timeout_seconds": 10,
    "log_level": "INFO",
}


def _coerce(key: str, value: Any) -> Any:
    """Cast a stored or environment value to the type of its default; fall back to the default."""
    default = DEFAULTS[key]
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, int):
            coerced = int(value)
            return coerced if coerced > 0 else default
        return str(value)
    except (TypeError, ValueError):
        return default


def load_settings(path: Path | None = None) -> Dict[str, Any]:
    """Load settings from settings.json merged over DEFAULTS.

    Resolution per key: environment variable OPENDB_<KEY> first, then the stored
    value, then the default. A missing or malformed file yields the defaults.
    """
    settings_path = Path(path) if path else SETTINGS_PATH
    data: Dict[str, Any] = {}
    if settings_path.exists():
        try:
            with open(settings_path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                data = loaded
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            data = {}

    result: Dict[str, Any] = {}
    for key, default in DEFAULTS.items():
        env_value = os.environ.get(ENV_PREFIX + key.upper())
        if env_value is not None:
            result[key] = _coerce(key, env_value)
        elif key in data:
            result[key] = _coerce(key, data[key])
        else:
            result[key] = default
    return result


def save_settings(settings: Dict[str, Any], path: Path | None = None) -> None:
    """Save known settings keys to settings.json. Raises on write failures."""
    settings_path = Path(path) if path else SETTINGS_PATH
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    data = {key: _coerce(key, settings.get(key, default)) for key, default in DEFAULTS.items()}
    with open(settings_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
