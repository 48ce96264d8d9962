import json
import os
from typing import Any, Dict

DEFAULT_CONFIG = {
    "db-path": None,
    "concurrency": 3,
    "retry-attempts": 2,
    "retry-delay-ms": 1000,
    "delay-between-items": 100,
    "stop-on-error": False,
    "lease-seconds": 60,
    "pause-poll-interval": 1.0,
    "tuning": {"source": "default"},
}

# Config keys that map onto ExecutionConfig fields
EXECUTION_KEYS = {
    "concurrency": "concurrency",
    "retry-attempts": "retry_attempts",
    "retry-delay-ms": "retry_delay_ms",
    "delay-between-items": "delay_between_items",
    "stop-on-error": "stop_on_error",
}


def config_home() -> str:
    return os.environ.get("TUNEBATCH_HOME") or os.path.join(os.path.expanduser("~"), ".tunebatch")


def config_path() -> str:
    return os.path.join(config_home(), "config.json")


def default_db_path() -> str:
    home = config_home()
    os.makedirs(home, exist_ok=True)
    return os.path.join(home, "jobs.db")


def load_config() -> Dict[str, Any]:
    path = config_path()
    if not os.path.exists(path):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w') as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
    with open(path, 'r') as f:
        stored = json.load(f)
    return {**DEFAULT_CONFIG, **stored}


def save_config(config: Dict[str, Any]) -> None:
    path = config_path()
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config, f, indent=2)


def coerce_value(value: str) -> Any:
    """Turn a CLI string into the JSON type it spells"""
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered in ("null", "none"):
        return None
    digits = value[1:] if value.startswith('-') else value
    if digits.isascii() and digits.isdigit():
        return int(value)
    if digits.isascii() and digits.replace('.', '', 1).isdigit():
        return float(value)
    if value[:1] in ('{', '['):
        try:
            return json.loads(value)
        except ValueError:
            pass
    return value


def execution_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    return {field: config[key] for key, field in EXECUTION_KEYS.items() if config.get(key) is not None}
