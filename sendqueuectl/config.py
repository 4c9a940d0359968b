import json
import os
from pathlib import Path
from typing import Dict, Optional

from .retry import RetryConfig

DEFAULT_CONFIG = {
    "max_attempts": "5",
    "backoff_base_seconds": "60",
    "backoff_max_seconds": "3600",
    "backoff_multiplier": "2",
    "jitter_factor": "0.2",
    "stale_minutes": "30",
    "sending_enabled": "true",
    "kill_switch": "false",
    "send_command": "",
    "send_timeout_seconds": "20",
    "notify_webhook_url": "",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())
INT_KEYS = {"max_attempts", "stale_minutes", "send_timeout_seconds"}
FLOAT_KEYS = {"backoff_base_seconds", "backoff_max_seconds", "backoff_multiplier", "jitter_factor"}
RETRY_KEYS = {"max_attempts", "backoff_base_seconds", "backoff_max_seconds", "backoff_multiplier", "jitter_factor"}

QUEUE_FILE = "send_queue.ndjson"
CONFIG_FILE = "config.json"

_TRUTHY = {"1", "true", "yes", "on"}


def data_dir() -> Path:
    return Path(os.environ.get("SENDQ_DATA_DIR", "data"))


def queue_path() -> Path:
    override = os.environ.get("SENDQ_QUEUE_FILE")
    return Path(override) if override else data_dir() / QUEUE_FILE


def config_path() -> Path:
    return data_dir() / CONFIG_FILE


def is_truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in _TRUTHY


def get_config(path: Optional[Path] = None) -> Dict[str, str]:
    """Defaults overlaid with whatever the config file holds. Unreadable files count as empty."""
    path = Path(path) if path else config_path()
    cfg = dict(DEFAULT_CONFIG)
    if path.exists():
        try:
            stored = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}
        if isinstance(stored, dict):
            cfg.update({k: str(v) for k, v in stored.items() if k in ALLOWED_CONFIG_KEYS})
    webhook = os.environ.get("SENDQ_NOTIFY_WEBHOOK_URL")
    if webhook:
        cfg["notify_webhook_url"] = webhook
    return cfg


def set_config(key: str, value: str, path: Optional[Path] = None):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in INT_KEYS or key in FLOAT_KEYS:
        try:
            number = int(value) if key in INT_KEYS else float(value)
        except ValueError:
            raise ValueError(f"{key} must be a number")
        if number < 0:
            raise ValueError(f"{key} must be >= 0")
    path = Path(path) if path else config_path()
    if key in RETRY_KEYS:
        # raises ValueError when the merged settings are out of bounds
        RetryConfig.from_config(dict(get_config(path), **{key: value}))
    stored = {}
    if path.exists():
        try:
            stored = json.loads(path.read_text(encoding="utf-8"))
        except ValueError:
            stored = {}
    stored[key] = str(value)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(stored, indent=2, sort_keys=True), encoding="utf-8")
    os.replace(tmp, path)


def kill_switch_active(cfg: Dict[str, str]) -> bool:
    return is_truthy(os.environ.get("SENDQ_KILL_SWITCH")) or is_truthy(cfg.get("kill_switch"))


def sending_enabled(cfg: Dict[str, str]) -> bool:
    return is_truthy(cfg.get("sending_enabled", "true"))
