import json
import os

ROOT = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.path.join(ROOT, "pos.sqlite")
CONFIG_PATH = os.path.join(ROOT, "config.json")

DEFAULT_CONFIG = {
    "api_base_url": "http://localhost:8001",
    "device_id": "",
    "device_token": "",
    "cashier_id": "",
    # Percent. Used only for products whose catalog entry carries no rate.
    "tax_rate": 0,
    "sync_interval_seconds": 180,
    "probe_interval_seconds": 15,
    "request_timeout_seconds": 10,
    # 0 keeps the flat timer: every queued item is retried on every pass.
    "retry_base_delay_seconds": 0,
    "retry_max_delay_seconds": 900,
}

_ENV_OVERRIDES = {
    "POS_API_BASE_URL": "api_base_url",
    "POS_DEVICE_ID": "device_id",
    "POS_DEVICE_TOKEN": "device_token",
    "POS_CASHIER_ID": "cashier_id",
}


def load_config(path: str = CONFIG_PATH) -> dict:
    if not os.path.exists(path):
        save_config(DEFAULT_CONFIG, path)
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    cfg = {**DEFAULT_CONFIG, **(data if isinstance(data, dict) else {})}
    # Allow ops to override without rewriting the on-disk config.
    for env_name, key in _ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            cfg[key] = os.environ[env_name]
    return cfg


def save_config(data: dict, path: str = CONFIG_PATH):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def cfg_float(cfg: dict, key: str) -> float:
    try:
        return float(cfg.get(key) if cfg.get(key) is not None else DEFAULT_CONFIG[key])
    except (TypeError, ValueError):
        return float(DEFAULT_CONFIG[key])
