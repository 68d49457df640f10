import os
from dataclasses import dataclass
from typing import Optional

import yaml

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_DATABASE_PATH = "data/mcranksync.db"

# Environment variables that override keys from the YAML file.
ENV_OVERRIDES = {
    "token": "DISCORD_TOKEN",
    "guild_id": "DISCORD_GUILD_ID",
    "api_token": "API_TOKEN",
    "database_path": "DATABASE_PATH",
    "api_host": "API_HOST",
    "api_port": "API_PORT",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
}


@dataclass
class BotConfig:
    token: str
    guild_id: int
    api_token: str
    database_path: str = DEFAULT_DATABASE_PATH
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    log_level: str = "INFO"
    log_file: Optional[str] = None
    code_sweep_interval_minutes: int = 5


def _read_yaml(config_path: str, required: bool) -> dict:
    if not os.path.exists(config_path):
        if required:
            raise ValueError(f"Config file '{config_path}' not found")
        return {}
    with open(config_path, "r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _as_int(data: dict, key: str, default: int | None = None) -> int:
    raw = data.get(key)
    if raw in (None, ""):
        if default is None:
            raise ValueError(f"Config missing '{key}'")
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Config '{key}' must be an integer, got {raw!r}")


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    data = _read_yaml(config_path, required=path is not None)
    for key, env_name in ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            data[key] = os.environ[env_name]

    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("Config missing 'token'")

    api_token = str(data.get("api_token") or "").strip()
    if not api_token:
        raise ValueError("Config missing 'api_token'")

    guild_id = _as_int(data, "guild_id")

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    api_port = _as_int(data, "api_port", 3000)
    if not 0 < api_port < 65536:
        raise ValueError(f"Invalid api_port {api_port}")

    sweep_minutes = _as_int(data, "code_sweep_interval_minutes", 5)
    if sweep_minutes < 1:
        raise ValueError("code_sweep_interval_minutes must be at least 1")

    return BotConfig(
        token=token,
        guild_id=guild_id,
        api_token=api_token,
        database_path=str(data.get("database_path") or DEFAULT_DATABASE_PATH),
        api_host=str(data.get("api_host") or "0.0.0.0"),
        api_port=api_port,
        log_level=log_level,
        log_file=str(data["log_file"]) if data.get("log_file") else None,
        code_sweep_interval_minutes=sweep_minutes,
    )
