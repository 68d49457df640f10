import logging

import pytest

from mcranksync.bot import configure_logging
from mcranksync.config import ENV_OVERRIDES, BotConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for env_name in ENV_OVERRIDES.values():
        monkeypatch.delenv(env_name, raising=False)
    monkeypatch.delenv("CONFIG_PATH", raising=False)


def write_config(tmp_path, text):
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_load_config_applies_defaults(tmp_path):
    path = write_config(
        tmp_path, "token: abc\nguild_id: 123\napi_token: secret\nlog_level: debug\n"
    )

    config = load_config(path)

    assert config.token == "abc"
    assert config.guild_id == 123
    assert config.api_token == "secret"
    assert config.log_level == "DEBUG"
    assert config.database_path == "data/mcranksync.db"
    assert config.api_port == 3000
    assert config.log_file is None
    assert config.code_sweep_interval_minutes == 5


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = write_config(tmp_path, "token: abc\nguild_id: 123\napi_token: secret\n")
    monkeypatch.setenv("API_TOKEN", "from-env")
    monkeypatch.setenv("API_PORT", "8080")
    monkeypatch.setenv("DATABASE_PATH", "/tmp/other.db")

    config = load_config(path)

    assert config.api_token == "from-env"
    assert config.api_port == 8080
    assert config.database_path == "/tmp/other.db"


def test_environment_only_when_default_file_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DISCORD_TOKEN", "abc")
    monkeypatch.setenv("DISCORD_GUILD_ID", "55")
    monkeypatch.setenv("API_TOKEN", "secret")

    config = load_config()

    assert config.guild_id == 55


@pytest.mark.parametrize(
    "text, message",
    [
        ("guild_id: 1\napi_token: s\n", "token"),
        ("token: t\nguild_id: 1\n", "api_token"),
        ("token: t\napi_token: s\n", "guild_id"),
        ("token: t\napi_token: s\nguild_id: nope\n", "guild_id"),
        ("token: t\napi_token: s\nguild_id: 1\nlog_level: LOUD\n", "log_level"),
        ("token: t\napi_token: s\nguild_id: 1\napi_port: 70000\n", "api_port"),
    ],
)
def test_invalid_config_raises(tmp_path, text, message):
    path = write_config(tmp_path, text)

    with pytest.raises(ValueError, match=message):
        load_config(path)


def test_explicit_missing_file_raises(tmp_path):
    with pytest.raises(ValueError, match="not found"):
        load_config(str(tmp_path / "missing.yml"))


def test_configure_logging_creates_log_directory(tmp_path):
    log_path = tmp_path / "logs" / "mcranksync.log"
    config = BotConfig(
        token="abc", guild_id=123, api_token="secret", log_file=str(log_path)
    )
    root = logging.getLogger()
    handlers_before = list(root.handlers)
    level_before = root.level

    try:
        configure_logging(config)
        logging.getLogger("mcranksync.test").info("file logging ready")
    finally:
        for handler in root.handlers[:]:
            if handler not in handlers_before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level_before)

    assert "file logging ready" in log_path.read_text(encoding="utf-8")
