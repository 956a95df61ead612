import json
import logging

import pytest

from server_time_sync.clock import ServerClock
from server_time_sync.configuration import (
    FetchConfig,
    FormatConfig,
    SyncConfig,
    initialize_config,
    initialize_logging,
    load_config,
    load_secrets,
    merge_dicts_recursive,
)
from server_time_sync.fetcher import HttpTimeFetcher
from server_time_sync.formatter import TimeFormatter

TOKEN_ENV = "SERVER_TIME_API_TOKEN"

CONFIG_TOML = """
[server_time.sync]
endpoint = "http://time.test/api/time"
method = "get"
attempts = 5
timeout_ms = 2000

[server_time.format]
default_format = "HH:mm"
default_timezone = "Asia/Tokyo"
"""


@pytest.fixture(scope="function")
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(CONFIG_TOML)
    return path


@pytest.fixture(scope="function")
def clean_token_env(monkeypatch):
    # setenv first so the variable is removed again on teardown
    monkeypatch.setenv(TOKEN_ENV, "")
    monkeypatch.delenv(TOKEN_ENV)


def test_load_config_formats(tmp_path, config_file):
    json_file = tmp_path / "config.json"
    json_file.write_text(json.dumps({"a": {"b": 1}}))
    yaml_file = tmp_path / "config.yaml"
    yaml_file.write_text("a:\n  b: 1\n")

    assert load_config(json_file) == {"a": {"b": 1}}
    assert load_config(str(yaml_file)) == {"a": {"b": 1}}
    assert load_config(config_file)["server_time"]["sync"]["attempts"] == 5


def test_load_config_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.toml")

    unsupported = tmp_path / "config.ini"
    unsupported.write_text("[a]\nb = 1\n")
    with pytest.raises(ValueError):
        load_config(unsupported)


def test_merge_dicts_recursive():
    base = {"a": {"b": 1, "c": 2}, "d": 3}
    override = {"a": {"c": 20}, "e": 5}
    assert merge_dicts_recursive(base, override) == {
        "a": {"b": 1, "c": 20},
        "d": 3,
        "e": 5,
    }
    # Inputs are left untouched
    assert base == {"a": {"b": 1, "c": 2}, "d": 3}


def test_initialize_config_defaults():
    configs = initialize_config({})

    assert configs["ServerClock"]["config"] == SyncConfig()
    assert configs["ServerClock"]["fetch_config"] == FetchConfig(timeout_ms=5000)
    assert configs["TimeFormatter"]["config"] == FormatConfig()
    assert configs["metrics"]["enable_prometheus_server"] is False


def test_initialize_config_from_file(config_file, clean_token_env):
    configs = initialize_config(config_file)
    sync_config = configs["ServerClock"]["config"]

    assert sync_config.endpoint == "http://time.test/api/time"
    assert sync_config.method == "GET"
    assert sync_config.attempts == 5
    assert sync_config.interval_ms == 100
    assert configs["ServerClock"]["fetch_config"].timeout_ms == 2000
    assert configs["ServerClock"]["fetch_config"].headers == {}
    assert configs["TimeFormatter"]["config"].default_timezone == "Asia/Tokyo"


def test_initialize_config_with_secrets(tmp_path, config_file, clean_token_env):
    secrets_file = tmp_path / ".env"
    secrets_file.write_text(f"{TOKEN_ENV}=abc123\n")

    configs = initialize_config(config_file, secrets=secrets_file)

    assert configs["ServerClock"]["fetch_config"].headers == {
        "Authorization": "Bearer abc123"
    }


def test_load_secrets(tmp_path, clean_token_env):
    secrets_file = tmp_path / ".env"
    secrets_file.write_text(f"{TOKEN_ENV}=abc123\n")

    assert load_secrets(secrets_file, [TOKEN_ENV]) == {TOKEN_ENV: "abc123"}
    with pytest.raises(KeyError):
        load_secrets(secrets_file, ["SERVER_TIME_MISSING_SECRET"])
    with pytest.raises(FileNotFoundError):
        load_secrets(tmp_path / "missing.env")


def test_config_unpacks_as_mapping():
    config = SyncConfig(endpoint="http://time.test")
    assert dict(config)["endpoint"] == "http://time.test"
    assert len(config) == 6
    with pytest.raises(KeyError):
        config["missing"]


def test_server_clock_from_config_file(config_file, clean_token_env):
    clock = ServerClock.from_config_file(config_file, name="configured_clock")

    assert clock.name == "configured_clock"
    assert clock.config.endpoint == "http://time.test/api/time"
    assert clock.attempts == 5
    assert isinstance(clock.fetcher, HttpTimeFetcher)
    assert clock.fetcher.timeout_ms == 2000


def test_time_formatter_from_config_file(config_file):
    class FixedClock:
        def now_ms(self):
            # 2024-03-05T07:08:09Z
            return 1_709_622_489_000

    formatter = TimeFormatter.from_config_file(config_file, FixedClock())
    assert formatter.format() == "16:08"


def test_initialize_logging_from_dict():
    logger = initialize_logging(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "loggers": {"server_time_sync": {"level": "DEBUG"}},
        }
    )
    assert logger.name == "server_time_sync"
    assert logger.level == logging.DEBUG


def test_initialize_config_secrets_without_token(tmp_path, config_file, clean_token_env):
    secrets_file = tmp_path / ".env"
    secrets_file.write_text("SOME_OTHER_SECRET=xyz\n")

    configs = initialize_config(config_file, secrets=secrets_file)

    assert configs["ServerClock"]["fetch_config"].headers == {}


def test_initialize_config_missing_secrets_file(tmp_path, config_file):
    with pytest.raises(FileNotFoundError):
        initialize_config(config_file, secrets=tmp_path / "missing.env")
