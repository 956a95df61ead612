from __future__ import annotations
from dataclasses import asdict, dataclass, field
from logging.config import dictConfig
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union
import logging
import os

from dotenv import load_dotenv

FILEPATH_CONFIG_DEFAULT = "config/config.toml"
FILEPATH_SECRETS_DEFAULT = ".env"
PORT_PROMETHEUS_DEFAULT = 8000


class UnpackMixin(Mapping):
    """A mixin class to unpack dataclass attributes as a mapping."""

    def __iter__(self):
        return iter(asdict(self).keys())

    def __len__(self):
        return len(asdict(self))

    def __getitem__(self, key):
        if key not in asdict(self):
            raise KeyError(f"Key {key} not found in {self.__class__.__name__}")
        return getattr(self, key)


@dataclass
class SyncConfig(UnpackMixin):
    """Configuration for a synchronization cycle."""

    endpoint: Optional[str] = None
    method: str = "POST"
    attempts: int = 3  # Probes per cycle
    interval_ms: float = 100  # Wait between probes, floored at 50 ms
    timeout_ms: float = 5000  # Hard deadline per probe
    auto_update_interval_ms: float = 300000


@dataclass
class FetchConfig(UnpackMixin):
    """Configuration for the HTTP time fetcher."""

    timeout_ms: float = 5000
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class FormatConfig(UnpackMixin):
    """Configuration for the time formatter."""

    default_format: str = "YYYY-MM-DD HH:mm:ss"
    default_timezone: Optional[str] = None  # None uses the system timezone


def load_config(filepath: Union[str, Path]) -> dict:
    if isinstance(filepath, str):
        filepath = Path(filepath)

    if not Path(filepath).exists():
        raise FileNotFoundError(f"File not found: {filepath}")

    # if extension is .json
    if filepath.suffix == ".json":
        import json

        with open(filepath, "r") as file:
            return json.load(file)

    # if extension is .yaml
    if filepath.suffix in (".yaml", ".yml"):
        import yaml

        with open(filepath, "r") as file:
            return yaml.safe_load(file)

    # if extension is .toml
    if filepath.suffix == ".toml":
        try:
            import tomllib
        except ImportError:
            import tomli as tomllib

        with open(filepath, "rb") as file:
            return tomllib.load(file)

    raise ValueError(f"Unsupported configuration file type: {filepath.suffix}")


def merge_dicts_recursive(dict1: Dict, dict2: Dict) -> Dict:
    """
    Recursively merge two dictionaries. dict2 takes precedence over dict1.

    Args:
        dict1: The first dictionary.
        dict2: The second dictionary.

    Returns:
        Merged dictionary.
    """
    merged_dict = dict1.copy()

    for key, value in dict2.items():
        if (
            key in merged_dict
            and isinstance(merged_dict[key], dict)
            and isinstance(value, dict)
        ):
            merged_dict[key] = merge_dicts_recursive(merged_dict[key], value)
        else:
            merged_dict[key] = value

    return merged_dict


def get_nested_value(config: Dict, target_key: str):
    """
    Retrieve a nested value from a configuration dictionary.

    Args:
        config: The dictionary to search.
        target_key: The key to find.

    Returns:
        The value associated with the target key, or None if not found.
    """
    if target_key in config:
        return config[target_key]

    for key, value in config.items():
        if isinstance(value, dict):
            result = get_nested_value(value, target_key)
            if result is not None:
                return result

    return None


def load_secrets(
    filepath: Optional[Union[str, Path]] = None, secrets: Optional[List[str]] = None
) -> Dict[str, str]:
    filepath = filepath or FILEPATH_SECRETS_DEFAULT
    if isinstance(filepath, str):
        filepath = Path(filepath)

    if not Path(filepath).exists():
        raise FileNotFoundError(f"File not found: {filepath}")

    load_dotenv(filepath)

    if secrets is None:
        secrets = []

    for secret in secrets:
        if secret not in os.environ:
            raise KeyError(f"Secret not found: {secret}")

    return {secret: os.getenv(secret) for secret in secrets}


def build_config(config: Optional[Union[str, Path, Dict]] = None) -> Dict:
    from server_time_sync.config_default import config_defaults

    if config is None:
        config = FILEPATH_CONFIG_DEFAULT

    if isinstance(config, dict):
        config_local = config
    else:
        config_local = load_config(config)
    # Merge the two configurations, with the local configuration taking precedence
    return merge_dicts_recursive(config_defaults, config_local)


def initialize_logging(logging_config: Union[Dict, str, Path]) -> logging.Logger:
    """
    Initialize the logger.

    Args:
        logging_config: The logging configuration dictionary or file path.

    Returns:
        A logger instance.
    """
    if not isinstance(logging_config, dict):
        logging_config = load_config(logging_config)
        # File handlers in the shipped configs write under logs/
        Path.mkdir(Path("logs"), exist_ok=True)
    dictConfig(logging_config)
    return logging.getLogger("server_time_sync")


def start_prometheus_server(port: Optional[int] = None) -> None:
    from prometheus_client import start_http_server

    port = port or PORT_PROMETHEUS_DEFAULT

    start_http_server(port)


def initialize_config(
    config: Optional[Union[str, Path, Dict]] = None,
    secrets: Optional[Union[str, Path]] = None,
) -> Dict:
    """
    Initialize the configuration.

    Args:
        config: The configuration file path or dictionary. Merged over the defaults.
        secrets: The secrets file path. Only read when provided.

    Returns:
        A dictionary containing the keyword arguments for each component.
    """
    config = build_config(config)
    config = get_nested_value(config, "server_time")

    sync = config["sync"]
    sync_config = SyncConfig(
        endpoint=sync.get("endpoint") or None,
        method=sync.get("method", "POST").upper(),
        attempts=sync.get("attempts", 3),
        interval_ms=sync.get("interval_ms", 100),
        timeout_ms=sync.get("timeout_ms", 5000),
        auto_update_interval_ms=sync.get("auto_update_interval_ms", 300000),
    )

    headers = {}
    if secrets is not None:
        token_env = config["fetch"].get("auth_token_env")
        if token_env:
            try:
                token = load_secrets(secrets, [token_env])[token_env]
            except KeyError:
                # No token in the secrets file, requests go out unauthenticated
                token = None
            if token:
                headers["Authorization"] = f"Bearer {token}"

    fetch_config = FetchConfig(timeout_ms=sync_config.timeout_ms, headers=headers)

    format_config = FormatConfig(
        default_format=config["format"].get("default_format", "YYYY-MM-DD HH:mm:ss"),
        default_timezone=config["format"].get("default_timezone") or None,
    )

    return {
        "ServerClock": {"config": sync_config, "fetch_config": fetch_config},
        "TimeFormatter": {"config": format_config},
        "metrics": dict(config["metrics"]),
    }
