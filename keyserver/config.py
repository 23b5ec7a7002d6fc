"""
Key Server Configuration

Settings are resolved in this order (later wins):
    1. Defaults on :class:`Settings`
    2. Optional YAML file (``--config`` or ``KEYSERVER_CONFIG``), with
       ``${VAR}`` references expanded from the environment
    3. ``KEYSERVER_*`` environment variables, including those loaded from
       ``.env.local`` by python-dotenv

Security Note:
    The master password is never part of the settings. ``KEYSERVER_PASSWORD``
    is only read when the ``env`` prompt is selected.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .crypto import PBKDF2_ITERATIONS

ENV_OVERRIDES = {
    "keyring_path": "KEYSERVER_KEYRING",
    "socket_path": "KEYSERVER_SOCKET",
    "prompt": "KEYSERVER_PROMPT",
    "askpass_command": "KEYSERVER_ASKPASS",
    "notify_command": "KEYSERVER_NOTIFY",
    "kdf_iterations": "KEYSERVER_KDF_ITERATIONS",
    "log_level": "KEYSERVER_LOG_LEVEL",
}

# loguru's built-in levels
LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Configuration could not be loaded or failed validation."""


def default_keyring_path() -> Path:
    return Path.home() / ".config" / "keyserver" / "keyring.json"


def default_socket_path() -> Path:
    """Per-user socket: $XDG_RUNTIME_DIR/keyserver.sock, else /tmp/keyserver-<uid>.sock."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return Path(runtime_dir) / "keyserver.sock"
    return Path(tempfile.gettempdir()) / f"keyserver-{os.getuid()}.sock"


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    keyring_path: Path = Field(default_factory=default_keyring_path)
    socket_path: Path = Field(default_factory=default_socket_path)
    prompt: Literal["terminal", "askpass", "env"] = "terminal"
    askpass_command: str = "ssh-askpass"
    notify_command: str | None = None
    kdf_iterations: int = Field(default=PBKDF2_ITERATIONS, ge=1)
    log_level: str = "INFO"

    @field_validator("keyring_path", "socket_path")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("notify_command")
    @classmethod
    def _blank_is_unset(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level {value!r}")
        return level


def _expand_env_vars(obj: Any) -> Any:
    """Recursively replace ``${VAR}`` with os.environ["VAR"], leaving unknown names as-is."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{(\w+)\}",
            lambda m: os.environ.get(m.group(1), m.group(0)),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def _load_yaml(path: str | Path) -> dict:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as err:
        raise ConfigError(f"Cannot read config file {path}: {err}") from err
    except yaml.YAMLError as err:
        raise ConfigError(f"Config file {path} is not valid YAML: {err}") from err

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return _expand_env_vars(data)


def load_settings(
    config_path: str | Path | None = None,
    env_file: str | Path | None = ".env.local",
) -> Settings:
    """Build validated settings from defaults, YAML and the environment.

    Raises:
        ConfigError: Unreadable YAML or a value that fails validation.
    """
    if env_file:
        load_dotenv(env_file)

    config_path = config_path or os.environ.get("KEYSERVER_CONFIG")
    data = _load_yaml(config_path) if config_path else {}

    for field, env_var in ENV_OVERRIDES.items():
        if env_var in os.environ:
            data[field] = os.environ[env_var]

    try:
        return Settings.model_validate(data)
    except ValidationError as err:
        raise ConfigError(f"Invalid configuration: {err}") from err
