from pathlib import Path

import pytest

from keyserver.config import (
    ENV_OVERRIDES,
    ConfigError,
    Settings,
    _expand_env_vars,
    default_socket_path,
    load_settings,
)
from keyserver.crypto import PBKDF2_ITERATIONS


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for env_var in (*ENV_OVERRIDES.values(), "KEYSERVER_CONFIG"):
        monkeypatch.delenv(env_var, raising=False)


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path))
    settings = load_settings(env_file=None)
    assert settings.prompt == "terminal"
    assert settings.kdf_iterations == PBKDF2_ITERATIONS
    assert settings.socket_path == tmp_path / "keyserver.sock"
    assert settings.keyring_path.name == "keyring.json"
    assert settings.notify_command is None
    assert settings.log_level == "INFO"


def test_socket_falls_back_to_tmp(monkeypatch):
    monkeypatch.delenv("XDG_RUNTIME_DIR", raising=False)
    assert default_socket_path().name.startswith("keyserver-")


def test_expand_env_vars(monkeypatch):
    monkeypatch.setenv("TEST_VAR", "expanded")

    assert _expand_env_vars("val-${TEST_VAR}") == "val-expanded"
    assert _expand_env_vars("val-${MISSING_VAR_XYZ}") == "val-${MISSING_VAR_XYZ}"
    assert _expand_env_vars({"k": "${TEST_VAR}"}) == {"k": "expanded"}
    assert _expand_env_vars(["${TEST_VAR}"]) == ["expanded"]
    assert _expand_env_vars(5) == 5


def test_yaml_file_with_env_expansion(monkeypatch, tmp_path):
    monkeypatch.setenv("VAULT_DIR", str(tmp_path))
    config = tmp_path / "keyserver.yaml"
    config.write_text(
        "keyring_path: ${VAULT_DIR}/ring.json\n"
        "prompt: askpass\n"
        "askpass_command: zenity --password\n"
        "kdf_iterations: 1000\n"
    )

    settings = load_settings(config, env_file=None)
    assert settings.keyring_path == tmp_path / "ring.json"
    assert settings.prompt == "askpass"
    assert settings.askpass_command == "zenity --password"
    assert settings.kdf_iterations == 1000


def test_config_path_from_env(monkeypatch, tmp_path):
    config = tmp_path / "keyserver.yaml"
    config.write_text("log_level: debug\n")
    monkeypatch.setenv("KEYSERVER_CONFIG", str(config))
    assert load_settings(env_file=None).log_level == "DEBUG"


def test_env_overrides_yaml(monkeypatch, tmp_path):
    config = tmp_path / "keyserver.yaml"
    config.write_text("prompt: askpass\n")
    monkeypatch.setenv("KEYSERVER_PROMPT", "env")
    monkeypatch.setenv("KEYSERVER_KDF_ITERATIONS", "2000")

    settings = load_settings(config, env_file=None)
    assert settings.prompt == "env"
    assert settings.kdf_iterations == 2000


def test_dotenv_file_is_loaded(monkeypatch, tmp_path):
    # load_dotenv writes into os.environ; make monkeypatch undo it
    monkeypatch.setenv("KEYSERVER_NOTIFY", "")
    monkeypatch.delenv("KEYSERVER_NOTIFY")
    env_file = tmp_path / ".env.local"
    env_file.write_text("KEYSERVER_NOTIFY=notify-send keyserver\n")
    settings = load_settings(env_file=env_file)
    assert settings.notify_command == "notify-send keyserver"


def test_user_paths_expanded():
    settings = Settings(keyring_path="~/ring.json")
    assert settings.keyring_path == Path.home() / "ring.json"


def test_blank_notify_is_unset():
    assert Settings(notify_command="").notify_command is None


@pytest.mark.parametrize(
    "content",
    ["prompt: carrier-pigeon\n", "kdf_iterations: 0\n", "log_level: chatty\n", "colour: blue\n"],
)
def test_invalid_values(tmp_path, content):
    config = tmp_path / "keyserver.yaml"
    config.write_text(content)
    with pytest.raises(ConfigError):
        load_settings(config, env_file=None)


def test_invalid_yaml(tmp_path):
    config = tmp_path / "keyserver.yaml"
    config.write_text("prompt: [unclosed\n")
    with pytest.raises(ConfigError, match="not valid YAML"):
        load_settings(config, env_file=None)


def test_yaml_must_be_mapping(tmp_path):
    config = tmp_path / "keyserver.yaml"
    config.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_settings(config, env_file=None)


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError, match="Cannot read"):
        load_settings(tmp_path / "absent.yaml", env_file=None)


def test_empty_config_file(tmp_path):
    config = tmp_path / "keyserver.yaml"
    config.write_text("")
    assert load_settings(config, env_file=None).prompt == "terminal"
