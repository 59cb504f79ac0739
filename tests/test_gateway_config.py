"""Tests for config loading, precedence and persistence."""

from __future__ import annotations

import json
import logging

import pytest

import gateway_config
from gateway_config import DEFAULT_CONFIG, config_path_from_env, load_config, write_to_file

_ENV = (
    "TUYA_CONFIG_PATH",
    "TUYA_SERVER_HOST",
    "TUYA_SERVER_PORT",
    "TUYA_FHEM_URL",
    "TUYA_FHEM_USERNAME",
    "TUYA_FHEM_PASSWORD",
    "TUYA_TRANSPORT_FACTORY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_missing_file_gives_defaults(tmp_path, caplog) -> None:
    with caplog.at_level(logging.ERROR, logger="gateway_config"):
        cfg = load_config(tmp_path / "missing.json")

    assert cfg["server"] == DEFAULT_CONFIG["server"]
    assert cfg["devices"] == []
    assert "using default config" in caplog.text
    # defaults must not be shared with the module constant
    cfg["server"]["port"] = 1
    assert DEFAULT_CONFIG["server"]["port"] == 3001


def test_partial_file_is_completed(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"server": {"port": 4000}, "devices": [{"name": "lamp1", "type": "switch"}]}))

    cfg = load_config(path)

    assert cfg["server"] == {"host": "localhost", "port": 4000}
    assert cfg["fhem"]["url"] == "http://localhost:8083/fhem"
    assert cfg["devices"][0]["name"] == "lamp1"


def test_env_overrides_file(tmp_path, monkeypatch) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"server": {"host": "0.0.0.0", "port": 4000}}))
    monkeypatch.setenv("TUYA_SERVER_PORT", "4100")
    monkeypatch.setenv("TUYA_TRANSPORT_FACTORY", "my_transport:create")

    cfg = load_config(path)

    assert cfg["server"] == {"host": "0.0.0.0", "port": 4100}
    assert cfg["transport"]["factory"] == "my_transport:create"


def test_command_line_overrides_env(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("TUYA_FHEM_URL", "http://env:8083/fhem")

    cfg = load_config(tmp_path / "none.json", {"fhem": {"url": "http://cli:8083/fhem"}, "server": {}})

    assert cfg["fhem"]["url"] == "http://cli:8083/fhem"


def test_env_credentials_must_be_paired(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("TUYA_FHEM_USERNAME", "admin")
    with pytest.raises(RuntimeError, match="Incomplete FHEM credentials"):
        load_config(tmp_path / "none.json")

    monkeypatch.setenv("TUYA_FHEM_PASSWORD", "secret")
    cfg = load_config(tmp_path / "none.json")
    assert (cfg["fhem"]["username"], cfg["fhem"]["password"]) == ("admin", "secret")


def test_invalid_port_is_fatal(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"server": {"host": "localhost", "port": "eighty"}}))
    with pytest.raises(RuntimeError, match="Invalid server port"):
        load_config(path)


def test_config_path_from_env(monkeypatch) -> None:
    assert config_path_from_env() == gateway_config.CONFIG_FILE_PATH
    monkeypatch.setenv("TUYA_CONFIG_PATH", "/etc/tuya.json")
    assert str(config_path_from_env()) == "/etc/tuya.json"
    assert str(config_path_from_env("/tmp/cli.json")) == "/tmp/cli.json"


def test_write_to_file_creates_dir(tmp_path) -> None:
    path = tmp_path / "state" / "config.json"

    assert write_to_file(path, {"devices": []}, "config data")
    assert json.loads(path.read_text()) == {"devices": []}

    exit_info = tmp_path / "state" / "exit.info"
    assert write_to_file(exit_info, "0\nSIGINT\n\n", "exit info")
    assert exit_info.read_text() == "0\nSIGINT\n\n"
