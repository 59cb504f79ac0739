# gateway_config.py

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

STATE_DIR = Path(".tuya-fhem-bridge")
CONFIG_FILE_PATH = STATE_DIR / "config.json"
EXIT_INFO_FILE_PATH = STATE_DIR / "exit.info"

DEFAULT_CONFIG: dict[str, Any] = {
    "server": {
        "host": "localhost",
        "port": 3001,
    },
    "fhem": {
        "url": "http://localhost:8083/fhem",
        "username": "",
        "password": "",
        "timeout_s": 5.0,
    },
    "transport": {
        "factory": "",
    },
    "reconnect_interval_s": 10.0,
    "command_timeout_s": 30.0,
    "devices": [],
}

# Settings for which an empty value is legitimate; everything else falls back to the default when empty.
_MAY_BE_EMPTY = {("fhem", "username"), ("fhem", "password"), ("transport", "factory")}

# (env var, section, setting)
_ENV_OVERRIDES = (
    ("TUYA_SERVER_HOST", "server", "host"),
    ("TUYA_SERVER_PORT", "server", "port"),
    ("TUYA_FHEM_URL", "fhem", "url"),
    ("TUYA_TRANSPORT_FACTORY", "transport", "factory"),
)


def config_path_from_env(cli_path: Optional[str] = None) -> Path:
    env_path = (os.environ.get("TUYA_CONFIG_PATH") or "").strip()
    raw = cli_path or env_path
    return Path(raw) if raw else CONFIG_FILE_PATH


def _read_file(path: Path) -> dict[str, Any] | None:
    logger.info("Reading config data from %s...", path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error("Error reading config: %s; using default config.", e)
        return None
    if not isinstance(data, dict):
        logger.error("Error reading config: top level of %s is not an object; using default config.", path)
        return None
    return data


def _fill_defaults(current: dict[str, Any]) -> None:
    for conf_name, default in DEFAULT_CONFIG.items():
        if conf_name == "devices":
            if not isinstance(current.get("devices"), list):
                current["devices"] = []
            continue

        if conf_name not in current or current[conf_name] in (None, ""):
            logger.warning("Config file doesn't contain %s config, using default.", conf_name)
            current[conf_name] = copy.deepcopy(default)
            continue

        if not isinstance(default, dict):
            continue

        section = current[conf_name]
        if not isinstance(section, dict):
            logger.warning("Config section %s is malformed, using default.", conf_name)
            current[conf_name] = copy.deepcopy(default)
            continue

        for setting, value in default.items():
            missing = setting not in section
            empty = section.get(setting) in (None, "") and (conf_name, setting) not in _MAY_BE_EMPTY
            if missing or empty:
                logger.warning(
                    "Config file doesn't contain %s setting from %s config, using default.", setting, conf_name
                )
                section[setting] = value


def _env_overrides() -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    for env_name, section, setting in _ENV_OVERRIDES:
        raw = (os.environ.get(env_name) or "").strip()
        if raw:
            out.setdefault(section, {})[setting] = raw

    env_user = (os.environ.get("TUYA_FHEM_USERNAME") or "").strip()
    env_pass = (os.environ.get("TUYA_FHEM_PASSWORD") or "").strip()
    # Credentials only make sense as a pair.
    if (env_user or env_pass) and not (env_user and env_pass):
        raise RuntimeError(
            "Incomplete FHEM credentials from environment. Provide both TUYA_FHEM_USERNAME and TUYA_FHEM_PASSWORD (or neither)."
        )
    if env_user and env_pass:
        out.setdefault("fhem", {}).update({"username": env_user, "password": env_pass})
    return out


def _apply_overrides(current: dict[str, Any], overrides: dict[str, dict[str, Any]], source: str) -> None:
    for conf_name, settings in overrides.items():
        section = current.setdefault(conf_name, {})
        for setting, value in settings.items():
            shown = "***" if setting == "password" else value
            logger.info("Permanently using %s.%s = %s specified via %s.", conf_name, setting, shown, source)
            section[setting] = value


def _coerce(current: dict[str, Any]) -> None:
    try:
        current["server"]["port"] = int(current["server"]["port"])
    except (TypeError, ValueError) as e:
        raise RuntimeError(f"Invalid server port: {current['server']['port']!r}") from e
    for k in ("reconnect_interval_s", "command_timeout_s"):
        try:
            current[k] = float(current[k])
        except (TypeError, ValueError):
            logger.warning("Invalid %s %r, using default.", k, current[k])
            current[k] = DEFAULT_CONFIG[k]
    try:
        current["fhem"]["timeout_s"] = float(current["fhem"]["timeout_s"])
    except (TypeError, ValueError):
        current["fhem"]["timeout_s"] = DEFAULT_CONFIG["fhem"]["timeout_s"]


def load_config(path: Path | str | None = None, cmdline: Optional[dict[str, dict[str, Any]]] = None) -> dict[str, Any]:
    """Defaults < config file < environment < command line."""
    cfg_path = Path(path) if path is not None else config_path_from_env()

    current = _read_file(cfg_path)
    if current is None:
        current = copy.deepcopy(DEFAULT_CONFIG)
    else:
        _fill_defaults(current)

    _apply_overrides(current, _env_overrides(), "environment")
    _apply_overrides(current, {k: v for k, v in (cmdline or {}).items() if v}, "command line")
    _coerce(current)

    for conf_name, section in current.items():
        if conf_name == "devices" or not isinstance(section, dict):
            continue
        shown = {k: ("***" if k == "password" and v else v) for k, v in section.items()}
        logger.debug("Using %s config:\n %s", conf_name, json.dumps(shown, indent=4))

    devices = current["devices"]
    if devices:
        descs = "\n".join(_describe_device(d) for d in devices)
        logger.debug("We have %d device%s:%s%s.", len(devices), "s" if len(devices) > 1 else "", "\n" if len(devices) > 1 else " ", descs)
    else:
        logger.debug("We have no devices.")
    return current


def _describe_device(row: Any) -> str:
    if not isinstance(row, dict):
        return repr(row)
    opts = row.get("options") if isinstance(row.get("options"), dict) else {}
    addr = f"IP: {opts.get('ip')}" if opts.get("ip") else f"ID: {opts.get('id')}"
    return f"{row.get('name')} (type: {row.get('type')}, {addr}, key: {opts.get('key')})"


def write_to_file(path: Path | str, data: Any, description: str) -> bool:
    """Write ``data`` (JSON for dicts/lists, text otherwise), creating the parent directory."""
    p = Path(path)
    logger.info("Writing %s to %s...", description, p)

    if not p.parent.exists():
        logger.info("Creating dir %s...", p.parent)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Cannot write %s to %s: Error creating dir %s: %s.", description, p, p.parent, e)
            return False

    text = json.dumps(data, indent=4) if isinstance(data, (dict, list)) else str(data)
    try:
        p.write_text(text, encoding="utf-8")
    except OSError as e:
        logger.error("Cannot write %s to %s: %s.", description, p, e)
        return False
    return True
