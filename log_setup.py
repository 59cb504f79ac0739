"""Logging configuration for the daemon.

Log records go to stdout (optional) and to a file that is rotated monthly.
Levels can be set for all loggers at once (``debug``) or per logger
(``tuya_controller:debug,fhem_client:info``).
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Iterable

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)5s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_PATH = Path("log") / "tuya-fhem-bridge.log"

# Loggers whose level can be set individually.
LOGGER_NAMES = (
    "app",
    "tuya_gateway",
    "tuya_controller",
    "device_registry",
    "blind_calibration",
    "gateway_config",
    "fhem_client",
)

_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}


def parse_level(name: str) -> int:
    level = _LEVELS.get(str(name or "").strip().lower())
    if level is None:
        raise ValueError(f"Invalid log level: '{name}'")
    return level


def parse_level_spec(spec: str, known: Iterable[str] = LOGGER_NAMES) -> dict[str, int]:
    """Parse ``'<level>'`` or ``'<logger>:<level>[,<logger>:<level>]...'``.

    The single-level form is returned under the key ``""`` (all loggers).
    """
    values = [v.strip() for v in str(spec or "").split(",") if v.strip()]
    if not values:
        raise ValueError("Empty log level specification.")

    if len(values) == 1 and ":" not in values[0]:
        return {"": parse_level(values[0])}

    if any(":" not in v for v in values):
        raise ValueError(f"Invalid value for option '--log-level -l': '{spec}'.")

    known_set = set(known)
    out: dict[str, int] = {}
    for v in values:
        logger_name, _, level = v.partition(":")
        logger_name = logger_name.strip()
        if logger_name not in known_set:
            raise ValueError(f"Invalid logger category: '{logger_name}'")
        out[logger_name] = parse_level(level)
    return out


def configure_logging(
    levels: dict[str, int] | None = None,
    log_to_stdout: bool = True,
    log_file: Path | str | None = LOG_FILE_PATH,
) -> None:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = []

    if log_to_stdout:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(formatter)
        handlers.append(stream)

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        # TimedRotatingFileHandler has no monthly interval; 31 days is close enough.
        file_handler = logging.handlers.TimedRotatingFileHandler(
            path, when="D", interval=31, backupCount=12, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)

    levels = dict(levels or {})
    default_level = levels.pop("", logging.DEBUG)
    root.setLevel(default_level)
    for name in LOGGER_NAMES:
        logging.getLogger(name).setLevel(levels.get(name, default_level))

    # Werkzeug logs every request at INFO.
    logging.getLogger("werkzeug").setLevel(max(default_level, logging.WARNING))
