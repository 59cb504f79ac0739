# app.py

from __future__ import annotations

import argparse
import errno
import logging
import os
import signal
import sys
from typing import Any, Optional

from flask import Flask, Response, current_app, request
from werkzeug.exceptions import HTTPException
from werkzeug.serving import make_server

from fhem_client import FhemError
from gateway_config import EXIT_INFO_FILE_PATH, config_path_from_env, load_config, write_to_file
from log_setup import configure_logging, parse_level_spec
from tuya_gateway import TuyaGateway

logger = logging.getLogger("app")

PROCESS_TITLE = "tuya-fhem-bridge"

# ---------- App ----------
app = Flask(__name__)


def _gateway() -> TuyaGateway:
    gateway = current_app.config.get("TUYA_GATEWAY")
    if gateway is None:
        raise RuntimeError("Gateway not initialised")
    return gateway


def _text(body: str, status: int = 200) -> Response:
    return Response(body, status=status, mimetype="text/plain")


# FHEM reads the body only, so errors are plain text too; keep correct HTTP status codes (e.g., 404).
@app.errorhandler(HTTPException)
def _handle_http_exception(e: HTTPException):
    return _text(f"Error: {e.name}", int(getattr(e, "code", 500) or 500))


@app.errorhandler(Exception)
def _handle_any_exception(e: Exception):
    logger.exception("Unhandled error while processing request %s", request.full_path)
    return _text(f"Error: {e!r}", 500)


@app.get("/")
def command():
    """
    ``dev``: name of the FHEM TuyaDevice (absent for server commands).
    ``cmd``: define, connect, rename, undef, delete, get, set, calibrate; 'test' without ``dev``.
    ``prop``: property index or server-provided property name for get/set.
    ``arg``: device definition, new name, or value to set.
    """
    args = request.args
    logger.debug("Parameters from URL: %s", args.to_dict())
    result = _gateway().handle_command(args.get("dev"), args.get("cmd"), args.get("prop"), args.get("arg"))
    return _text(result)


# ---------- startup / shutdown ----------


class _ServerStop(Exception):
    def __init__(self, origin: str) -> None:
        super().__init__(origin)
        self.origin = origin


class _Shutdown:
    """Runs the shutdown sequence once per process."""

    def __init__(self) -> None:
        self.called = False
        self.exit_code = 0

    def __call__(
        self,
        gateway: Optional[TuyaGateway],
        config_path,
        origin: str,
        code: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        if self.called:
            if origin in ("SIGINT", "SIGTERM"):
                logger.warning("Already shutting down...")
            else:
                logger.error("Another error occurred during shutdown.")
            return
        self.called = True

        logger.info("Shutting down...")

        if gateway is None:
            return

        gateway.shutdown()
        write_to_file(config_path, gateway.persisted_config(), "config data")

        # SIGINT: FHEM TuyaMaster is going down itself and picks up exit.info on restart.
        notified = False
        if origin != "SIGINT" and gateway.master_name and not str(code or "").startswith("EFHEM"):
            try:
                gateway.notify_master("OnServerExit", self.exit_code, origin, code or "", message or "", wait=True)
                notified = True
            except Exception as e:
                logger.error("Cannot notify %s of exit: %r", gateway.master_name, e)
        if not notified:
            write_to_file(EXIT_INFO_FILE_PATH, f"{self.exit_code}\n{origin}\n{code or ''}\n{message or ''}", "exit info")

        logger.info("Exiting with code %s.", self.exit_code)
        gateway.close()


shutdown = _Shutdown()


def _raise_server_stop(signum: int, _frame: Any) -> None:
    name = signal.Signals(signum).name
    logger.info("%s received.", name)
    if shutdown.called:
        logger.warning("Already shutting down...")
        return
    raise _ServerStop(name)


def _parse_args(argv: Optional[list[str]]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog=PROCESS_TITLE,
        description="HTTP server controlling Tuya devices; backend for the FHEM TuyaMaster and TuyaDevice modules.",
    )
    ap.add_argument("--server-host", "-H", default=None)
    ap.add_argument("--server-port", "-P", type=int, default=None)
    ap.add_argument("--fhem-url", "-U", default=None)
    ap.add_argument("--fhem-user", "-u", default=None)
    ap.add_argument("--fhem-pass", "-p", default=None)
    ap.add_argument("--config", "-c", default=None, help="Path of the JSON config file.")
    ap.add_argument("--no-log-stdout", "-n", action="store_true", help="Log to the log file only.")
    ap.add_argument(
        "--log-level",
        "-l",
        default="debug",
        help="'<level>' for all loggers or '<logger>:<level>[,<logger>:<level>]...'.",
    )
    args = ap.parse_args(argv)

    try:
        args.levels = parse_level_spec(args.log_level)
    except ValueError as e:
        ap.error(str(e))
    return args


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)

    configure_logging(args.levels, log_to_stdout=not args.no_log_stdout)
    logger.debug("Command line: %s, PID: %s", " ".join(sys.argv), os.getpid())

    cmdline = {
        "server": {"host": args.server_host, "port": args.server_port},
        "fhem": {"url": args.fhem_url, "username": args.fhem_user, "password": args.fhem_pass},
    }
    cmdline = {k: {s: v for s, v in section.items() if v is not None} for k, section in cmdline.items()}

    config_path = config_path_from_env(args.config)
    config = load_config(config_path, cmdline)

    gateway = TuyaGateway(config)
    app.config["TUYA_GATEWAY"] = gateway
    gateway.resolve_master_name()

    signal.signal(signal.SIGTERM, _raise_server_stop)
    signal.signal(signal.SIGINT, _raise_server_stop)

    host = config["server"]["host"]
    port = int(config["server"]["port"])
    origin = "SIGTERM"
    code: Optional[str] = None
    message: Optional[str] = None
    server = None
    try:
        logger.info("Starting HTTP server to listen on %s:%s for HTTP requests...", host, port)
        try:
            server = make_server(host, port, app, threaded=True)
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                logger.critical("Cannot start HTTP server: Address %s:%s already in use.", host, port)
            else:
                logger.error("HTTP server error: Code: %s, message: %s", e.errno, e)
            raise

        logger.info("Successfully started HTTP server: %s:%s", host, server.server_port)
        gateway.notify_master("OnServerRunning", os.getpid())
        server.serve_forever()
    except _ServerStop as e:
        origin = e.origin
    except Exception as e:
        shutdown.exit_code = 1
        origin = "uncaughtException"
        code = "EFHEMCL" if isinstance(e, FhemError) else type(e).__name__
        message = str(e)
        logger.exception("%s:", origin)
    finally:
        if server is not None:
            logger.debug("Closing HTTP server...")
            server.server_close()
            logger.debug("HTTP server has been closed.")
        shutdown(gateway, config_path, origin, code, message)

    return shutdown.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
