# tuya_gateway.py

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Optional

from blind_calibration import BLIND_TYPE
from device_registry import ADDRESS_KINDS, DeviceDefinition, DeviceRegistry
from device_transport import DeviceHandle, DeviceListener, TransportFactory, load_transport_factory
from fhem_client import FhemClient, FhemError, FhemNotifier
from gateway_errors import GatewayError, InvalidRequest, NotFound
from tuya_controller import DeviceController, Notifier

logger = logging.getLogger(__name__)

SUCCESS_RESPONSE = "succ"
MASTER_NAME_PERL = "$modules{TuyaMaster}{defptr}{NAME}"


class AsyncLoopThread:
    """Owns exactly one asyncio event loop running forever in a daemon thread."""

    def __init__(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="tuya-gateway-loop", daemon=True)
        self._started = False

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def start(self) -> None:
        if not self._started:
            self._thread.start()
            self._started = True

    def stop(self, timeout_s: float = 5.0) -> None:
        if not self._started:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=timeout_s)
        self._started = False

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def run(self, coro, timeout_s: float | None = None) -> Any:
        fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return fut.result(timeout=timeout_s)
        except FuturesTimeoutError as e:
            # concurrent.futures.TimeoutError has an empty message; callers return it as text.
            fut.cancel()
            raise GatewayError(f"Timeout waiting for device operation (timeout={timeout_s}s)") from e


def _ctx(**kvs: Any) -> str:
    return "[" + ", ".join(f"{k}: {v}" for k, v in kvs.items() if v is not None) + "]"


class TuyaGateway:
    """
    Sync facade for the Flask request handlers.

    All device state lives on one asyncio loop thread; request threads only
    submit coroutines to it and wait for their result.
    """

    def __init__(
        self,
        config: dict[str, Any],
        transport_factory: Optional[TransportFactory] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._config = config
        self._command_timeout_s = float(config.get("command_timeout_s") or 30.0)

        self._loop_thread = AsyncLoopThread()
        self._loop_thread.start()

        self.fhem_client: FhemClient | None = None
        if notifier is None:
            fhem = config.get("fhem") or {}
            self.fhem_client = FhemClient(
                fhem.get("url") or "",
                fhem.get("username") or "",
                fhem.get("password") or "",
                timeout_s=float(fhem.get("timeout_s") or 5.0),
            )
            notifier = FhemNotifier(self.fhem_client, self._loop_thread.loop)
        self.notifier = notifier

        self._transport_factory = transport_factory
        self._transport_path = str((config.get("transport") or {}).get("factory") or "")

        definitions = []
        for row in config.get("devices") or []:
            if isinstance(row, dict) and row.get("name"):
                definitions.append(DeviceDefinition.from_dict(row))
        self.registry = DeviceRegistry(definitions)

        self.controller = DeviceController(
            self.registry,
            self.notifier,
            self._make_handle,
            retry_interval_s=float(config.get("reconnect_interval_s") or 10.0),
        )
        self.master_name: str | None = None

    @property
    def loop_thread(self) -> AsyncLoopThread:
        return self._loop_thread

    def _make_handle(self, options: dict[str, str], listener: DeviceListener) -> DeviceHandle:
        if self._transport_factory is None:
            try:
                self._transport_factory = load_transport_factory(self._transport_path)
            except RuntimeError as e:
                raise GatewayError(str(e)) from e
        return self._transport_factory(options, listener)

    # ---------- commands ----------

    def handle_command(
        self,
        dev: Optional[str],
        cmd: Optional[str],
        prop: Optional[str] = None,
        arg: Optional[str] = None,
    ) -> str:
        """Run one FHEM command and return the plain-text response."""
        try:
            result = self._loop_thread.run(
                self._dispatch_async(dev or None, cmd or None, prop or None, arg),
                timeout_s=self._timeout_for(dev, cmd, prop),
            )
        except InvalidRequest as e:
            message = f"Invalid request: {e}"
            logger.error("%s", message)
            return message
        except GatewayError as e:
            return str(e)

        return SUCCESS_RESPONSE if result is None else str(result)

    def _timeout_for(self, dev: Optional[str], cmd: Optional[str], prop: Optional[str]) -> float:
        timeout = self._command_timeout_s
        if cmd == "set" and prop == "percentage" and dev:
            definition = self.registry.definition(dev)
            if definition is not None:
                travel_ms = max(float(definition.full_close_time_ms or 0), float(definition.full_open_time_ms or 0))
                timeout += travel_ms / 1000.0
        return timeout

    async def _dispatch_async(
        self, dev: Optional[str], cmd: Optional[str], prop: Optional[str], arg: Optional[str]
    ) -> Any:
        if not cmd:
            raise InvalidRequest("No command specified.")

        if not dev:
            if cmd == "test":
                return None
            raise InvalidRequest(f"Unknown server command: {cmd}")

        if cmd == "define":
            self._define(dev, arg)
            return None

        if cmd == "delete":
            # FHEM calls UndefFn before DeleteFn, so the device normally has no session here.
            if self.registry.definition(dev) is None:
                raise InvalidRequest(f"{_ctx(cmd=cmd)}: Unknown device '{dev}'.")
            self.controller.delete(dev)
            return None

        session = self.registry.session(dev)
        if session is None:
            raise InvalidRequest(f"{_ctx(cmd=cmd)}: Unknown device '{dev}'.")

        if cmd == "connect":
            await self.controller.connect(dev)
            return None
        if cmd == "rename":
            if not arg:
                raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev)}: 'arg' not specified.")
            self.controller.rename(dev, arg)
            return None
        if cmd == "undef":
            await self.controller.undefine(dev)
            return None

        if cmd in ("get", "set"):
            return await self._get_or_set(dev, cmd, prop, arg)

        if cmd == "calibrate":
            if session.definition.type != BLIND_TYPE:
                raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev)}: Command is valid for blind device only.")
            await self.controller.begin_calibration(dev)
            return None

        raise InvalidRequest(f"'{cmd}' is not a valid command for device {dev}.")

    def _define(self, dev: str, arg: Optional[str]) -> None:
        cmd = "define"
        if not arg:
            raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev)}: 'arg' not specified.")

        args = [a.strip() for a in arg.split(",")]
        if len(args) < 4 or len(args) % 2 != 0 or args[1] not in ADDRESS_KINDS:
            raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev, arg=arg)}: 'arg' is malformed.")

        if self.registry.session(dev) is not None:
            raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev, arg=arg)}: Device already defined.")

        type_, address_kind, address_value, key = args[:4]

        prop_names: dict[int, str] = {}
        for i in range(4, len(args), 2):
            raw_idx, prop_name = args[i], args[i + 1]
            try:
                prop_names[int(raw_idx)] = prop_name
            except ValueError:
                raise InvalidRequest(
                    f"{_ctx(cmd=cmd, dev=dev, arg=arg)}: '{raw_idx}' is not a valid index for property {prop_name}."
                ) from None

        self.controller.define(dev, type_, address_kind, address_value, key, prop_names)

    async def _get_or_set(self, dev: str, cmd: str, prop: Optional[str], arg: Optional[str]) -> Any:
        if not prop:
            raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev)}: 'prop' not specified.")
        if cmd == "set" and not arg:
            raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev, prop=prop)}: 'arg' not specified.")

        session = self.registry.session(dev)
        if session is None:
            raise NotFound(f"Unknown device '{dev}'.")

        try:
            index = int(prop)
        except ValueError:
            index = None

        if index is not None:
            if index not in session.prop_name_from_idx:
                raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev)}: '{prop}' is not a valid property index.")

            if cmd == "get":
                value = await self.controller.get_prop(dev, index)
                if value is True:
                    return "on"
                if value is False:
                    return "off"
                return value

            if arg == "toggle":
                await self.controller.toggle_prop(dev, index)
                return None
            new_value: Any = {"on": True, "off": False}.get(str(arg), arg)
            await self.controller.set_prop(dev, index, new_value)
            return None

        # Server-provided properties
        if prop == "percentage":
            if session.definition.type != BLIND_TYPE:
                raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev, prop=prop)}: Property is valid for blind device only.")
            if cmd == "get":
                return self.controller.get_percentage(dev)
            try:
                target = float(str(arg))
            except ValueError:
                target = -1.0
            if not 0.0 <= target <= 100.0:
                raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev, prop=prop)}: '{arg}' is not a valid percentage.")
            await self.controller.set_percentage(dev, target)
            return None

        raise InvalidRequest(f"{_ctx(cmd=cmd, dev=dev)}: Unknown property '{prop}'.")

    # ---------- FHEM master ----------

    def resolve_master_name(self) -> str | None:
        if self.fhem_client is None:
            return None
        try:
            name = self._loop_thread.run(self.fhem_client.exec_perl_code(MASTER_NAME_PERL), timeout_s=15.0)
        except (FhemError, GatewayError) as e:
            logger.error("Cannot determine TuyaMaster name: %s", e)
            return None
        name = str(name or "").strip()
        self.master_name = name or None
        logger.info("TuyaMaster is %s.", self.master_name)
        return self.master_name

    def notify_master(self, event: str, *args: Any, wait: bool = False) -> None:
        if not self.master_name:
            return
        if wait and isinstance(self.notifier, FhemNotifier):
            self._loop_thread.run(self.notifier.call(self.master_name, event, *args), timeout_s=15.0)
            return
        self.notifier.notify(self.master_name, event, *args)

    # ---------- lifecycle ----------

    def persisted_config(self) -> dict[str, Any]:
        out = dict(self._config)
        out["devices"] = [d.to_dict() for d in self.registry.definitions()]
        return out

    def shutdown(self) -> None:
        try:
            self._loop_thread.run(self.controller.shutdown(), timeout_s=self._command_timeout_s)
        except GatewayError as e:
            logger.error("Error while disconnecting devices: %s", e)

    def close(self) -> None:
        self._loop_thread.stop()
