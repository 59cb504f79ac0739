# tuya_controller.py

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Mapping, Optional, Protocol

from blind_calibration import (
    BLIND_TYPE,
    DEFAULT_PROP_IDX,
    CLOSE,
    OPEN,
    STOP,
    BlindCalibrator,
    plan_move,
    update_percentage,
)
from device_registry import DeviceDefinition, DeviceRegistry, DeviceSession
from device_transport import DeviceHandle, TransportFactory
from gateway_errors import (
    CommandRejected,
    ConnectFailed,
    DeviceNotFound,
    GatewayError,
    InvalidRequest,
    NotCalibrated,
    NotFound,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL_S = 10.0


class Notifier(Protocol):
    def notify(self, device_name: str, event: str, *args: Any) -> None: ...


def _now_ms() -> float:
    return time.time() * 1000.0


class _DeviceEvents:
    """Listener handed to the transport; binds events to one definition and one handle."""

    def __init__(self, controller: "DeviceController", definition: DeviceDefinition) -> None:
        self._controller = controller
        self._definition = definition
        self.handle: DeviceHandle | None = None

    def on_error(self, error: BaseException) -> None:
        self._controller.on_device_error(self._definition, self.handle, error)

    def on_connected(self) -> None:
        self._controller.on_device_connected(self._definition, self.handle)

    def on_disconnected(self) -> None:
        self._controller.on_device_disconnected(self._definition, self.handle)

    def on_data(self, dps: Mapping[Any, Any], timestamp_ms: Optional[float] = None) -> None:
        self._controller.on_device_data(self._definition, self.handle, dps, timestamp_ms)


class DeviceController:
    """
    Connection management, property access and the device event pipeline.

    Every method runs on the gateway event loop. Nothing here awaits while a
    registry or calibration update is half done, so the loop's one-flow-at-a-time
    scheduling is all the mutual exclusion the shared state needs.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        notifier: Notifier,
        transport_factory: TransportFactory,
        calibrator: BlindCalibrator | None = None,
        retry_interval_s: float = DEFAULT_RETRY_INTERVAL_S,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.registry = registry
        self.notifier = notifier
        self.calibrator = calibrator or BlindCalibrator()
        self._transport_factory = transport_factory
        self._retry_interval_s = float(retry_interval_s)
        self._clock = clock

    # ---------- lookup ----------

    def _session(self, name: str) -> DeviceSession:
        session = self.registry.session(name)
        if session is None:
            raise NotFound(f"Unknown device '{name}'.")
        return session

    def _connected_session(self, name: str) -> DeviceSession:
        session = self._session(name)
        if not session.handle.is_connected():
            raise InvalidRequest(f"Device {name} is currently not connected.")
        return session

    # ---------- definition lifecycle ----------

    def _create_handle(self, definition: DeviceDefinition) -> DeviceHandle:
        events = _DeviceEvents(self, definition)
        handle = self._transport_factory(dict(definition.options), events)
        events.handle = handle
        return handle

    def define(
        self,
        name: str,
        type_: str,
        address_kind: str,
        address_value: str,
        key: str,
        prop_names: dict[int, str] | None = None,
    ) -> DeviceSession:
        return self.registry.define(
            name, type_, address_kind, address_value, key, dict(prop_names or {}), self._create_handle
        )

    async def undefine(self, name: str) -> None:
        session = self._session(name)
        # Drop the session first so events raised by the disconnect are no-ops.
        self.registry.undefine(name)
        if self.calibrator.is_calibrating(session.definition):
            logger.warning("Blind calibration: %s undefined, calibration aborted.", name)
            self.calibrator.abort()
        try:
            await self._disconnect_session(session)
        except GatewayError as e:
            logger.error("%s", e)

    def delete(self, name: str) -> None:
        self.registry.delete(name)

    def rename(self, old_name: str, new_name: str) -> None:
        self.registry.rename(old_name, new_name)

    # ---------- connection management ----------

    async def connect(self, name: str) -> None:
        await self._connect_session(self._session(name))

    async def _connect_session(self, session: DeviceSession) -> None:
        name = session.name
        handle = session.handle

        logger.info("Searching for device %s...", name)
        try:
            found = await handle.find()
            find_error = None if found else "device did not answer the discovery broadcast"
        except Exception as e:
            find_error = str(e) or type(e).__name__
        if find_error is not None:
            message = (
                "Device not found. Please make sure Tuya Smart Life App is CLOSED (not just in background); "
                "you can use it again after we are connected to all devices"
            )
            logger.error("%s.\nMessage from transport: %s", message, find_error)
            raise DeviceNotFound(message + ".")

        logger.info("Connecting to device %s...", name)
        try:
            connected = await handle.connect()
            connect_error = None if connected else "transport reported no connection"
        except Exception as e:
            connect_error = str(e) or type(e).__name__
        if connect_error is not None:
            logger.error("Failed to connect: %s", connect_error)
            raise ConnectFailed("Failed to connect.")

        logger.info("Successfully connected to device %s.", name)

    async def disconnect(self, name: str) -> None:
        await self._disconnect_session(self._session(name))

    async def _disconnect_session(self, session: DeviceSession) -> None:
        name = session.name
        logger.info("Disconnecting from device %s...", name)
        if not session.handle.is_connected():
            logger.info("Device %s already disconnected.", name)
            return
        try:
            await session.handle.disconnect()
        except Exception as e:
            raise GatewayError(f"Failed to disconnect from device {name}: {e}") from e
        logger.info("Successfully disconnected from device %s.", name)

    async def reconnect(self, session: DeviceSession, retry_interval_s: float | None = None) -> None:
        """Retry connecting until it succeeds."""
        interval = self._retry_interval_s if retry_interval_s is None else float(retry_interval_s)
        while True:
            try:
                await self._connect_session(session)
                return
            except GatewayError as e:
                logger.info("Error: %s Retrying in %s secs...", e, interval)
            await asyncio.sleep(interval)

    def _ensure_reconnecting(self, session: DeviceSession) -> None:
        if session.reconnecting:
            logger.debug("Reconnect to device %s already in progress.", session.name)
            return
        session.reconnect_task = asyncio.get_running_loop().create_task(
            self.reconnect(session), name=f"reconnect:{session.name}"
        )

    def _live_session(self, definition: DeviceDefinition, handle: DeviceHandle | None) -> DeviceSession | None:
        session = self.registry.session_for(definition)
        if session is None or session.handle is not handle:
            return None
        return session

    # ---------- device events ----------

    def on_device_error(self, definition: DeviceDefinition, handle: DeviceHandle | None, error: BaseException) -> None:
        logger.error("Event from device %s: Error: %s", definition.name, error)

        self.notifier.notify(definition.name, "OnError")

        session = self._live_session(definition, handle)
        if session is None:
            logger.info("Device has been undefined, ignoring error.")
            return

        if not session.handle.is_connected():
            logger.error("Could not connect to device %s, retrying...", definition.name)
            self._ensure_reconnecting(session)

    def on_device_connected(self, definition: DeviceDefinition, handle: DeviceHandle | None) -> None:
        logger.info("Event from device %s: Connected.", definition.name)
        self.notifier.notify(definition.name, "OnConnected")

    def on_device_disconnected(self, definition: DeviceDefinition, handle: DeviceHandle | None) -> None:
        session = self._live_session(definition, handle)
        if session is None:
            return

        logger.warning("Event from device %s: Disconnected, trying to reconnect...", definition.name)
        self.notifier.notify(definition.name, "OnDisconnected")
        self._ensure_reconnecting(session)

    def on_device_data(
        self,
        definition: DeviceDefinition,
        handle: DeviceHandle | None,
        dps: Mapping[Any, Any],
        timestamp_ms: Optional[float] = None,
    ) -> None:
        logger.debug("Event from device %s: Data: %s", definition.name, dict(dps or {}))

        session = self._live_session(definition, handle)
        if session is None:
            return

        # A property change from outside arrives as a one-entry snapshot. A set
        # issued by us additionally produces a snapshot of all properties with
        # their values from before the change; those are dropped.
        if not dps or len(dps) != 1:
            return

        raw_index, value = next(iter(dps.items()))
        try:
            index = int(raw_index)
        except (TypeError, ValueError):
            logger.warning("Device %s: Ignoring data for non-numeric property %r.", definition.name, raw_index)
            return
        prop_name = session.prop_name(index)

        if not self.calibrator.is_calibrating(definition):
            logger.debug("Device %s: Property %s has changed its value to %s", definition.name, prop_name, value)

        self.notifier.notify(definition.name, "OnPropChanged", prop_name, value)

        if index != DEFAULT_PROP_IDX:
            return

        now_ms = float(timestamp_ms) if timestamp_ms is not None else self._clock()

        if definition.type == BLIND_TYPE:
            self._blind_default_prop_changed(definition, value, now_ms)

        if definition.default_prop_last_value != value:
            definition.default_prop_last_value = value
            definition.default_prop_last_change_ms = now_ms

    def _blind_default_prop_changed(self, definition: DeviceDefinition, value: Any, now_ms: float) -> None:
        if self.calibrator.is_calibrating(definition):
            step = self.calibrator.progress(definition, value, now_ms)
            self.notifier.notify(definition.name, "OnMessage", step.message)

        if value == STOP and definition.default_prop_last_value != STOP and definition.percentage is not None:
            percentage = update_percentage(definition, now_ms)
            self.notifier.notify(definition.name, "OnPropChanged", "percentage", int(percentage))

    # ---------- properties ----------

    async def get_prop(self, name: str, index: int) -> Any:
        session = self._connected_session(name)
        prop_name = session.prop_name(index)

        logger.info("Querying value of property %s of device %s...", prop_name, name)
        try:
            value = await session.handle.get(int(index))
        except Exception as e:
            message = f"Failed to get value of {prop_name}: {e}"
            logger.error("%s", message)
            raise GatewayError(message) from e

        if value is None:
            message = f"Failed to get value of {prop_name}: Device returned no value."
            logger.error("%s", message)
            raise GatewayError(message)

        logger.info("Successfully queried value of %s: %s.", prop_name, value)
        return value

    async def set_prop(self, name: str, index: int, value: Any) -> None:
        session = self._connected_session(name)
        await self._set_prop(session, int(index), value)

    async def _set_prop(self, session: DeviceSession, index: int, value: Any) -> None:
        definition = session.definition
        prop_name = session.prop_name(index)

        logger.info("Setting property %s of device %s to %s...", prop_name, definition.name, value)
        try:
            response = await session.handle.set(index, value)
        except Exception as e:
            message = f"Failed to set {prop_name} to {value}: {e}"
            logger.error("%s", message)
            raise GatewayError(message) from e

        logger.debug("Response from device %s: %s", definition.name, response)

        current = _snapshot_value(response, index)
        # A blind reversing direction stops before it moves the other way.
        reversing = (
            definition.type == BLIND_TYPE
            and index == DEFAULT_PROP_IDX
            and value != STOP
            and (
                (definition.default_prop_last_value == OPEN and value == CLOSE)
                or (definition.default_prop_last_value == CLOSE and value == OPEN)
            )
            and current == STOP
        )
        if reversing or current == value:
            logger.debug("Successfully set %s.", prop_name)
            return

        message = f"Failed to set {prop_name}: Value {value} rejected. Current value: {current}."
        logger.error("%s", message)
        raise CommandRejected(message)

    async def toggle_prop(self, name: str, index: int) -> None:
        session = self._connected_session(name)
        prop_name = session.prop_name(index)

        logger.info("Toggling property %s of device %s...", prop_name, name)
        try:
            value = await self.get_prop(name, index)
            await self._set_prop(session, int(index), not value)
        except GatewayError as e:
            message = f"Failed to toggle value of {prop_name}: {e}"
            logger.error("%s", message)
            raise GatewayError(message) from e
        logger.info("Successfully toggled value of %s.", prop_name)

    # ---------- blinds ----------

    def _blind_session(self, name: str) -> DeviceSession:
        session = self._connected_session(name)
        if session.definition.type != BLIND_TYPE:
            raise InvalidRequest(f"Device {name} is not a blind.")
        return session

    async def begin_calibration(self, name: str) -> None:
        session = self._blind_session(name)
        self.calibrator.begin(session.definition)
        try:
            await self._set_prop(session, DEFAULT_PROP_IDX, OPEN)
        except GatewayError as e:
            self.calibrator.abort()
            message = f"Blind calibration: Could not open {name}, calibration aborted. Reason: {e}"
            logger.error("%s", message)
            raise GatewayError(message) from e

    def get_percentage(self, name: str) -> int:
        session = self._blind_session(name)
        if session.definition.percentage is None:
            raise NotCalibrated(f"Blind {name} is not calibrated, please calibrate first.")
        return int(session.definition.percentage)

    async def set_percentage(self, name: str, target: float) -> None:
        session = self._blind_session(name)
        definition = session.definition
        if definition.percentage is None:
            message = f"Blind {name} is not calibrated, please calibrate first."
            logger.error("%s", message)
            raise NotCalibrated(message)

        direction, duration_ms = plan_move(definition, target)
        if duration_ms <= 0:
            logger.info("Blind %s is already at %s %%.", name, target)
            return

        logger.info("Setting blind %s to %s %%...", name, target)
        try:
            await self._set_prop(session, DEFAULT_PROP_IDX, direction)
            await asyncio.sleep(duration_ms / 1000.0)
            await self._set_prop(session, DEFAULT_PROP_IDX, STOP)
        except GatewayError as e:
            message = f"Failed to set percentage for blind {name}: {e}"
            logger.error("%s", message)
            raise GatewayError(message) from e

        actual = definition.percentage
        logger.info(
            "Successfully set percentage for blind %s. Actual value: %s %%",
            name,
            int(actual) if actual is not None else "unknown",
        )

    # ---------- shutdown ----------

    async def shutdown(self) -> None:
        """Disconnect and undefine every live device; definitions are kept for persistence."""
        for session in self.registry.sessions():
            if session.reconnect_task is not None and not session.reconnect_task.done():
                session.reconnect_task.cancel()
            try:
                await self.undefine(session.name)
            except GatewayError as e:
                logger.error("Shutdown: %s", e)
        self.calibrator.abort()


def _snapshot_value(response: Any, index: int) -> Any:
    if isinstance(response, Mapping):
        if index in response:
            return response[index]
        return response.get(str(index))
    return response
