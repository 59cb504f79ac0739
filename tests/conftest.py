"""Shared fixtures: an in-memory device transport and a recording notifier."""

from __future__ import annotations

import os
import sys
from typing import Any, Mapping, Optional

import pytest

_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _ROOT not in sys.path:
    sys.path.insert(0, _ROOT)

from device_registry import DeviceRegistry  # noqa: E402
from device_transport import DeviceHandle  # noqa: E402
from tuya_controller import DeviceController  # noqa: E402


class FakeHandle(DeviceHandle):
    """Device that answers every set with a one-entry snapshot of the new value."""

    def __init__(self, options: dict[str, str], listener: Any) -> None:
        self.options = options
        self.listener = listener
        self.connected = False
        self.found = True
        self.connect_ok = True
        self.find_error: Optional[BaseException] = None
        self.values: dict[int, Any] = {}
        self.set_calls: list[tuple[int, Any]] = []
        # index -> value the device reports back instead of the requested one
        self.override_response: dict[int, Any] = {}
        self.find_calls = 0
        self.connect_calls = 0
        self.disconnect_calls = 0

    async def find(self) -> bool:
        self.find_calls += 1
        if self.find_error is not None:
            raise self.find_error
        return self.found

    async def connect(self) -> bool:
        self.connect_calls += 1
        self.connected = bool(self.connect_ok)
        return self.connected

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def get(self, index: int) -> Any:
        return self.values.get(index)

    async def set(self, index: int, value: Any) -> Mapping[Any, Any]:
        self.set_calls.append((index, value))
        current = self.override_response.get(index, value)
        self.values[index] = current
        return {str(index): current}


class FakeTransport:
    """Transport factory that remembers every handle it created."""

    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []

    def __call__(self, options: dict[str, str], listener: Any) -> FakeHandle:
        handle = FakeHandle(options, listener)
        self.handles.append(handle)
        return handle

    @property
    def last(self) -> FakeHandle:
        return self.handles[-1]


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []

    def notify(self, device_name: str, event: str, *args: Any) -> None:
        self.calls.append((device_name, event, *args))

    def events(self, event: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[1] == event]


class FakeClock:
    def __init__(self, start_ms: float = 1_000_000.0) -> None:
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> float:
        self.now_ms += ms
        return self.now_ms


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry()


@pytest.fixture
def controller(registry, notifier, transport, clock) -> DeviceController:
    return DeviceController(registry, notifier, transport, retry_interval_s=0.01, clock=clock)
