"""Device transport interface.

The daemon never speaks the device wire protocol itself. A transport module
provides a factory ``factory(options, listener) -> DeviceHandle`` and is named
in the config as ``"package.module:attribute"``.

Contract for implementations:
- All coroutine methods run on the gateway event loop.
- Listener callbacks must be invoked on the gateway event loop too. A
  transport reading its socket on another thread hands events over with
  ``loop.call_soon_threadsafe``.
- ``on_data`` receives the raw snapshot ``{property_index: value}`` and, if the
  device reported one, a timestamp in epoch milliseconds.
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional, Protocol


class DeviceListener(Protocol):
    def on_error(self, error: BaseException) -> None: ...

    def on_connected(self) -> None: ...

    def on_disconnected(self) -> None: ...

    def on_data(self, dps: Mapping[Any, Any], timestamp_ms: Optional[float] = None) -> None: ...


class DeviceHandle(ABC):
    """One connection to one physical device."""

    @abstractmethod
    async def find(self) -> bool:
        """Discover the device on the network."""

    @abstractmethod
    async def connect(self) -> bool:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def get(self, index: int) -> Any:
        ...

    @abstractmethod
    async def set(self, index: int, value: Any) -> Mapping[Any, Any]:
        """Write a property and return the device's resulting snapshot."""


TransportFactory = Callable[[dict[str, str], DeviceListener], DeviceHandle]


def load_transport_factory(path: str) -> TransportFactory:
    """Resolve ``"module:attribute"`` (or ``"module.attribute"``) to a factory callable."""
    raw = str(path or "").strip()
    if not raw:
        raise RuntimeError(
            "No device transport configured. Set transport.factory in the config file or TUYA_TRANSPORT_FACTORY."
        )

    if ":" in raw:
        module_name, _, attr = raw.partition(":")
    else:
        module_name, _, attr = raw.rpartition(".")
    if not module_name or not attr:
        raise RuntimeError(f"Invalid transport factory path: {raw!r} (expected 'module:attribute').")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise RuntimeError(f"Cannot import transport module {module_name!r}: {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise RuntimeError(f"Transport factory {raw!r} is not callable.")
    return factory
