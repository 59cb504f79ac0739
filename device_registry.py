from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from device_transport import DeviceHandle
from gateway_errors import InvariantViolation, NotFound

logger = logging.getLogger(__name__)

ADDRESS_KINDS = ("ip", "id")

# Keys persisted in the config file's "devices" list.
_PERSISTED_FIELDS = (
    "default_prop_last_value",
    "default_prop_last_change_ms",
    "full_close_time_ms",
    "full_open_time_ms",
    "percentage",
)


@dataclass
class DeviceDefinition:
    name: str
    type: str
    # {"ip": ...} or {"id": ...}, plus "key"
    options: dict[str, str] = field(default_factory=dict)

    default_prop_last_value: Any = None
    default_prop_last_change_ms: Optional[float] = None

    # blind only
    full_close_time_ms: Optional[float] = None
    full_open_time_ms: Optional[float] = None
    percentage: Optional[float] = None

    @property
    def address_kind(self) -> Optional[str]:
        for kind in ADDRESS_KINDS:
            if self.options.get(kind):
                return kind
        return None

    @property
    def address_value(self) -> Optional[str]:
        kind = self.address_kind
        return self.options.get(kind) if kind else None

    @property
    def key(self) -> Optional[str]:
        return self.options.get("key")

    @property
    def is_calibrated(self) -> bool:
        return self.full_close_time_ms is not None and self.full_open_time_ms is not None

    def matches(self, type_: str, address_kind: str, address_value: str, key: str) -> bool:
        return self.type == type_ and self.options.get(address_kind) == address_value and self.key == key

    def describe(self) -> str:
        return f"{self.name} (type: {self.type}, {self.address_kind}: {self.address_value}, key: {self.key})"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "type": self.type, "options": dict(self.options)}
        for k in _PERSISTED_FIELDS:
            v = getattr(self, k)
            if v is not None:
                out[k] = v
        return out

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "DeviceDefinition":
        options = row.get("options") if isinstance(row.get("options"), dict) else {}
        definition = cls(
            name=str(row.get("name") or "").strip(),
            type=str(row.get("type") or "").strip(),
            options={str(k): str(v) for k, v in options.items() if v is not None},
        )
        for k in _PERSISTED_FIELDS:
            if row.get(k) is not None:
                setattr(definition, k, row.get(k))
        return definition


@dataclass
class DeviceSession:
    """A defined device with a live transport handle."""

    definition: DeviceDefinition
    handle: DeviceHandle
    prop_name_from_idx: dict[int, str] = field(default_factory=dict)
    reconnect_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.definition.name

    def prop_name(self, index: int) -> str:
        return self.prop_name_from_idx.get(int(index), str(index))

    @property
    def reconnecting(self) -> bool:
        return self.reconnect_task is not None and not self.reconnect_task.done()


HandleFactory = Callable[[DeviceDefinition], DeviceHandle]


class DeviceRegistry:
    """All known device definitions plus the name-indexed map of live sessions."""

    def __init__(self, definitions: list[DeviceDefinition] | None = None) -> None:
        self._lock = threading.Lock()
        self._definitions: list[DeviceDefinition] = list(definitions or [])
        self._sessions: dict[str, DeviceSession] = {}

    # ---------- lookup ----------

    def definitions(self) -> list[DeviceDefinition]:
        with self._lock:
            return list(self._definitions)

    def sessions(self) -> list[DeviceSession]:
        with self._lock:
            return list(self._sessions.values())

    def definition(self, name: str) -> DeviceDefinition | None:
        with self._lock:
            return self._find_definition_locked(name)

    def session(self, name: str) -> DeviceSession | None:
        with self._lock:
            return self._sessions.get(name)

    def session_for(self, definition: DeviceDefinition) -> DeviceSession | None:
        with self._lock:
            session = self._sessions.get(definition.name)
            if session is not None and session.definition is definition:
                return session
            return None

    def is_live(self, definition: DeviceDefinition, handle: DeviceHandle) -> bool:
        session = self.session_for(definition)
        return session is not None and session.handle is handle

    def _find_definition_locked(self, name: str) -> DeviceDefinition | None:
        for d in self._definitions:
            if d.name == name:
                return d
        return None

    # ---------- mutation ----------

    def define(
        self,
        name: str,
        type_: str,
        address_kind: str,
        address_value: str,
        key: str,
        prop_names: dict[int, str],
        handle_factory: HandleFactory,
    ) -> DeviceSession:
        if address_kind not in ADDRESS_KINDS:
            raise ValueError(f"address kind must be one of {ADDRESS_KINDS}, got {address_kind!r}")

        logger.info("Defining device %s of type %s with %s: %s, key: %s.", name, type_, address_kind, address_value, key)

        is_new = False
        backup: tuple[DeviceDefinition, str, str, dict[str, str]] | None = None
        with self._lock:
            if name in self._sessions:
                raise InvariantViolation(f"Device {name} is already defined.")

            definition = self._find_definition_locked(name)
            if definition is not None:
                backup = (definition, definition.name, definition.type, dict(definition.options))

            if definition is not None and definition.matches(type_, address_kind, address_value, key):
                logger.info("Define device %s: Already defined and up to date.", name)
            elif definition is not None:
                self._update_locked(definition, type_, address_kind, address_value, key)
            else:
                for candidate in self._definitions:
                    if candidate.matches(type_, address_kind, address_value, key) and candidate.name not in self._sessions:
                        logger.warning(
                            "Define device %s: Updating name: %s -> %s. Consider using 'rename' instead of editing fhem.cfg.",
                            name,
                            candidate.name,
                            name,
                        )
                        backup = (candidate, candidate.name, candidate.type, dict(candidate.options))
                        candidate.name = name
                        definition = candidate
                        break

                if definition is None:
                    definition = DeviceDefinition(name=name, type=type_, options={address_kind: address_value, "key": key})
                    is_new = True
                    logger.info(
                        "Define device %s: Created new device of type %s with %s: %s and key: %s.",
                        name,
                        type_,
                        address_kind,
                        address_value,
                        key,
                    )

        # The factory may call back into the registry (e.g. to bind a listener), so it runs unlocked.
        try:
            handle = handle_factory(definition)
        except Exception:
            if backup is not None:
                restored, old_name, old_type, old_options = backup
                with self._lock:
                    restored.name, restored.type, restored.options = old_name, old_type, old_options
                logger.warning("Define device %s failed, keeping previous record %s.", name, old_name)
            raise
        session = DeviceSession(definition=definition, handle=handle, prop_name_from_idx=dict(prop_names))

        with self._lock:
            if is_new:
                self._definitions.append(definition)
            self._sessions[definition.name] = session
        return session

    @staticmethod
    def _update_locked(
        definition: DeviceDefinition, type_: str, address_kind: str, address_value: str, key: str
    ) -> None:
        name = definition.name
        opts = definition.options

        if definition.key != key:
            logger.warning("Define device %s: Updating key: %s -> %s.", name, definition.key, key)
            opts["key"] = key

        if opts.get(address_kind) != address_value:
            other = "id" if address_kind == "ip" else "ip"
            if opts.get(address_kind):
                logger.info(
                    "Define device %s: Updating %s: %s -> %s.", name, address_kind, opts.get(address_kind), address_value
                )
            else:
                logger.info(
                    "Define device %s: Deleting %s: %s, setting %s: %s.",
                    name,
                    other,
                    opts.get(other),
                    address_kind,
                    address_value,
                )
                opts.pop(other, None)
            opts[address_kind] = address_value

        if definition.type != type_:
            logger.warning("Define device %s: Updating type: %s -> %s.", name, definition.type, type_)
            definition.type = type_

    def undefine(self, name: str) -> DeviceDefinition:
        with self._lock:
            session = self._sessions.pop(name, None)
        if session is None:
            raise NotFound(f"Unknown device '{name}'.")
        logger.info("Undefining device %s of type %s.", name, session.definition.type)
        return session.definition

    def delete(self, name: str) -> None:
        with self._lock:
            definition = self._find_definition_locked(name)
            if definition is None:
                raise NotFound(f"Unknown device '{name}'.")
            if name in self._sessions:
                raise InvariantViolation(f"Cannot delete device {name}: it is still defined. Undefine it first.")
            self._definitions.remove(definition)
        logger.info("Deleting device %s of type %s.", name, definition.type)

    def rename(self, old_name: str, new_name: str) -> None:
        with self._lock:
            definition = self._find_definition_locked(old_name)
            if definition is None:
                raise NotFound(f"Unknown device '{old_name}'.")
            if new_name != old_name and self._find_definition_locked(new_name) is not None:
                raise InvariantViolation(f"Cannot rename device {old_name}: name {new_name} is already in use.")

            logger.info("Renaming device %s of type %s to %s.", old_name, definition.type, new_name)

            session = self._sessions.pop(old_name, None)
            definition.name = new_name
            if session is not None:
                self._sessions[new_name] = session
