"""Tests for device definitions and the session map."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from device_registry import DeviceDefinition, DeviceRegistry
from gateway_errors import GatewayError, InvariantViolation, NotFound


def _factory():
    return MagicMock(side_effect=lambda definition: MagicMock(name=f"handle:{definition.name}"))


def test_define_creates_definition_and_session(registry: DeviceRegistry) -> None:
    session = registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {1: "power"}, _factory())

    assert session.name == "lamp1"
    assert session.prop_name(1) == "power"
    assert session.prop_name(7) == "7"
    assert [d.name for d in registry.definitions()] == ["lamp1"]
    assert registry.session("lamp1") is session


def test_define_twice_is_rejected(registry: DeviceRegistry) -> None:
    registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {}, _factory())
    with pytest.raises(InvariantViolation):
        registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {}, _factory())


def test_redefine_after_undefine_reuses_record(registry: DeviceRegistry) -> None:
    registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {}, _factory())
    definition = registry.undefine("lamp1")
    definition.default_prop_last_value = True

    registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {}, _factory())

    assert registry.definitions() == [definition]
    assert registry.definition("lamp1").default_prop_last_value is True


def test_define_updates_changed_fields(registry: DeviceRegistry) -> None:
    registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {}, _factory())
    registry.undefine("lamp1")

    registry.define("lamp1", "blind", "id", "abc123", "k2", {}, _factory())

    d = registry.definition("lamp1")
    assert d.type == "blind"
    assert d.options == {"id": "abc123", "key": "k2"}
    assert d.address_kind == "id"


def test_define_renames_matching_inactive_definition() -> None:
    old = DeviceDefinition(name="old", type="blind", options={"ip": "10.0.0.9", "key": "k"})
    registry = DeviceRegistry([old])

    registry.define("new", "blind", "ip", "10.0.0.9", "k", {}, _factory())

    assert old.name == "new"
    assert registry.definitions() == [old]


def test_failed_handle_factory_leaves_no_definition(registry: DeviceRegistry) -> None:
    factory = MagicMock(side_effect=RuntimeError("no transport"))
    with pytest.raises(RuntimeError):
        registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {}, factory)

    assert registry.definitions() == []
    assert registry.session("lamp1") is None


def test_failed_handle_factory_keeps_old_name() -> None:
    old = DeviceDefinition(name="old", type="switch", options={"ip": "1.2.3.4", "key": "k"})
    registry = DeviceRegistry([old])
    factory = MagicMock(side_effect=GatewayError("No device transport configured."))

    with pytest.raises(GatewayError):
        registry.define("new", "switch", "ip", "1.2.3.4", "k", {}, factory)

    assert [d.name for d in registry.definitions()] == ["old"]
    assert registry.session("new") is None


def test_failed_handle_factory_keeps_old_settings() -> None:
    lamp = DeviceDefinition(name="lamp1", type="switch", options={"ip": "1.2.3.4", "key": "k"})
    registry = DeviceRegistry([lamp])
    factory = MagicMock(side_effect=GatewayError("No device transport configured."))

    with pytest.raises(GatewayError):
        registry.define("lamp1", "blind", "id", "abc", "k2", {}, factory)

    assert lamp.type == "switch"
    assert lamp.options == {"ip": "1.2.3.4", "key": "k"}


def test_is_live_requires_same_definition_and_handle(registry: DeviceRegistry) -> None:
    session = registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {}, _factory())

    assert registry.is_live(session.definition, session.handle)
    assert not registry.is_live(session.definition, MagicMock())

    registry.undefine("lamp1")
    assert not registry.is_live(session.definition, session.handle)


def test_undefine_unknown_raises(registry: DeviceRegistry) -> None:
    with pytest.raises(NotFound):
        registry.undefine("ghost")


def test_delete_requires_undefine_first(registry: DeviceRegistry) -> None:
    registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {}, _factory())
    with pytest.raises(InvariantViolation):
        registry.delete("lamp1")

    registry.undefine("lamp1")
    registry.delete("lamp1")
    assert registry.definitions() == []

    with pytest.raises(NotFound):
        registry.delete("lamp1")


def test_rename_moves_session(registry: DeviceRegistry) -> None:
    session = registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {}, _factory())

    registry.rename("lamp1", "lamp2")

    assert registry.session("lamp1") is None
    assert registry.session("lamp2") is session
    assert session.definition.name == "lamp2"


def test_rename_to_taken_name_is_rejected(registry: DeviceRegistry) -> None:
    registry.define("lamp1", "switch", "ip", "10.0.0.5", "k1", {}, _factory())
    registry.define("lamp2", "switch", "ip", "10.0.0.6", "k2", {}, _factory())

    with pytest.raises(InvariantViolation):
        registry.rename("lamp1", "lamp2")
    with pytest.raises(NotFound):
        registry.rename("ghost", "lamp3")


def test_definition_dict_roundtrip_keeps_blind_state() -> None:
    d = DeviceDefinition(
        name="blind1",
        type="blind",
        options={"id": "abc", "key": "k"},
        default_prop_last_value="stop",
        full_close_time_ms=3000,
        full_open_time_ms=2000,
        percentage=40.0,
    )

    row = d.to_dict()
    assert "default_prop_last_change_ms" not in row
    assert DeviceDefinition.from_dict(row) == d
