"""Tests for the FHEMWEB client and notifier."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from fhem_client import FhemClient, FhemError, FhemNotifier, _to_number

_TOKEN = "X-FHEM-csrfToken"


def test_invalid_url_is_rejected() -> None:
    with pytest.raises(ValueError):
        FhemClient("localhost:8083")


def test_url_defaults_to_fhem_path() -> None:
    assert FhemClient("http://fhem.local:8083").url == "http://fhem.local:8083/fhem"


@pytest.mark.parametrize(
    ("text", "expected"),
    [("42", 42), ("-3.5", -3.5), ("abc", "abc"), ("1.2.3", "1.2.3"), ("", "")],
)
def test_to_number(text: str, expected) -> None:
    assert _to_number(text) == expected


def test_build_call_fn_code_with_dev_hash() -> None:
    code = FhemClient.build_call_fn_code("lamp1", "OnPropChanged", True, "power", 1)
    assert "my @ret = CallFn('lamp1','OnPropChanged',$defs{lamp1},'power',1);;" in code
    assert code.startswith("use Scalar::Util 'looks_like_number';;")


def test_build_call_fn_code_without_args() -> None:
    code = FhemClient.build_call_fn_code("tuyaMaster", "OnServerRunning", False)
    assert "CallFn('tuyaMaster','OnServerRunning')" in code


def test_build_call_fn_code_sends_booleans_as_barewords() -> None:
    code = FhemClient.build_call_fn_code("lamp1", "OnPropChanged", True, "power", True)
    assert "CallFn('lamp1','OnPropChanged',$defs{lamp1},'power',true)" in code

    code = FhemClient.build_call_fn_code("lamp1", "OnPropChanged", True, "power", False)
    assert "'power',false)" in code


def test_credentials_become_basic_auth_header() -> None:
    client = FhemClient("http://fhem.local:8083/fhem", "admin", "secret")
    assert client._headers == {"Authorization": "Basic YWRtaW46c2VjcmV0"}

    assert FhemClient("http://fhem.local:8083/fhem")._headers == {}


def test_build_call_fn_code_escapes_quotes() -> None:
    code = FhemClient.build_call_fn_code("blind1", "OnMessage", True, "it's open")
    assert "'it\\'s open'" in code


def test_decode_call_fn_result() -> None:
    decode = FhemClient.decode_call_fn_result
    assert decode("undef") is None
    assert decode(7) == 7
    assert decode('["on"]') == "on"
    assert decode('["a",1,"b",2]') == ["a", 1, "b", 2]
    assert decode('["a",1,"b",2]', returns_hash=True) == {"a": 1, "b": 2}
    with pytest.raises(FhemError):
        decode('["a",1,"b"]', returns_hash=True)
    with pytest.raises(FhemError):
        decode("<html>")


@pytest.mark.asyncio
async def test_exec_cmd_uses_csrf_token() -> None:
    client = FhemClient("http://fhem.local:8083/fhem")
    responses = [(200, "", {_TOKEN: "tok1"}), (200, "\n17\n", {})]
    with patch.object(FhemClient, "_get", AsyncMock(side_effect=responses)) as get:
        assert await client.exec_cmd("{ 10+7 }") == 17

    assert get.await_args_list[1].args[0] == {"XHR": "1", "cmd": "{ 10+7 }", "fwcsrf": "tok1"}


@pytest.mark.asyncio
async def test_exec_cmd_refreshes_stale_token() -> None:
    client = FhemClient("http://fhem.local:8083/fhem")
    responses = [
        (200, "", {_TOKEN: "old"}),
        (400, "", {_TOKEN: "new"}),
        (200, "done", {}),
    ]
    with patch.object(FhemClient, "_get", AsyncMock(side_effect=responses)) as get:
        assert await client.exec_cmd("set lamp1 on") == "done"

    assert get.await_args_list[2].args[0]["fwcsrf"] == "new"


@pytest.mark.asyncio
async def test_exec_cmd_wrong_credentials() -> None:
    client = FhemClient("http://fhem.local:8083/fhem", "admin", "wrong")
    with patch.object(FhemClient, "_get", AsyncMock(return_value=(401, "", {}))):
        with pytest.raises(FhemError) as exc:
            await client.exec_cmd("list")
    assert exc.value.status == 401


@pytest.mark.asyncio
async def test_call_fn_decodes_result() -> None:
    client = FhemClient("http://fhem.local:8083/fhem")
    with patch.object(FhemClient, "exec_perl_code", AsyncMock(return_value='["ok"]')) as perl:
        assert await client.call_fn("lamp1", "OnConnected") == "ok"
    assert "CallFn('lamp1','OnConnected',$defs{lamp1})" in perl.await_args.args[0]


@pytest.mark.asyncio
async def test_notifier_on_loop_schedules_call() -> None:
    client = FhemClient("http://fhem.local:8083/fhem")
    client.call_fn = AsyncMock(return_value=None)
    notifier = FhemNotifier(client, asyncio.get_running_loop())

    notifier.notify("lamp1", "OnPropChanged", "power", True)
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    client.call_fn.assert_awaited_once_with("lamp1", "OnPropChanged", True, False, "power", True)


@pytest.mark.asyncio
async def test_notifier_logs_fhem_errors(caplog) -> None:
    client = FhemClient("http://fhem.local:8083/fhem")
    client.call_fn = AsyncMock(side_effect=FhemError("down"))
    notifier = FhemNotifier(client, asyncio.get_running_loop())

    assert await notifier._call("lamp1", "OnError") is None
    assert "Failed to notify lamp1 of OnError" in caplog.text
