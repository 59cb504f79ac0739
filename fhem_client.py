"""Minimal FHEMWEB client and the upstream notifier built on it.

FHEMWEB executes commands passed as the ``cmd`` query parameter. ``XHR=1``
makes it return only the command's output. If the instance uses a CSRF token
(``X-FHEM-csrfToken`` response header), it must be echoed back as ``fwcsrf``.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

import aiohttp

logger = logging.getLogger(__name__)

_CSRF_HEADER = "X-FHEM-csrfToken"
_NUMBER_RE = re.compile(r"^-?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?$")


class FhemError(RuntimeError):
    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = int(status)


def _to_number(text: str) -> Any:
    s = text.strip()
    if not _NUMBER_RE.match(s):
        return text
    try:
        return int(s)
    except ValueError:
        return float(s)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return bool(_NUMBER_RE.match(str(value).strip())) if str(value).strip() else False


def _perl_arg(value: Any) -> str:
    # Booleans go out as barewords, the same as numbers.
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_number(value):
        return str(value)
    return "'" + str(value).replace("'", "\\'") + "'"


class FhemClient:
    """Executes FHEM commands via FHEMWEB (``http[s]://host:port/webname``)."""

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout_s: float = 5.0,
    ) -> None:
        parts = urlsplit(str(url or "").strip())
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"Invalid FHEMWEB URL: {url!r}")
        self._url = urlunsplit((parts.scheme, parts.netloc, parts.path or "/fhem", "", ""))
        self._headers: dict[str, str] = {}
        if username and password:
            token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
            self._headers["Authorization"] = f"Basic {token}"
        self._timeout = aiohttp.ClientTimeout(total=float(timeout_s))
        self._csrf_token: Optional[str] = None

    @property
    def url(self) -> str:
        return self._url

    async def _get(self, params: dict[str, str]) -> tuple[int, str, dict[str, str]]:
        async with aiohttp.ClientSession(timeout=self._timeout, headers=self._headers) as s:
            async with s.get(self._url, params=params, ssl=False) as r:
                text = await r.text()
                return r.status, text, {k: v for k, v in r.headers.items()}

    async def _obtain_csrf_token(self) -> str:
        try:
            status, _, headers = await self._get({"XHR": "1"})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FhemError(f"Failed to get CSRF token: {e!r}") from e

        if status == 401:
            logger.error("Failed to get CSRF token: Wrong username or password.")
            raise FhemError("Wrong username or password.", status)
        if status not in (200, 400):
            logger.error("Failed to get CSRF token: Status: %s.", status)
            raise FhemError(f"Failed to get CSRF token: HTTP {status}", status)

        token = headers.get(_CSRF_HEADER) or ""
        if token:
            logger.info("Obtained CSRF token")
        else:
            logger.info("No CSRF token received. Either this FHEMWEB doesn't use it, or it doesn't send it.")
        return token

    async def exec_cmd(self, cmd: str) -> Any:
        """Execute a FHEM command; numeric output is returned as a number."""
        logger.info("Executing FHEM command '%s'...", cmd)

        if self._csrf_token is None:
            self._csrf_token = await self._obtain_csrf_token()

        for attempt in (1, 2):
            params = {"XHR": "1", "cmd": cmd}
            if self._csrf_token:
                params["fwcsrf"] = self._csrf_token
            try:
                status, text, headers = await self._get(params)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error("Failed to execute FHEM command '%s': %r", cmd, e)
                raise FhemError(f"Failed to execute FHEM command: {e!r}") from e

            if status == 200:
                body = text.replace("\n", "", 1)
                logger.debug("Request succeeded. Response: '%s'.", body)
                return _to_number(body)

            if status == 400 and attempt == 1 and headers.get(_CSRF_HEADER):
                logger.warning("CSRF token no longer valid, updating token and reissuing request.")
                self._csrf_token = headers.get(_CSRF_HEADER)
                continue

            if status == 400:
                logger.error(
                    "Failed to execute FHEM command '%s': this FHEMWEB uses a CSRF token, but it doesn't send it.", cmd
                )
            elif status == 401:
                logger.error("Failed to execute FHEM command '%s': Wrong username or password.", cmd)
            else:
                logger.error("Failed to execute FHEM command '%s': Status: %s.", cmd, status)
            raise FhemError(f"FHEM command failed with HTTP {status}", status)

        raise FhemError("FHEM command failed: CSRF token rejected twice", 400)

    async def exec_perl_code(self, code: str) -> Any:
        return await self.exec_cmd("{ " + code + " }")

    @staticmethod
    def build_call_fn_code(name: str, function_name: str, pass_dev_hash: bool, *args: Any) -> str:
        quoted = ",".join(_perl_arg(a) for a in args)
        if pass_dev_hash:
            invocation = f"CallFn('{name}','{function_name}',$defs{{{name}}}" + (f",{quoted}" if quoted else "") + ")"
        else:
            invocation = f"CallFn('{name}','{function_name}'" + (f",{quoted}" if quoted else "") + ")"
        return (
            "use Scalar::Util 'looks_like_number';; "
            f"my @ret = {invocation};; "
            "!defined($ret[0]) ? 'undef' : "
            "'['.join(',', map(looks_like_number($_) ? $_ : '\"'.$_.'\"', @ret)).']'"
        )

    @staticmethod
    def decode_call_fn_result(raw: Any, returns_hash: bool = False) -> Any:
        if raw == "undef" or raw is None:
            return None
        if isinstance(raw, (int, float)):
            return raw
        try:
            ret = json.loads(str(raw))
        except ValueError as e:
            raise FhemError(f"Unexpected CallFn result: {str(raw)[:200]}") from e
        if not isinstance(ret, list):
            return ret
        if len(ret) == 1:
            return ret[0]
        if returns_hash:
            if len(ret) % 2:
                raise FhemError("Cannot create a dict from an odd-sized list.")
            return {ret[i]: ret[i + 1] for i in range(0, len(ret), 2)}
        return ret

    async def call_fn(
        self,
        name: str,
        function_name: str,
        pass_dev_hash: bool = True,
        returns_hash: bool = False,
        *args: Any,
    ) -> Any:
        """Call a function registered in a FHEM module hash (Perl ``CallFn``)."""
        code = self.build_call_fn_code(name, function_name, pass_dev_hash, *args)
        raw = await self.exec_perl_code(code)
        return self.decode_call_fn_result(raw, returns_hash)


class FhemNotifier:
    """Fire-and-forget ``CallFn`` notifications to FHEM TuyaDevice/TuyaMaster instances."""

    def __init__(self, client: FhemClient, loop: asyncio.AbstractEventLoop) -> None:
        self._client = client
        self._loop = loop
        self._pending: set[asyncio.Task] = set()

    def notify(self, device_name: str, event: str, *args: Any) -> None:
        coro = self._call(device_name, event, *args)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not self._loop:
            asyncio.run_coroutine_threadsafe(coro, self._loop)
            return

        # Keep a reference until done; the loop only holds weak references to tasks.
        task = self._loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _call(self, device_name: str, event: str, *args: Any) -> Any:
        try:
            return await self._client.call_fn(device_name, event, True, False, *args)
        except FhemError as e:
            logger.error("Failed to notify %s of %s: %s", device_name, event, e)
            return None

    async def call(self, device_name: str, event: str, *args: Any) -> Any:
        """Awaitable variant used where the result or completion matters (startup/shutdown)."""
        return await self._client.call_fn(device_name, event, True, False, *args)
