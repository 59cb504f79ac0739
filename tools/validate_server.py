r"""Validate a running tuya-fhem-bridge (best-effort).

Usage:
    python tools/validate_server.py
    python tools/validate_server.py --base-url http://localhost:3001 --dev blind1 \
        --define "blind,id,0123456789abcdef,0123456789abcdef,1,state" --prop percentage

Without --dev only the server 'test' command is sent. With --dev the script
optionally defines the device, connects to it and reads one property, then
undefines it again unless --keep is given.
"""

from __future__ import annotations

import argparse
import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Optional

SUCCESS = "succ"


def _http_get_text(base_url: str, params: dict, timeout_s: float) -> str:
    query = urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
    url = base_url.rstrip("/") + "/?" + query
    req = urllib.request.Request(url, method="GET")
    with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
        return resp.read().decode("utf-8", errors="replace")


def _cmd(base_url: str, timeout_s: float, cmd: str, dev: Optional[str] = None, prop: Optional[str] = None, arg: Optional[str] = None) -> str:
    try:
        return _http_get_text(base_url, {"dev": dev, "cmd": cmd, "prop": prop, "arg": arg}, timeout_s=timeout_s)
    except urllib.error.HTTPError as e:
        raw = e.read()
        raise RuntimeError(f"HTTP {e.code} for cmd={cmd}: {raw.decode('utf-8', errors='replace')}") from e


def _j(obj) -> str:
    return json.dumps(obj, indent=2)


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--base-url", default="http://localhost:3001")
    ap.add_argument("--timeout-s", type=float, default=45.0)
    ap.add_argument("--dev", default=None, help="FHEM device name to exercise.")
    ap.add_argument("--define", default=None, help="'type,ip|id,address,key[,index,name]...' to define --dev first.")
    ap.add_argument("--prop", default="1", help="Property index or 'percentage' to read.")
    ap.add_argument("--keep", action="store_true", help="Do not undefine the device afterwards.")
    args = ap.parse_args()

    base_url = str(args.base_url)
    timeout_s = float(args.timeout_s)
    results = {}

    try:
        results["test"] = _cmd(base_url, timeout_s, "test")
    except (OSError, RuntimeError) as e:
        print(f"Server not reachable at {base_url}: {e!r}")
        return 2
    if results["test"] != SUCCESS:
        print("Unexpected response to 'test':")
        print(_j(results))
        return 2

    if not args.dev:
        print(_j(results))
        return 0

    dev = str(args.dev)
    ok = True
    defined = False
    try:
        if args.define:
            results["define"] = _cmd(base_url, timeout_s, "define", dev=dev, arg=str(args.define))
            defined = results["define"] == SUCCESS
            ok = defined

        if ok:
            results["connect"] = _cmd(base_url, timeout_s, "connect", dev=dev)
            ok = results["connect"] == SUCCESS

        if ok:
            value = _cmd(base_url, timeout_s, "get", dev=dev, prop=str(args.prop))
            results[f"get {args.prop}"] = value
            ok = not value.startswith("Invalid request") and not value.startswith("Failed")
    except RuntimeError as e:
        results["error"] = repr(e)
        ok = False
    finally:
        if defined and not args.keep:
            try:
                results["undef"] = _cmd(base_url, timeout_s, "undef", dev=dev)
            except RuntimeError as e:
                results["undef"] = repr(e)

    print(_j(results))
    return 0 if ok else 2


if __name__ == "__main__":
    raise SystemExit(main())
