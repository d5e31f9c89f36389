"""Query the Node.js inspector published by the runtime container.

The inspector lists its targets at ``http://host:port/json/list``; each
target has a ``webSocketDebuggerUrl``.  We fetch the list, open the
WebSocket once and ask V8 for the runtime version, which proves a debugger
can actually attach before we tell the developer where to point it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from urllib.parse import urlsplit

import httpx
import websockets

from wskdebug_core.protocol import TIMEOUT_INSPECTOR

logger = logging.getLogger(__name__)

_RETRY_INTERVAL = 0.25


async def _list_targets(port: int, host: str) -> list[dict]:
    async with httpx.AsyncClient(timeout=2.0) as http:
        resp = await http.get(f"http://{host}:{port}/json/list")
        resp.raise_for_status()
        return resp.json()


async def _runtime_version(ws_url: str) -> str:
    async with websockets.connect(ws_url, ping_interval=None) as ws:
        await ws.send(json.dumps({
            "id": 1,
            "method": "Runtime.evaluate",
            "params": {"expression": "process.version"},
        }))
        while True:
            msg = json.loads(await ws.recv())
            if msg.get("id") == 1:
                return msg.get("result", {}).get("result", {}).get("value", "?")


async def wait_for_inspector(
    port: int,
    host: str = "127.0.0.1",
    timeout: float = TIMEOUT_INSPECTOR,
) -> str:
    """Return the inspector WebSocket URL once it answers on *port*.

    Raises :class:`asyncio.TimeoutError` if it does not come up in time.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last_error: Exception | None = None

    while loop.time() < deadline:
        try:
            targets = await _list_targets(port, host)
            if targets:
                # The container reports its own address and port; rewrite
                # to the published side.
                path = urlsplit(targets[0]["webSocketDebuggerUrl"]).path
                ws_url = f"ws://{host}:{port}{path}"
                version = await asyncio.wait_for(_runtime_version(ws_url), timeout=2.0)
                logger.info("Node %s inspector ready at %s", version, ws_url)
                return ws_url
        except (httpx.HTTPError, OSError, KeyError, ValueError,
                websockets.WebSocketException, asyncio.TimeoutError) as exc:
            last_error = exc
        await asyncio.sleep(_RETRY_INTERVAL)

    raise asyncio.TimeoutError(f"Inspector on port {port} not reachable: {last_error}")
