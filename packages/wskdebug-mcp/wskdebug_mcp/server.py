"""
MCP server that exposes action debug sessions as tools.

Thin layer on top of ``wskdebug_core.debugger.Debugger``: an agent can start
forwarding an action to a local container, check on it, and stop it (which
restores the deployed action).

Run::

    python -m wskdebug_mcp.server          # stdio transport
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import mcp.server.stdio
from mcp import types
from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from wskdebug_core.config import BridgeOptions, PlatformConfig
from wskdebug_core.container import DockerEngine
from wskdebug_core.debugger import Debugger, SessionContext
from wskdebug_core.errors import BridgeError
from wskdebug_core.formatters import format_error, format_ready, format_status
from wskdebug_core.openwhisk_client import OpenWhiskClient
from wskdebug_core.protocol import PlatformClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------

DebuggerFactory = Callable[[BridgeOptions], Awaitable[tuple[Debugger, PlatformClient]]]


async def _default_factory(options: BridgeOptions) -> tuple[Debugger, PlatformClient]:
    config = PlatformConfig.load()
    client = OpenWhiskClient(config)
    ctx = SessionContext.create(options, client, DockerEngine(), config.namespace)
    return Debugger(ctx), client


class BridgeSessions:
    """Live sessions of this server process, keyed by action name."""

    def __init__(self, factory: DebuggerFactory = _default_factory) -> None:
        self._factory = factory
        self.sessions: dict[str, tuple[Debugger, PlatformClient]] = {}

    async def start(self, options: BridgeOptions) -> str:
        existing = self.sessions.get(options.action)
        if existing and existing[0].state.value in ("starting", "running"):
            return f"Error: {options.action} is already being debugged."
        if existing:
            # The previous session ended on its own; finish its teardown.
            del self.sessions[options.action]
            await existing[0].stop()
            await _close(existing[1])

        try:
            dbg, client = await self._factory(options)
        except BridgeError as exc:
            return f"Error: {format_error(exc)}"

        try:
            await dbg.start()
        except BridgeError as exc:
            await _close(client)
            return f"Error: {format_error(exc)}"

        dbg.run()
        self.sessions[options.action] = (dbg, client)
        return format_ready(dbg.status())

    def status(self, action: str | None = None) -> str:
        if not self.sessions:
            return "No debug sessions."
        names = [action] if action else sorted(self.sessions)
        blocks = []
        for name in names:
            entry = self.sessions.get(name)
            if entry is None:
                blocks.append(f"Error: no session for {name}.")
                continue
            blocks.append(format_status(entry[0].status()))
        return "\n\n".join(blocks)

    async def stop(self, action: str) -> str:
        entry = self.sessions.pop(action, None)
        if entry is None:
            return f"Error: no session for {action}."
        dbg, client = entry
        await dbg.stop()
        await _close(client)
        text = f"Debug session for {dbg.ref} ended; action restored."
        if dbg.restore_warning:
            text = f"Debug session for {dbg.ref} ended.\nWARNING: {dbg.restore_warning}"
        if dbg.error is not None:
            text += f"\nSession error: {format_error(dbg.error)}"
        return text

    async def stop_all(self) -> None:
        for action in list(self.sessions):
            await self.stop(action)


async def _close(client: PlatformClient) -> None:
    close = getattr(client, "close", None)
    if close is not None:
        await close()


# ---------------------------------------------------------------------------
# Tool strategies -- one per tool
# ---------------------------------------------------------------------------

ToolStrategy = Callable[[BridgeSessions, dict[str, Any]], Awaitable[str]]


async def _start(sessions: BridgeSessions, args: dict[str, Any]) -> str:
    options = BridgeOptions(
        action=args["action"],
        source_path=args.get("source"),
        source_root=args.get("root"),
        port=args.get("port"),
        force=bool(args.get("force", False)),
        invoke_params=args.get("invoke_params"),
        invoke_action=args.get("invoke_action"),
        restart_on_change=bool(args.get("restart_on_change", False)),
        condition=args.get("condition"),
        on_build=args.get("on_build"),
        build_path=args.get("build_path"),
    )
    return await sessions.start(options)


async def _status(sessions: BridgeSessions, args: dict[str, Any]) -> str:
    return sessions.status(args.get("action"))


async def _stop(sessions: BridgeSessions, args: dict[str, Any]) -> str:
    return await sessions.stop(args["action"])


# ---------------------------------------------------------------------------
# Registry: tool name -> (Tool schema, strategy)
# ---------------------------------------------------------------------------

_ACTION_PROPERTY = {
    "type": "string",
    "description": "Action name, e.g. myaction or /namespace/package/myaction.",
}

TOOL_REGISTRY: dict[str, tuple[types.Tool, ToolStrategy]] = {
    "bridge_start": (
        types.Tool(
            name="bridge_start",
            description=(
                "Start forwarding an action's activations to a local docker "
                "container.  Installs a polling agent in place of the action "
                "(the original is backed up) and returns the debugger port."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "action": _ACTION_PROPERTY,
                    "source": {
                        "type": "string",
                        "description": "Local source file or directory to run instead of the deployed code.",
                    },
                    "root": {
                        "type": "string",
                        "description": "Directory the source path is relative to.",
                    },
                    "port": {
                        "type": "integer",
                        "description": "Local debugger port.",
                    },
                    "force": {
                        "type": "boolean",
                        "description": "Take over an action another session is debugging.",
                    },
                    "invoke_params": {
                        "type": "object",
                        "description": "Invoke the action with these parameters when sources change.",
                    },
                    "invoke_action": {
                        "type": "string",
                        "description": "Invoke this action instead when sources change.",
                    },
                    "restart_on_change": {
                        "type": "boolean",
                        "description": "Restart the local container when sources change.",
                    },
                    "condition": {
                        "type": "string",
                        "description": "Only forward activations whose params satisfy this JS expression.",
                    },
                    "on_build": {
                        "type": "string",
                        "description": "Shell command that builds the sources, run at start and on every change.",
                    },
                    "build_path": {
                        "type": "string",
                        "description": "Build output to run instead of the source path.",
                    },
                },
                "required": ["action"],
            },
        ),
        _start,
    ),
    "bridge_status": (
        types.Tool(
            name="bridge_status",
            description="Show the state of one or all debug sessions.",
            inputSchema={
                "type": "object",
                "properties": {"action": _ACTION_PROPERTY},
            },
        ),
        _status,
    ),
    "bridge_stop": (
        types.Tool(
            name="bridge_stop",
            description="Stop a debug session and restore the deployed action.",
            inputSchema={
                "type": "object",
                "properties": {"action": _ACTION_PROPERTY},
                "required": ["action"],
            },
        ),
        _stop,
    ),
}


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


def build_server(sessions: BridgeSessions) -> Server:
    server = Server("wskdebug-mcp")

    @server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        return [schema for schema, _ in TOOL_REGISTRY.values()]

    @server.call_tool()
    async def handle_call_tool(
        name: str, arguments: dict[str, Any]
    ) -> list[types.TextContent]:
        entry = TOOL_REGISTRY.get(name)
        if entry is None:
            return [types.TextContent(type="text", text=f"Unknown tool: {name}")]

        _schema, strategy = entry
        text = await strategy(sessions, arguments or {})
        return [types.TextContent(type="text", text=text)]

    return server


async def run() -> None:
    sessions = BridgeSessions()
    server = build_server(sessions)
    try:
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name="wskdebug-mcp",
                    server_version="0.1.0",
                    capabilities=server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                ),
            )
    finally:
        # Never leave an agent installed when the server goes away.
        await sessions.stop_all()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
