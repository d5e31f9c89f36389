"""Plain-text rendering of session state for the CLI and the MCP server.

No ANSI codes, no nesting: the same strings go to a terminal and to an LLM.
"""

from __future__ import annotations

from typing import Any

from wskdebug_core.errors import BridgeError
from wskdebug_core.models import MountDescriptor


def format_mount(mount: MountDescriptor | None) -> str:
    if mount is None:
        return "remote action code (no local sources)"
    return (
        f"{mount.host_root} -> {mount.container_root} "
        f"({mount.layout.value}, entry {mount.entry})"
    )


def format_error(error: BridgeError | BaseException) -> str:
    """``<phase> failed: <message>`` for bridge errors, the message otherwise."""
    phase = getattr(error, "phase", None)
    if phase:
        return f"{phase} failed: {error}"
    return str(error)


def format_ready(status: dict[str, Any]) -> str:
    """Banner printed once a session is running."""
    lines = [
        f"Debugging {status['action']}",
        f"  sources:   {format_mount(status.get('mount'))}",
        f"  debugger:  localhost:{status.get('debug_port')}",
    ]
    if status.get("inspector"):
        lines.append(f"  inspector: {status['inspector']}")
    if status.get("watching"):
        lines.append("  watching sources for changes")
    lines.append("Ready, waiting for activations. Press Ctrl-C to stop and restore the action.")
    return "\n".join(lines)


def format_status(status: dict[str, Any]) -> str:
    """Multi-line summary of a session's current state."""
    lines = [
        f"action:      {status['action']}",
        f"state:       {status['state']}",
        f"sources:     {format_mount(status.get('mount'))}",
        f"debug port:  {status.get('debug_port') or '-'}",
        f"polls:       {status.get('polls', 0)}",
        f"completed:   {status.get('completed', 0)}",
    ]
    if status.get("current"):
        lines.append(f"executing:   {status['current']}")
    if status.get("watching"):
        lines.append("watcher:     active")
    if status.get("error") is not None:
        lines.append(f"error:       {format_error(status['error'])}")
    if status.get("restore_warning"):
        lines.append(f"WARNING:     {status['restore_warning']}")
    return "\n".join(lines)
