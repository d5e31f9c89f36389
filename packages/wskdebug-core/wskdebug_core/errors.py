"""Error taxonomy for a debug session.

Every error carries an optional ``phase`` naming the lifecycle step that
failed (``backup``, ``install``, ``provision``, ``poll`` ...).  The
orchestrator fills it in as errors pass through, so the CLI can report
*where* a session broke, not just *what* broke.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""

    def __init__(self, message: str, *, phase: str | None = None) -> None:
        super().__init__(message)
        self.phase = phase


class ConfigurationError(BridgeError):
    """API host or credential missing / unreadable."""


class RemoteStateError(BridgeError):
    """The action (or its backup) is missing or the platform is unreachable."""


class InstallConflictError(BridgeError):
    """Another session already owns the action (marker annotation present)."""


class RestoreConflictError(BridgeError):
    """No backup was found when restoring."""


class ChannelError(BridgeError):
    """Unexpected transport or protocol response in the activation channel."""


class ExecutionError(BridgeError):
    """User code failed inside the local runtime.

    Never raised out of the poll loop: failed executions are reported back
    to the platform as the activation's error result.
    """


class UnsupportedLayoutError(BridgeError):
    """The entry file cannot be located relative to the source path."""


class UnsupportedRuntimeError(BridgeError):
    """No runtime strategy exists for the action kind."""


class SessionStateError(BridgeError):
    """Operation is not legal in the current session state."""
