"""Runtime strategies for the supported action kinds.

Only the Node.js kinds ship; new languages plug in by subclassing
:class:`RuntimeKind` and adding an instance to ``_RUNTIMES``.
"""

from wskdebug_core.errors import UnsupportedRuntimeError
from wskdebug_core.runtimes.base import RuntimeKind
from wskdebug_core.runtimes.nodejs import NodeRuntime

_RUNTIMES: list[RuntimeKind] = [NodeRuntime()]


def get_runtime(kind: str) -> RuntimeKind:
    """Return the strategy for action *kind*."""
    for runtime in _RUNTIMES:
        if runtime.supports(kind):
            return runtime
    supported = ", ".join(r.name for r in _RUNTIMES)
    raise UnsupportedRuntimeError(
        f"Action kind '{kind}' is not supported. Supported kinds: {supported}"
    )


__all__ = ["NodeRuntime", "RuntimeKind", "get_runtime"]
