"""Wire protocol between the bridge and the agent stub, plus shared contracts.

The agent stub runs on the platform in place of the debugged action.  The
bridge talks to it exclusively through blocking invokes of that action:

* ``{"$waitForActivation": true}`` -- poll.  The agent answers with the next
  real invocation (``200``, result carries ``$activationId``) or with a
  ``502`` error envelope whose ``error.code`` is :data:`RETRY_CODE` (nothing
  yet, poll again) or :data:`STOP_CODE` (agent asks the bridge to exit).
* ``{"$activationId": id, ...result}`` -- completion of a forwarded
  activation.
* ``{"$stopDebugging": true}`` -- sent once on shutdown; the agent ends the
  poll it is serving with :data:`STOP_CODE` so no invocation is handed to a
  bridge that is gone.

:func:`parse_poll_response` turns one HTTP answer into a :data:`PollOutcome`
exactly once, at the transport boundary, so the channel never inspects raw
JSON.

Also defines :class:`PlatformClient` and :class:`ContainerEngine` -- the
collaborator contracts the components depend on (not concrete classes).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, Union, runtime_checkable

if TYPE_CHECKING:
    from wskdebug_core.models import Activation, ActionDefinition, ActionRef

# ---------------------------------------------------------------------------
# Wire constants (must match agent.js)
# ---------------------------------------------------------------------------

WAIT_FOR_ACTIVATION = "$waitForActivation"
ACTIVATION_ID = "$activationId"
CONDITION_PARAM = "$condition"
BACKUP_ACTION_PARAM = "$backupAction"
STOP_DEBUGGING = "$stopDebugging"

RETRY_CODE = 42
"""Agent has no pending invocation; poll again immediately."""

STOP_CODE = 43
"""Agent requests a graceful end of the debug session."""

MARKER_ANNOTATION = "wskdebug"
"""Annotation key set to ``true`` while an agent is installed."""

BACKUP_SUFFIX = "_wskdebug_original"

DEFAULT_NAMESPACE = "_"

# ---------------------------------------------------------------------------
# Timeout constants (seconds)
# ---------------------------------------------------------------------------

TIMEOUT_LAUNCH: float = 30.0
"""How long to wait for a freshly started runtime to accept ``/init``."""

TIMEOUT_REQUEST: float = 30.0
"""Default timeout for plain REST calls (get/put/delete action)."""

TIMEOUT_POLL: float = 330.0
"""Read timeout for a poll invoke; longer than the platform's own
blocking-invoke window so the server side always answers first."""

TIMEOUT_STOP_GRACE: float = 10.0
"""How long ``stop()`` waits for an in-flight execution to finish."""

TIMEOUT_CONTAINER_STOP: int = 3
"""Seconds docker gives the runtime process before killing it."""

TIMEOUT_INSPECTOR: float = 10.0
"""How long the inspector check waits for the debugger endpoint."""

COMPLETION_ATTEMPTS: int = 3
"""Attempts to post a completion before the session fails."""

WATCH_DEBOUNCE_MS: int = 500
"""Filesystem events inside this window collapse into one trigger."""

# ---------------------------------------------------------------------------
# PollOutcome tagged variant
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Retry:
    """No invocation yet."""


@dataclass(frozen=True)
class Stop:
    """Agent asked the bridge to shut down gracefully."""


@dataclass(frozen=True)
class Work:
    """A real invocation to forward."""

    activation: Activation


@dataclass(frozen=True)
class PollError:
    """Anything the protocol does not define."""

    status: int
    code: Any
    message: str


PollOutcome = Union[Retry, Work, Stop, PollError]


def _error_of(body: Any) -> dict[str, Any]:
    """Dig ``response.result.error`` (or a top-level ``error``) out of *body*."""
    if not isinstance(body, dict):
        return {}
    response = body.get("response")
    if isinstance(response, dict):
        result = response.get("result")
        if isinstance(result, dict) and isinstance(result.get("error"), dict):
            return result["error"]
    if isinstance(body.get("error"), dict):
        return body["error"]
    return {}


def parse_poll_response(status: int, body: Any) -> PollOutcome:
    """Classify one HTTP answer to a poll invoke."""
    # Imported lazily: models imports constants from this module.
    from wskdebug_core.models import Activation  # noqa: PLC0415

    if status == 200:
        response = body.get("response", {}) if isinstance(body, dict) else {}
        result = response.get("result") if isinstance(response, dict) else None
        if isinstance(result, dict) and result.get(ACTIVATION_ID):
            params = {k: v for k, v in result.items() if k != ACTIVATION_ID}
            return Work(Activation(id=str(result[ACTIVATION_ID]), params=params))
        return PollError(status, None, f"poll result without {ACTIVATION_ID}: {result!r}")

    # The platform gave up waiting on its side and turned the blocking
    # invoke into an asynchronous one; nothing arrived in that window.
    if status == 202:
        return Retry()

    error = _error_of(body)
    code = error.get("code")
    if status == 502 and code == RETRY_CODE:
        return Retry()
    if status == 502 and code == STOP_CODE:
        return Stop()

    message = error.get("error") or (body.get("error") if isinstance(body, dict) else None)
    return PollError(status, code, str(message or body))


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InvokeResponse:
    """Raw answer to an invoke: HTTP status + decoded JSON body."""

    status: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@runtime_checkable
class PlatformClient(Protocol):
    """REST surface of the serverless platform used by the bridge."""

    async def get_action(self, ref: ActionRef) -> ActionDefinition | None: ...
    async def put_action(self, ref: ActionRef, definition: ActionDefinition) -> None: ...
    async def delete_action(self, ref: ActionRef) -> None: ...
    async def invoke(
        self,
        ref: ActionRef,
        params: dict[str, Any],
        blocking: bool = True,
        timeout: float | None = None,
    ) -> InvokeResponse: ...
    async def list_runtimes(self) -> dict[str, Any]: ...


@dataclass
class ContainerHandle:
    """A running runtime container."""

    id: str
    name: str
    ports: dict[int, int]  # container port -> host port


@runtime_checkable
class ContainerEngine(Protocol):
    """Minimal container surface: start with mounts/ports, stop."""

    async def start(
        self,
        image: str,
        *,
        command: list[str],
        mounts: dict[str, str],
        ports: dict[int, int | None],
        workdir: str | None = None,
        name: str | None = None,
    ) -> ContainerHandle: ...

    async def stop(self, handle: ContainerHandle) -> None: ...
