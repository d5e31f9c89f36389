"""Local executor: one runtime container per session, one activation at a time.

The container runs the platform's own runtime image, so activations go in
through the standard action runtime interface:

* ``POST /init`` once, with the action code (or a loader for the mounted
  sources, see :mod:`wskdebug_core.runtimes.nodejs`);
* ``POST /run`` per activation, with the parameters as ``value``.

All executions, restarts and re-provisioning go through :attr:`slot`, so user
code never runs twice at once and a restart never cuts an execution short.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from wskdebug_core.errors import BridgeError, ExecutionError
from wskdebug_core.inspector import wait_for_inspector
from wskdebug_core.models import (
    Activation,
    ActivationState,
    ActionDefinition,
    ActionRef,
    ExecutionResult,
    MountDescriptor,
)
from wskdebug_core.protocol import (
    TIMEOUT_LAUNCH,
    TIMEOUT_REQUEST,
    ContainerEngine,
    ContainerHandle,
)
from wskdebug_core.runtimes.base import RuntimeKind

logger = logging.getLogger(__name__)

_INIT_RETRY_INTERVAL = 0.25


class LocalExecutor:
    """Owns the runtime container for the length of a session."""

    def __init__(
        self,
        engine: ContainerEngine,
        runtime: RuntimeKind,
        ref: ActionRef,
        action: ActionDefinition,
        *,
        image: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        check_inspector: bool = True,
        launch_timeout: float = TIMEOUT_LAUNCH,
    ) -> None:
        self._engine = engine
        self._runtime = runtime
        self._ref = ref
        self._action = action
        self._image = image
        self._timeout = timeout
        self._transport = transport
        self._check_inspector = check_inspector
        self._launch_timeout = launch_timeout

        self._handle: ContainerHandle | None = None
        self._http: httpx.AsyncClient | None = None
        self._mount: MountDescriptor | None = None
        self._debug_port: int | None = None

        self.slot = asyncio.Lock()
        self.inspector_url: str | None = None

    @property
    def provisioned(self) -> bool:
        return self._handle is not None

    @property
    def execution_timeout(self) -> float | None:
        """Seconds an execution may take; ``None`` means unbounded.

        Never shorter than the action's platform timeout, or the bridge would
        report a failure while the developer is still paused in a breakpoint.
        """
        action_timeout = (
            self._action.timeout_ms / 1000.0 if self._action.timeout_ms else None
        )
        if self._timeout is None:
            return action_timeout
        return max(self._timeout, action_timeout or 0.0)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def provision(self, mount: MountDescriptor | None, debug_port: int) -> None:
        """Start the container, wait for the runtime and initialise it."""
        if self._handle is not None:
            raise BridgeError("Local runtime is already provisioned", phase="provision")

        self._mount = mount
        self._debug_port = debug_port

        mounts = {mount.host_root: mount.container_root} if mount else {}
        handle = await self._engine.start(
            self._image,
            command=self._runtime.get_command(),
            mounts=mounts,
            ports={self._runtime.http_port: None, self._runtime.debug_port: debug_port},
            workdir=self._runtime.workdir,
        )
        self._handle = handle

        try:
            host_port = handle.ports[self._runtime.http_port]
            self._http = httpx.AsyncClient(
                base_url=f"http://127.0.0.1:{host_port}",
                timeout=httpx.Timeout(TIMEOUT_REQUEST, read=self.execution_timeout),
                transport=self._transport,
            )
            await self._init(mount)
        except BaseException:
            await self.teardown()
            raise

        logger.info("Local runtime %s ready (debugger port %d)", handle.name, debug_port)

        if self._check_inspector and self._runtime.debug_protocol == "cdp":
            try:
                self.inspector_url = await wait_for_inspector(debug_port)
            except asyncio.TimeoutError as exc:
                logger.warning("Debugger endpoint not confirmed: %s", exc)

    async def teardown(self) -> None:
        """Stop and remove the container.  Safe to call repeatedly."""
        http, self._http = self._http, None
        handle, self._handle = self._handle, None
        self.inspector_url = None

        if http is not None:
            await http.aclose()
        if handle is not None:
            await self._engine.stop(handle)

    async def restart(self) -> None:
        """Re-create the container with the same mount and port."""
        async with self.slot:
            if self._debug_port is None:
                raise BridgeError("Local runtime was never provisioned", phase="restart")
            logger.info("Restarting local runtime")
            await self.teardown()
            await self.provision(self._mount, self._debug_port)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, activation: Activation) -> ExecutionResult:
        """Run one activation.  Failures come back as data, never raised."""
        async with self.slot:
            activation.advance(ActivationState.EXECUTING)
            try:
                payload = await self._run(activation)
            except ExecutionError as exc:
                logger.info("Activation %s: %s", activation.id, exc)
                return ExecutionResult.failure(str(exc))

            if "error" in payload:
                return ExecutionResult(ok=False, payload=payload)
            return ExecutionResult.success(payload)

    async def _run(self, activation: Activation) -> dict[str, Any]:
        if self._http is None:
            raise ExecutionError("Local runtime is not running")

        timeout = self.execution_timeout
        deadline_ms = int((time.time() + (timeout or 0)) * 1000) if timeout else 0
        body = {
            "value": activation.params,
            "activation_id": activation.id,
            "action_name": self._ref.qualified,
            "namespace": self._ref.namespace,
            "deadline": str(deadline_ms),
        }

        try:
            resp = await self._http.post("/run", json=body)
        except httpx.TimeoutException as exc:
            raise ExecutionError(
                f"Execution exceeded the time budget of {timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExecutionError(
                f"Local runtime unreachable: {exc.__class__.__name__}: {exc}"
            ) from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = {"error": resp.text or f"HTTP {resp.status_code}"}

        if not isinstance(payload, dict):
            raise ExecutionError(f"Action returned a non-object result: {payload!r}")
        if resp.status_code != 200 and "error" not in payload:
            payload = {"error": payload or f"HTTP {resp.status_code}"}
        return payload

    # ------------------------------------------------------------------
    # Internal: /init
    # ------------------------------------------------------------------

    def _init_payload(self, mount: MountDescriptor | None) -> dict[str, Any]:
        if mount is not None:
            code = self._runtime.get_init_code(mount, self._action.main)
            value = {"code": code, "binary": False, "main": "main"}
        else:
            if not self._action.code:
                raise BridgeError(
                    f"Action {self._ref} has no code to run locally; pass a source path",
                    phase="provision",
                )
            value = {
                "code": self._action.code,
                "binary": self._action.binary,
                "main": self._action.main,
            }
        value["name"] = self._ref.name
        return {"value": value}

    async def _init(self, mount: MountDescriptor | None) -> None:
        """POST ``/init`` as soon as the runtime's server accepts connections."""
        assert self._http is not None
        payload = self._init_payload(mount)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._launch_timeout
        while True:
            try:
                resp = await self._http.post("/init", json=payload)
                break
            except httpx.TransportError as exc:
                if loop.time() >= deadline:
                    raise BridgeError(
                        f"Local runtime did not come up within {self._launch_timeout}s: {exc}",
                        phase="provision",
                    ) from exc
                await asyncio.sleep(_INIT_RETRY_INTERVAL)

        if resp.status_code != 200:
            raise BridgeError(
                f"Local runtime rejected the action code: HTTP {resp.status_code} {resp.text}",
                phase="provision",
            )
