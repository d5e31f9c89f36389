"""Debug session orchestrator.

``Debugger`` composes the guard, installer, executor, channel and watcher
into the externally visible lifecycle::

    idle ──start()──► starting ──► running ──stop()──► stopping ──► stopped
                         │            │                    ▲
                         └──► failed ◄┘────────────────────┘

Usage::

    dbg = Debugger(SessionContext.create(options, client, engine))
    await dbg.start()     # backup, install agent, start local runtime
    dbg.run()             # poll loop + watcher in the background
    ...
    await dbg.stop()      # restore the action, remove the container

Everything a session needs is carried by an explicit :class:`SessionContext`;
there is no module-level state.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from wskdebug_core.channel import ActivationChannel
from wskdebug_core.config import BridgeOptions
from wskdebug_core.errors import (
    BridgeError,
    RemoteStateError,
    RestoreConflictError,
    SessionStateError,
    UnsupportedRuntimeError,
)
from wskdebug_core.executor import LocalExecutor
from wskdebug_core.installer import AgentInstaller, load_agent_code
from wskdebug_core.models import ActionRef, MountDescriptor, SessionState
from wskdebug_core.mounts import SourceMountResolver
from wskdebug_core.protocol import (
    DEFAULT_NAMESPACE,
    STOP_DEBUGGING,
    TIMEOUT_STOP_GRACE,
    ContainerEngine,
    PlatformClient,
)
from wskdebug_core.runtimes import RuntimeKind, get_runtime
from wskdebug_core.state_guard import ActionStateGuard
from wskdebug_core.watcher import Changes, ChangeWatcher, WatchFactory, watch_paths

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# SessionContext
# ---------------------------------------------------------------------------


@dataclass
class SessionContext:
    """Collaborators and options of one debug session."""

    client: PlatformClient
    engine: ContainerEngine
    options: BridgeOptions
    ref: ActionRef
    watch: WatchFactory = watch_paths
    runtime_transport: httpx.AsyncBaseTransport | None = None
    check_inspector: bool = True
    stop_grace: float = TIMEOUT_STOP_GRACE
    agent_code: str | None = None

    @classmethod
    def create(
        cls,
        options: BridgeOptions,
        client: PlatformClient,
        engine: ContainerEngine,
        namespace: str = DEFAULT_NAMESPACE,
        **kwargs: Any,
    ) -> SessionContext:
        ref = ActionRef.parse(options.action, namespace)
        return cls(client=client, engine=engine, options=options, ref=ref, **kwargs)


# ---------------------------------------------------------------------------
# Debugger
# ---------------------------------------------------------------------------


class Debugger:
    """Session state machine around one debugged action."""

    def __init__(self, ctx: SessionContext) -> None:
        self.ctx = ctx
        self.state = SessionState.IDLE
        self.error: BridgeError | None = None
        self.restore_warning: str | None = None

        self.guard = ActionStateGuard(ctx.client)
        self.installer = AgentInstaller(ctx.client)
        self.runtime: RuntimeKind | None = None
        self.mount: MountDescriptor | None = None
        self.executor: LocalExecutor | None = None
        self.channel: ActivationChannel | None = None
        self.watcher: ChangeWatcher | None = None
        self.debug_port: int | None = None

        self._backed_up = False
        self._channel_task: asyncio.Task[None] | None = None
        self._watcher_task: asyncio.Task[None] | None = None
        self._stop_future: asyncio.Future[None] | None = None
        self._auto_stop: asyncio.Future[None] | None = None
        self._done = asyncio.Event()

    @property
    def ref(self) -> ActionRef:
        return self.ctx.ref

    @property
    def exit_code(self) -> int:
        return 1 if self.error is not None else 0

    def _transition(self, state: SessionState) -> None:
        logger.debug("Session %s: %s -> %s", self.ref, self.state.value, state.value)
        self.state = state

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Back up, install the agent and provision the local runtime.

        Any failure rolls back the steps that succeeded and re-raises the
        error with ``phase`` naming the failed step.
        """
        if self.state is not SessionState.IDLE:
            raise SessionStateError(f"Cannot start a session in state {self.state.value}")

        self._transition(SessionState.STARTING)
        options = self.ctx.options
        phase = "fetch"
        try:
            live = await self.guard.fetch(self.ref)

            phase = "install"
            self.installer.check(live, options.force)

            if options.on_build:
                phase = "build"
                await self._run_build(options.on_build)

            phase = "backup"
            await self.guard.backup(self.ref)
            self._backed_up = True
            original = self.guard.original
            assert original is not None

            phase = "resolve"
            self.runtime = get_runtime(original.kind)
            mount_path = options.build_path or options.source_path
            if mount_path:
                self.mount = SourceMountResolver(self.runtime).resolve(
                    mount_path,
                    packaged=options.packaged or original.binary,
                    root=options.source_root,
                )

            phase = "install"
            await self.installer.install(
                self.ref,
                original,
                self.ctx.agent_code or load_agent_code(),
                backup_name=self.guard.backup_ref(self.ref).name,
                force=options.force,
                condition=options.condition,
            )

            phase = "provision"
            image = options.image or await self._image_for(original.kind)
            self.debug_port = options.port or self.runtime.debug_port
            self.executor = LocalExecutor(
                self.ctx.engine,
                self.runtime,
                self.ref,
                original,
                image=image,
                timeout=options.timeout,
                transport=self.ctx.runtime_transport,
                check_inspector=self.ctx.check_inspector,
            )
            await self.executor.provision(self.mount, self.debug_port)
        except Exception as exc:
            error = exc if isinstance(exc, BridgeError) else BridgeError(
                f"{exc.__class__.__name__}: {exc}", phase=phase,
            )
            error.phase = error.phase or phase
            self.error = error
            self._transition(SessionState.FAILED)
            logger.error("Starting debug session failed during %s: %s", error.phase, error)
            await self._rollback()
            if error is exc:
                raise
            raise error from exc
        except asyncio.CancelledError:
            self.error = BridgeError("Start was cancelled", phase=phase)
            self._transition(SessionState.FAILED)
            logger.warning("Starting debug session cancelled during %s, rolling back", phase)
            await asyncio.shield(self._rollback())
            raise

        self._transition(SessionState.RUNNING)
        logger.info("Debug session for %s ready", self.ref)

    async def _image_for(self, kind: str) -> str:
        assert self.runtime is not None
        try:
            manifest = await self.ctx.client.list_runtimes()
        except RemoteStateError as exc:
            logger.debug("No runtime manifest, using built-in images: %s", exc)
            manifest = {}
        image = self.runtime.image_for(kind, manifest)
        if not image:
            raise UnsupportedRuntimeError(f"No container image known for kind '{kind}'")
        return image

    async def _rollback(self) -> None:
        """Best-effort undo of a partial start."""
        if self.executor is not None:
            try:
                await self.executor.teardown()
            except Exception:  # noqa: BLE001 - keep unwinding
                logger.exception("Rollback: removing the local runtime failed")

        if self._backed_up:
            try:
                await self.guard.restore(self.ref)
                self._backed_up = False
            except Exception as exc:  # noqa: BLE001 - keep unwinding
                self.restore_warning = str(exc)
                logger.error("Rollback: restoring %s failed: %s", self.ref, exc)

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Start the poll loop and the watcher in the background; returns at once."""
        if self.state is not SessionState.RUNNING or self._channel_task is not None:
            raise SessionStateError(f"Cannot run a session in state {self.state.value}")
        assert self.executor is not None

        self.channel = ActivationChannel(self.ctx.client, self.ref, self.executor.execute)
        self._channel_task = asyncio.create_task(
            self._run_channel(), name=f"wskdebug-poll-{self.ref.name}",
        )

        options = self.ctx.options
        if options.watch_enabled and self.mount is not None:
            self.watcher = ChangeWatcher(
                self._watch_paths(),
                self._on_source_change,
                debounce_ms=options.debounce_ms,
                watch=self.ctx.watch,
            )
            self._watcher_task = asyncio.create_task(
                self.watcher.run(), name=f"wskdebug-watch-{self.ref.name}",
            )

    async def _run_channel(self) -> None:
        assert self.channel is not None
        try:
            await self.channel.run()
        except BridgeError as exc:
            exc.phase = exc.phase or "poll"
            self._fail(exc)
        except Exception as exc:  # noqa: BLE001 - any loop crash ends the session
            self._fail(BridgeError(f"{exc.__class__.__name__}: {exc}", phase="poll"))

        if self.state not in (SessionState.STOPPING, SessionState.STOPPED):
            # The loop ended on its own (agent stop or error): clean up.
            self._auto_stop = asyncio.ensure_future(self.stop())

    def _fail(self, error: BridgeError) -> None:
        self.error = error
        if self.state is SessionState.RUNNING:
            self._transition(SessionState.FAILED)
        logger.error("Debug session failed during %s: %s", error.phase, error)

    def _build_cwd(self) -> str:
        return os.path.abspath(self.ctx.options.source_root or os.getcwd())

    def _watch_paths(self) -> list[str]:
        """The sources to watch: the mount, or the source path when a build output is mounted."""
        assert self.mount is not None
        options = self.ctx.options
        if options.build_path and options.source_path:
            source = os.path.join(self._build_cwd(), options.source_path)
            return [source if os.path.isdir(source) else os.path.dirname(source)]
        return [self.mount.host_root]

    async def _run_build(self, command: str) -> None:
        """Run the build command in the source root; :class:`BridgeError` on failure."""
        logger.info("Running build: %s", command)
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=self._build_cwd(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await proc.communicate()
        text = output.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            raise BridgeError(
                f"Build command exited with {proc.returncode}: {text}", phase="build",
            )
        if text:
            logger.debug("Build output:\n%s", text)

    async def _on_source_change(self, changes: Changes) -> None:
        options = self.ctx.options
        if options.on_build:
            try:
                await self._run_build(options.on_build)
            except BridgeError as exc:
                logger.warning("%s; skipping this change", exc)
                return

        if options.restart_on_change and self.executor is not None:
            await self.executor.restart()

        if options.invoke_on_change:
            target = (
                ActionRef.parse(options.invoke_action, self.ref.namespace)
                if options.invoke_action else self.ref
            )
            resp = await self.ctx.client.invoke(target, dict(options.invoke_params or {}), blocking=False)
            if resp.ok:
                activation_id = resp.body.get("activationId") if isinstance(resp.body, dict) else None
                logger.info("Invoked %s after source change (activation %s)", target, activation_id)
            else:
                logger.warning("Invoking %s after source change failed: HTTP %d %s",
                               target, resp.status, resp.body)

    # ------------------------------------------------------------------
    # stop
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Cancel the loops, remove the runtime, restore the action.

        Idempotent and safe to call concurrently: later callers wait for the
        first teardown to finish.
        """
        if self.state is SessionState.IDLE:
            return
        if self._stop_future is None:
            self._stop_future = asyncio.ensure_future(self._stop())
        await asyncio.shield(self._stop_future)

    async def wait(self) -> None:
        """Block until the session has been stopped."""
        await self._done.wait()

    async def _stop(self) -> None:
        self._transition(SessionState.STOPPING)

        tasks = [t for t in (self._channel_task, self._watcher_task) if t is not None]

        if self.watcher is not None:
            self.watcher.stop()
        if self._watcher_task is not None:
            self._watcher_task.cancel()

        if self._backed_up and self._channel_task is not None:
            await self._signal_agent_stop()

        if self._channel_task is not None and not self._channel_task.done():
            await self._drain_channel()
            self._channel_task.cancel()

        current = asyncio.current_task()
        await asyncio.gather(*(t for t in tasks if t is not current), return_exceptions=True)

        if self.executor is not None:
            try:
                await self.executor.teardown()
            except Exception:  # noqa: BLE001 - restore must still run
                logger.exception("Removing the local runtime failed")

        if self._backed_up:
            try:
                await self.guard.restore(self.ref)
                self._backed_up = False
            except RestoreConflictError as exc:
                self.restore_warning = str(exc)
                logger.warning("%s", exc)
            except Exception as exc:  # noqa: BLE001
                self.restore_warning = f"Restoring {self.ref} failed: {exc}"
                logger.error("%s", self.restore_warning)

        self._transition(SessionState.STOPPED)
        self._done.set()
        logger.info("Debug session for %s ended", self.ref)

    async def _signal_agent_stop(self) -> None:
        """Tell the agent to end the poll it is serving; failures are only logged."""
        try:
            resp = await self.ctx.client.invoke(self.ref, {STOP_DEBUGGING: True}, blocking=False)
        except httpx.HTTPError as exc:
            logger.warning("Could not signal the agent to stop: %s", exc)
            return
        if not resp.ok:
            logger.warning("Signalling the agent to stop failed: HTTP %d %s", resp.status, resp.body)

    async def _drain_channel(self) -> None:
        """Give an in-flight activation the grace period to complete."""
        assert self.channel is not None
        if self.channel.current is None:
            return
        logger.info(
            "Waiting up to %.0fs for activation %s to finish",
            self.ctx.stop_grace, self.channel.current.id,
        )
        try:
            await asyncio.wait_for(self.channel.idle.wait(), timeout=self.ctx.stop_grace)
        except asyncio.TimeoutError:
            logger.warning("Activation still running after grace period, abandoning it")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        channel = self.channel
        return {
            "action": self.ref.qualified,
            "state": self.state.value,
            "debug_port": self.debug_port,
            "inspector": self.executor.inspector_url if self.executor else None,
            "mount": self.mount,
            "polls": channel.polls if channel else 0,
            "completed": channel.completed if channel else 0,
            "current": channel.current.id if channel and channel.current else None,
            "watching": bool(self.watcher and self.watcher.enabled),
            "error": self.error,
            "restore_warning": self.restore_warning,
        }
