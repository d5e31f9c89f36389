"""Shared fakes: an in-memory OpenWhisk, a container engine and a runtime.

* ``FakePlatform`` answers the REST API through ``httpx.MockTransport`` and
  plays the agent's side of the poll protocol: real invocations are queued
  and handed to the next poll, otherwise polls get the retry envelope.
* ``FakeEngine`` records container starts/stops.
* ``FakeRuntime`` serves ``/init`` and ``/run``.  It "executes" whichever
  source the runtime would actually load -- the mounted file for the loader
  code, the action code otherwise -- by reading the ``msg`` it returns, so a
  test can tell local code from deployed code.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import json
import os
import re
from typing import Any
from urllib.parse import unquote

import httpx
import pytest
import pytest_asyncio

from wskdebug_core.config import BridgeOptions, PlatformConfig
from wskdebug_core.debugger import Debugger, SessionContext
from wskdebug_core.openwhisk_client import OpenWhiskClient
from wskdebug_core.protocol import ContainerHandle

FIXTURES = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fixtures")

FAKE_SERVER = "https://example.com"
FAKE_AUTH = "super-secret-key"
FAKE_AUTH_HEADER = "Basic c3VwZXItc2VjcmV0LWtleQ=="
FAKE_NAMESPACE = "test"

RETRY_BODY = {"response": {"success": False, "result": {"error": {"error": "Please retry.", "code": 42}}}}
STOP_BODY = {"response": {"success": False, "result": {"error": {"error": "Please exit, thanks.", "code": 43}}}}


def action_description(name: str, code: str, binary: bool = False) -> dict[str, Any]:
    return {
        "annotations": [
            {"key": "exec", "value": "nodejs:10"},
            {"key": "provide-api-key", "value": True},
        ],
        "exec": {"kind": "nodejs:10", "code": code, "binary": binary},
        "limits": {"concurrency": 1, "logs": 10, "memory": 256, "timeout": 300000},
        "name": name,
        "namespace": FAKE_NAMESPACE,
        "parameters": [],
        "publish": False,
        "version": "0.0.1",
    }


# ---------------------------------------------------------------------------
# FakePlatform
# ---------------------------------------------------------------------------


class FakePlatform:
    """In-memory OpenWhisk REST API plus the agent's poll behaviour."""

    def __init__(self) -> None:
        self.actions: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str, dict[str, Any] | None]] = []
        self.queue: list[tuple[str, dict[str, Any]]] = []
        self.completions: dict[str, dict[str, Any]] = {}
        self.invocations: list[tuple[str, dict[str, Any]]] = []
        # Scripted poll answers, consumed first: "retry", "stop" or (status, body).
        self.poll_script: list[Any] = []
        # Statuses for completion posts, consumed first; then 200.
        self.completion_statuses: list[int] = []
        self.polls = 0
        self.poll_delay = 0.005
        self.stopping = False
        self.stop_requests = 0
        self.stop_blocking: bool | None = None
        self.fail_stop_signal = False
        self._ids = itertools.count(1)

    # -- helpers for tests ------------------------------------------------

    def add_action(self, name: str, code: str, binary: bool = False, **extra: Any) -> dict[str, Any]:
        action = action_description(name, code, binary)
        action.update(extra)
        self.actions[name] = action
        return copy.deepcopy(action)

    def enqueue_invocation(self, params: dict[str, Any] | None = None) -> str:
        """Simulate a real caller invoking the debugged action."""
        activation_id = f"{next(self._ids):032x}"
        self.queue.append((activation_id, dict(params or {})))
        return activation_id

    async def wait_for_completion(self, activation_id: str, timeout: float = 5.0) -> dict[str, Any]:
        async def _wait() -> dict[str, Any]:
            while activation_id not in self.completions:
                await asyncio.sleep(0.01)
            return self.completions[activation_id]
        return await asyncio.wait_for(_wait(), timeout)

    def mutating_requests(self) -> list[tuple[str, str, Any]]:
        return [r for r in self.requests if r[0] in ("PUT", "DELETE")]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # -- HTTP -------------------------------------------------------------

    async def handler(self, request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"] == FAKE_AUTH_HEADER
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))

        if request.url.path == "/":
            return httpx.Response(200, json={"runtimes": {"nodejs": [
                {"kind": "nodejs:10", "image": "fake/action-nodejs-v10", "default": True},
            ]}})

        match = re.match(rf"^/api/v1/namespaces/{FAKE_NAMESPACE}/actions/(.+)$", request.url.path)
        if not match:
            return httpx.Response(404, json={"error": "not found"})
        name = unquote(match.group(1))

        if request.method == "GET":
            if name not in self.actions:
                return httpx.Response(404, json={"error": "The requested resource does not exist."})
            return httpx.Response(200, json=copy.deepcopy(self.actions[name]))

        if request.method == "PUT":
            assert request.url.params.get("overwrite") == "true"
            stored = copy.deepcopy(body)
            stored.update({"name": name, "namespace": FAKE_NAMESPACE, "version": "0.0.2"})
            self.actions[name] = stored
            return httpx.Response(200, json=stored)

        if request.method == "DELETE":
            if self.actions.pop(name, None) is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json={})

        if request.method == "POST":
            blocking = request.url.params.get("blocking") == "true"
            return await self._invoke(name, body or {}, blocking)

        return httpx.Response(405)

    async def _invoke(self, name: str, body: dict[str, Any], blocking: bool) -> httpx.Response:
        if body.get("$waitForActivation") is True:
            return await self._poll()

        if body.get("$stopDebugging") is True:
            self.stop_requests += 1
            self.stop_blocking = blocking
            if self.fail_stop_signal:
                return httpx.Response(500, json={"error": "internal"})
            self.stopping = True
            return httpx.Response(202, json={"activationId": f"{next(self._ids):032x}"})

        if "$activationId" in body:
            status = self.completion_statuses.pop(0) if self.completion_statuses else 200
            if status != 200:
                return httpx.Response(status, json={"error": "completion rejected"})
            result = {k: v for k, v in body.items() if k != "$activationId"}
            self.completions[body["$activationId"]] = result
            return httpx.Response(200, json={"response": {"result": {"message": "Completed"}}})

        # A real invocation (e.g. from the change watcher).
        self.invocations.append((name, body))
        activation_id = self.enqueue_invocation(body)
        return httpx.Response(202, json={"activationId": activation_id})

    async def _poll(self) -> httpx.Response:
        self.polls += 1
        if self.poll_script:
            step = self.poll_script.pop(0)
            if step == "retry":
                return httpx.Response(502, json=RETRY_BODY)
            if step == "stop":
                return httpx.Response(502, json=STOP_BODY)
            status, body = step
            return httpx.Response(status, json=body)

        if self.stopping:
            return httpx.Response(502, json=STOP_BODY)
        if self.queue:
            activation_id, params = self.queue.pop(0)
            result = dict(params, **{"$activationId": activation_id})
            return httpx.Response(200, json={"response": {"result": result}})

        await asyncio.sleep(self.poll_delay)
        return httpx.Response(502, json=RETRY_BODY)


# ---------------------------------------------------------------------------
# FakeEngine + FakeRuntime
# ---------------------------------------------------------------------------


class FakeEngine:
    """Container engine that only records what it was asked to do."""

    HTTP_HOST_PORT = 18080

    def __init__(self) -> None:
        self.started: list[dict[str, Any]] = []
        self.stopped: list[ContainerHandle] = []
        self.fail_start: Exception | None = None
        # When set, start() blocks until the event fires.
        self.gate: asyncio.Event | None = None
        self.waiting = 0

    @property
    def running(self) -> int:
        return len(self.started) - len(self.stopped)

    @property
    def mounts(self) -> dict[str, str]:
        return self.started[-1]["mounts"] if self.started else {}

    async def start(self, image, *, command, mounts, ports, workdir=None, name=None) -> ContainerHandle:
        if self.fail_start is not None:
            raise self.fail_start
        self.waiting += 1
        if self.gate is not None:
            await self.gate.wait()
        self.started.append({
            "image": image, "command": command, "mounts": dict(mounts),
            "ports": dict(ports), "workdir": workdir,
        })
        published = {port: (host or self.HTTP_HOST_PORT) for port, host in ports.items()}
        return ContainerHandle(id=f"c{len(self.started)}", name=f"fake-{len(self.started)}", ports=published)

    async def stop(self, handle: ContainerHandle) -> None:
        self.stopped.append(handle)


_MSG = re.compile(r"""msg\s*:\s*['"]([^'"]*)['"]""")


class FakeRuntime:
    """OpenWhisk action runtime HTTP surface (``/init`` + ``/run``)."""

    def __init__(self, engine: FakeEngine) -> None:
        self.engine = engine
        self.init_payloads: list[dict[str, Any]] = []
        self.runs: list[dict[str, Any]] = []
        self.run_delay = 0.0
        self.running = 0
        self.max_running = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _loaded_source(self) -> str:
        code = self.init_payloads[-1]["value"]["code"]
        for host_root, container_root in self.engine.mounts.items():
            paths = re.findall(rf'"({re.escape(container_root)}/[^"]+)"', code)
            files = [p for p in paths if not p.endswith("/")]
            if files:
                rel = files[0][len(container_root) + 1:]
                with open(os.path.join(host_root, *rel.split("/")), encoding="utf-8") as f:
                    return f.read()
        return code

    async def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path == "/init":
            self.init_payloads.append(body)
            return httpx.Response(200, json={"OK": True})

        if request.url.path == "/run":
            self.runs.append(body)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            try:
                if self.run_delay:
                    await asyncio.sleep(self.run_delay)
                source = self._loaded_source()
                if "throw" in source:
                    return httpx.Response(502, json={"error": "An error has occurred: Error: boom"})
                match = _MSG.search(source)
                return httpx.Response(200, json={"msg": match.group(1) if match else None})
            finally:
                self.running -= 1

        return httpx.Response(404)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def runtime(engine: FakeEngine) -> FakeRuntime:
    return FakeRuntime(engine)


@pytest.fixture
def platform_config() -> PlatformConfig:
    return PlatformConfig(apihost=FAKE_SERVER, auth=FAKE_AUTH, namespace=FAKE_NAMESPACE)


@pytest_asyncio.fixture
async def client(platform: FakePlatform, platform_config: PlatformConfig):
    ow = OpenWhiskClient(platform_config, transport=platform.transport)
    yield ow
    await ow.close()


@pytest.fixture
def make_debugger(client, engine, runtime):
    """Build a Debugger wired to the fakes."""

    def _make(options: BridgeOptions, **kwargs: Any) -> Debugger:
        kwargs.setdefault("runtime_transport", runtime.transport)
        kwargs.setdefault("check_inspector", False)
        kwargs.setdefault("stop_grace", 1.0)
        ctx = SessionContext.create(options, client, engine, FAKE_NAMESPACE, **kwargs)
        return Debugger(ctx)

    return _make
