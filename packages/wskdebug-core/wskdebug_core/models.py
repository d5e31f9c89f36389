"""Data model shared by all bridge components."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from typing import Any

from wskdebug_core.protocol import DEFAULT_NAMESPACE, MARKER_ANNOTATION

# Fields of an action that are written back on restore.  Everything else
# (name, namespace, version, publish, updated ...) is platform-managed.
_WRITABLE_FIELDS = ("exec", "limits", "annotations", "parameters")


# ---------------------------------------------------------------------------
# Action references and definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionRef:
    """Namespace + (optionally packaged) name of a deployed action."""

    namespace: str
    name: str

    @classmethod
    def parse(cls, value: str, default_namespace: str = DEFAULT_NAMESPACE) -> ActionRef:
        """Parse ``name``, ``pkg/name``, ``/ns/name`` or ``/ns/pkg/name``."""
        value = value.strip()
        if not value or value == "/":
            raise ValueError("action name must not be empty")

        if value.startswith("/"):
            parts = value[1:].split("/", 1)
            if len(parts) != 2 or not parts[1]:
                raise ValueError(f"invalid fully qualified action name: {value}")
            return cls(namespace=parts[0], name=parts[1])

        return cls(namespace=default_namespace or DEFAULT_NAMESPACE, name=value)

    def with_suffix(self, suffix: str) -> ActionRef:
        return ActionRef(self.namespace, self.name + suffix)

    @property
    def qualified(self) -> str:
        return f"/{self.namespace}/{self.name}"

    def __str__(self) -> str:
        return self.qualified


@dataclass
class ActionDefinition:
    """The platform's description of an action.

    ``raw`` keeps the full JSON document as returned by the platform; the
    properties below are views onto it.
    """

    raw: dict[str, Any]

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ActionDefinition:
        return cls(raw=copy.deepcopy(data))

    @property
    def exec(self) -> dict[str, Any]:
        return self.raw.setdefault("exec", {})

    @property
    def kind(self) -> str:
        return self.exec.get("kind", "")

    @property
    def code(self) -> str | None:
        return self.exec.get("code")

    @property
    def binary(self) -> bool:
        return bool(self.exec.get("binary", False))

    @property
    def main(self) -> str:
        return self.exec.get("main") or "main"

    @property
    def limits(self) -> dict[str, Any]:
        return self.raw.setdefault("limits", {})

    @property
    def timeout_ms(self) -> int | None:
        timeout = self.limits.get("timeout")
        return int(timeout) if timeout is not None else None

    @property
    def annotations(self) -> list[dict[str, Any]]:
        return self.raw.setdefault("annotations", [])

    @property
    def parameters(self) -> list[dict[str, Any]]:
        return self.raw.setdefault("parameters", [])

    def annotation(self, key: str, default: Any = None) -> Any:
        for entry in self.annotations:
            if entry.get("key") == key:
                return entry.get("value")
        return default

    def set_annotation(self, key: str, value: Any) -> None:
        for entry in self.annotations:
            if entry.get("key") == key:
                entry["value"] = value
                return
        self.annotations.append({"key": key, "value": value})

    @property
    def is_agent(self) -> bool:
        """True if the marker annotation says a debug agent is installed."""
        return self.annotation(MARKER_ANNOTATION) is True

    def to_update_body(self) -> dict[str, Any]:
        """Body for ``PUT .../actions/<name>?overwrite=true``."""
        return {
            key: copy.deepcopy(self.raw[key])
            for key in _WRITABLE_FIELDS
            if key in self.raw
        }

    def copy(self) -> ActionDefinition:
        return ActionDefinition.from_json(self.raw)


# ---------------------------------------------------------------------------
# Activations
# ---------------------------------------------------------------------------


class ActivationState(str, enum.Enum):
    RECEIVED = "received"
    DISPATCHED = "dispatched"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Activation:
    """One unit of forwarded work."""

    id: str
    params: dict[str, Any] = field(default_factory=dict)
    state: ActivationState = ActivationState.RECEIVED
    result: dict[str, Any] | None = None

    def advance(self, state: ActivationState) -> None:
        self.state = state


@dataclass
class ExecutionResult:
    """Outcome of one execution inside the local runtime.

    Failures are data: the payload is still posted back to the platform so
    the original caller never hangs.
    """

    ok: bool
    payload: dict[str, Any]

    @classmethod
    def success(cls, payload: dict[str, Any] | None) -> ExecutionResult:
        return cls(ok=True, payload=payload if payload is not None else {})

    @classmethod
    def failure(cls, error: Any) -> ExecutionResult:
        return cls(ok=False, payload={"error": error})


# ---------------------------------------------------------------------------
# Session + mounts
# ---------------------------------------------------------------------------


class SessionState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class Layout(str, enum.Enum):
    FLAT = "flat"            # entry file at the mount root
    NESTED = "nested"        # entry file below the mount root
    PACKAGED = "packaged"    # require()-style module loading


@dataclass(frozen=True)
class MountDescriptor:
    """How local sources appear inside the runtime container."""

    host_root: str
    container_root: str
    entry: str  # posix path relative to the root
    layout: Layout

    @property
    def container_entry(self) -> str:
        return f"{self.container_root.rstrip('/')}/{self.entry}"
