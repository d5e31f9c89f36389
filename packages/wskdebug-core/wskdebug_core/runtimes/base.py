"""Abstract base for runtime kinds."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from wskdebug_core.models import MountDescriptor

# Container port of the OpenWhisk action runtime HTTP interface (/init, /run).
RUNTIME_HTTP_PORT = 8080

CODE_MOUNT = "/code"


class RuntimeKind(ABC):
    """Base class for language-specific runtime strategies.

    Each subclass knows how to:
    * Pick the container image for an action kind.
    * Build the command that starts the runtime with a debugger listening.
    * Turn a :class:`MountDescriptor` into the code sent to ``/init`` so the
      mounted sources are loaded the way the platform would load them.
    """

    http_port: int = RUNTIME_HTTP_PORT
    code_mount: str = CODE_MOUNT

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier, e.g. ``nodejs``."""

    @property
    @abstractmethod
    def debug_port(self) -> int:
        """Debugger port inside the container."""

    @property
    def debug_protocol(self) -> str | None:
        """Wire protocol spoken on :attr:`debug_port` (``cdp``), if it can be queried."""
        return None

    @property
    def workdir(self) -> str | None:
        return None

    @property
    def default_entry(self) -> str:
        """Entry file of a directory without a manifest."""
        return "index.js"

    @property
    def package_manifest(self) -> str | None:
        """Manifest whose ``main`` names the entry of a packaged directory."""
        return None

    @abstractmethod
    def default_images(self) -> dict[str, str]:
        """Fallback kind -> image table used when the platform has no manifest."""

    @abstractmethod
    def get_command(self) -> list[str]:
        """Command that starts the runtime with the debugger enabled."""

    @abstractmethod
    def get_init_code(self, mount: MountDescriptor, main: str = "main") -> str:
        """Code for ``/init`` that loads the mounted sources on each run."""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def supports(self, kind: str) -> bool:
        return kind == self.name or kind.startswith(f"{self.name}:")

    def image_for(self, kind: str, manifest: dict[str, Any] | None = None) -> str | None:
        """Look *kind* up in the platform manifest, then in the fallback table."""
        family = kind.split(":", 1)[0]
        for entry in (manifest or {}).get(family, []):
            if entry.get("kind") == kind and entry.get("image"):
                return entry["image"]
            if kind.endswith(":default") and entry.get("default") and entry.get("image"):
                return entry["image"]
        return self.default_images().get(kind)
