"""Platform credentials and session options.

Credentials come from a ``.wskprops`` file (dotenv-style ``KEY=VALUE`` lines)
located via ``$WSK_CONFIG_FILE`` or ``~/.wskprops``; the ``__OW_*`` environment
variables override individual keys.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from dotenv import dotenv_values

from wskdebug_core.errors import ConfigurationError
from wskdebug_core.protocol import DEFAULT_NAMESPACE, WATCH_DEBOUNCE_MS

logger = logging.getLogger(__name__)

_DEFAULT_WSKPROPS = os.path.join("~", ".wskprops")

_ENV_OVERRIDES = {
    "APIHOST": "__OW_API_HOST",
    "AUTH": "__OW_API_KEY",
    "NAMESPACE": "__OW_NAMESPACE",
}


# ---------------------------------------------------------------------------
# .wskprops
# ---------------------------------------------------------------------------


def wskprops_path() -> str:
    return os.path.expanduser(os.environ.get("WSK_CONFIG_FILE") or _DEFAULT_WSKPROPS)


@dataclass(frozen=True)
class PlatformConfig:
    """Where the platform lives and how to authenticate."""

    apihost: str
    auth: str
    namespace: str = DEFAULT_NAMESPACE

    @property
    def base_url(self) -> str:
        host = self.apihost.rstrip("/")
        if not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        return host

    @classmethod
    def load(cls, path: str | None = None) -> PlatformConfig:
        """Read ``.wskprops`` then apply ``__OW_*`` overrides.

        Raises :class:`ConfigurationError` if host or credential is missing.
        """
        path = path or wskprops_path()
        props: dict[str, str] = {}
        if os.path.isfile(path):
            props = {k: v for k, v in dotenv_values(path).items() if v}
            logger.debug("Loaded platform config from %s", path)
        else:
            logger.debug("No wskprops file at %s", path)

        for key, env in _ENV_OVERRIDES.items():
            if os.environ.get(env):
                props[key] = os.environ[env]

        apihost = props.get("APIHOST")
        auth = props.get("AUTH")
        if not apihost:
            raise ConfigurationError(f"APIHOST is not configured (looked in {path})")
        if not auth:
            raise ConfigurationError(f"AUTH is not configured (looked in {path})")

        return cls(
            apihost=apihost,
            auth=auth,
            namespace=props.get("NAMESPACE") or DEFAULT_NAMESPACE,
        )


# ---------------------------------------------------------------------------
# Session options
# ---------------------------------------------------------------------------


@dataclass
class BridgeOptions:
    """Everything a debug session can be configured with."""

    action: str
    source_path: str | None = None
    source_root: str | None = None
    port: int | None = None
    image: str | None = None
    packaged: bool = False
    force: bool = False
    # Change watcher
    invoke_params: dict[str, Any] | None = None
    invoke_action: str | None = None
    restart_on_change: bool = False
    debounce_ms: int = WATCH_DEBOUNCE_MS
    # Agent
    condition: str | None = None
    # Local execution budget in seconds; never shorter than the action's
    # own platform timeout.
    timeout: float | None = None
    # Shell command run before start and on every change; its output at
    # build_path is mounted instead of source_path.
    on_build: str | None = None
    build_path: str | None = None

    @property
    def invoke_on_change(self) -> bool:
        return self.invoke_params is not None or self.invoke_action is not None

    @property
    def watch_enabled(self) -> bool:
        return self.source_path is not None and (
            self.invoke_on_change or self.restart_on_change or self.on_build is not None
        )
