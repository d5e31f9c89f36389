"""Replaces the remote action with the polling agent stub."""

from __future__ import annotations

import logging
import os

from wskdebug_core.errors import InstallConflictError
from wskdebug_core.models import ActionDefinition, ActionRef
from wskdebug_core.protocol import (
    BACKUP_ACTION_PARAM,
    CONDITION_PARAM,
    MARKER_ANNOTATION,
    PlatformClient,
)

logger = logging.getLogger(__name__)

_AGENT_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "agent.js")

AGENT_KIND = "nodejs:default"

# The poll invoke and the real invocations must land in the same container,
# which needs intra-container concurrency on the agent.
AGENT_CONCURRENCY = 200


def load_agent_code() -> str:
    """Return the JavaScript source of the agent stub shipped with the package."""
    with open(_AGENT_FILE, encoding="utf-8") as f:
        return f.read()


class AgentInstaller:
    """Installs the agent and tags the action with the marker annotation."""

    def __init__(self, client: PlatformClient) -> None:
        self._client = client

    @staticmethod
    def check(definition: ActionDefinition, force: bool = False) -> None:
        """Raise :class:`InstallConflictError` if another session owns the action."""
        if definition.is_agent and not force:
            raise InstallConflictError(
                "Action is already being debugged by another session "
                f"(annotation {MARKER_ANNOTATION}=true). Use --force to take it over."
            )

    @staticmethod
    def build_agent(
        original: ActionDefinition,
        agent_code: str,
        backup_name: str,
        condition: str | None = None,
    ) -> ActionDefinition:
        """Derive the agent definition from the original one.

        Keeps the original limits (the poll blocks for the action's timeout),
        annotations and parameters; replaces the code and adds the marker.
        """
        agent = original.copy()
        agent.raw["exec"] = {"kind": AGENT_KIND, "code": agent_code, "binary": False}
        agent.limits["concurrency"] = AGENT_CONCURRENCY
        agent.set_annotation(MARKER_ANNOTATION, True)

        params = [
            p for p in agent.parameters
            if p.get("key") not in (BACKUP_ACTION_PARAM, CONDITION_PARAM)
        ]
        params.append({"key": BACKUP_ACTION_PARAM, "value": backup_name})
        if condition:
            params.append({"key": CONDITION_PARAM, "value": condition})
        agent.raw["parameters"] = params
        return agent

    async def install(
        self,
        ref: ActionRef,
        definition: ActionDefinition,
        agent_code: str,
        *,
        backup_name: str,
        force: bool = False,
        condition: str | None = None,
    ) -> None:
        """Overwrite *ref* with the agent built from *definition*."""
        self.check(definition, force)
        agent = self.build_agent(definition, agent_code, backup_name, condition)
        await self._client.put_action(ref, agent)
        logger.info("Installed agent on %s", ref)
