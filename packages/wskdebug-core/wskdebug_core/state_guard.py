"""Backup and restore of the remote action around a debug session.

The backup lives on the platform itself, under a name derived from the
action (``<name>_wskdebug_original``).  Because the name is deterministic, a
session that crashed between backup and restore can still be recovered by a
later ``restore()``.
"""

from __future__ import annotations

import logging

from wskdebug_core.errors import RemoteStateError, RestoreConflictError
from wskdebug_core.models import ActionDefinition, ActionRef
from wskdebug_core.protocol import BACKUP_SUFFIX, PlatformClient

logger = logging.getLogger(__name__)


class ActionStateGuard:
    """Owns the action's original definition for the length of a session."""

    def __init__(self, client: PlatformClient, suffix: str = BACKUP_SUFFIX) -> None:
        self._client = client
        self._suffix = suffix
        self.original: ActionDefinition | None = None

    def backup_ref(self, ref: ActionRef) -> ActionRef:
        return ref.with_suffix(self._suffix)

    async def fetch(self, ref: ActionRef) -> ActionDefinition:
        """Read the live action; :class:`RemoteStateError` if it is missing."""
        definition = await self._client.get_action(ref)
        if definition is None:
            raise RemoteStateError(f"Action {ref} does not exist")
        return definition

    async def backup(self, ref: ActionRef) -> None:
        """Store a copy of the live action under the backup name.

        If the live action is itself an agent (a forced takeover of another
        session), the existing backup *is* the original and is adopted
        instead of being overwritten with agent code.
        """
        live = await self.fetch(ref)
        backup_ref = self.backup_ref(ref)

        if live.is_agent:
            existing = await self._client.get_action(backup_ref)
            if existing is None:
                raise RemoteStateError(
                    f"Action {ref} has an agent installed but no backup "
                    f"{backup_ref} exists; the original code is lost"
                )
            logger.warning("Taking over agent on %s, reusing backup %s", ref, backup_ref)
            self.original = existing
            return

        await self._client.put_action(backup_ref, live)
        self.original = live
        logger.info("Backed up %s to %s", ref, backup_ref)

    async def restore(self, ref: ActionRef) -> None:
        """Write the backup back as the live action and delete the backup.

        Raises :class:`RestoreConflictError` -- without touching the live
        action -- if there is no backup.
        """
        backup_ref = self.backup_ref(ref)
        saved = await self._client.get_action(backup_ref)
        if saved is None:
            raise RestoreConflictError(
                f"No backup {backup_ref} found; {ref} may still have the agent installed"
            )

        await self._client.put_action(ref, saved)
        await self._client.delete_action(backup_ref)
        self.original = None
        logger.info("Restored %s from %s", ref, backup_ref)
