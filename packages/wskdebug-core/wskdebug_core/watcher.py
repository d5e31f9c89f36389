"""Watch the mounted sources and trigger an action on modification."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable

from watchfiles import awatch

from wskdebug_core.protocol import WATCH_DEBOUNCE_MS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

Changes = set[tuple[Any, str]]
ChangeHandler = Callable[[Changes], Awaitable[None]]
WatchFactory = Callable[..., AsyncIterator[Changes]]


def watch_paths(*paths: str, stop_event: asyncio.Event, debounce_ms: int) -> AsyncIterator[Changes]:
    """Default file-watch primitive: debounced batches from ``watchfiles``."""
    return awatch(*paths, stop_event=stop_event, debounce=debounce_ms, recursive=True)


# ---------------------------------------------------------------------------
# ChangeWatcher
# ---------------------------------------------------------------------------


class ChangeWatcher:
    """Calls *on_change* once per debounced batch of filesystem events.

    Failures of the watch itself (path removed, inotify limits ...) disable
    the watcher; they never end the debug session.
    """

    def __init__(
        self,
        paths: list[str],
        on_change: ChangeHandler,
        *,
        debounce_ms: int = WATCH_DEBOUNCE_MS,
        watch: WatchFactory = watch_paths,
    ) -> None:
        self._paths = paths
        self._on_change = on_change
        self._debounce_ms = debounce_ms
        self._watch = watch
        self._stop_event = asyncio.Event()

        self.enabled = True
        self.triggers = 0

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        logger.info("Watching %s for changes", ", ".join(self._paths))
        try:
            async for changes in self._watch(
                *self._paths,
                stop_event=self._stop_event,
                debounce_ms=self._debounce_ms,
            ):
                if self._stop_event.is_set():
                    break
                self.triggers += 1
                logger.info("Source change detected (%d file event(s))", len(changes))
                try:
                    await self._on_change(changes)
                except Exception:  # noqa: BLE001 - one bad trigger must not end the watch
                    logger.exception("Handling source change failed")
        except Exception as exc:  # noqa: BLE001
            self.enabled = False
            logger.warning("Watching %s failed, watcher disabled: %s", ", ".join(self._paths), exc)
