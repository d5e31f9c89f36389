"""Activation channel: long-poll the agent, forward work, post results.

One poll cycle::

    poll ──► Retry ──► poll again (no backoff; the invoke itself blocks)
      │
      ├────► Work(activation) ──► dispatch ──► complete ──► poll again
      │
      ├────► Stop ──► return
      │
      └────► PollError ──► ChannelError

The channel never polls while an activation is in flight, so at most one
activation is ever being executed locally.  Backpressure is structural:
invocations that arrive meanwhile simply wait in the agent's queue.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from wskdebug_core.errors import ChannelError
from wskdebug_core.models import Activation, ActivationState, ActionRef, ExecutionResult
from wskdebug_core.protocol import (
    ACTIVATION_ID,
    COMPLETION_ATTEMPTS,
    TIMEOUT_POLL,
    WAIT_FOR_ACTIVATION,
    PlatformClient,
    PollError,
    PollOutcome,
    Retry,
    Stop,
    parse_poll_response,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

Dispatcher = Callable[[Activation], Awaitable[ExecutionResult]]


# ---------------------------------------------------------------------------
# ActivationChannel
# ---------------------------------------------------------------------------


class ActivationChannel:
    """Implements the poll/complete protocol against the agent stub."""

    def __init__(
        self,
        client: PlatformClient,
        ref: ActionRef,
        dispatch: Dispatcher,
        *,
        poll_timeout: float = TIMEOUT_POLL,
        completion_attempts: int = COMPLETION_ATTEMPTS,
    ) -> None:
        self._client = client
        self._ref = ref
        self._dispatch = dispatch
        self._poll_timeout = poll_timeout
        self._completion_attempts = max(1, completion_attempts)

        self.polls: int = 0
        self.completed: int = 0
        self.current: Activation | None = None
        # Set while no activation is in flight; stop() waits on it.
        self.idle = asyncio.Event()
        self.idle.set()

    # ------------------------------------------------------------------
    # Protocol steps
    # ------------------------------------------------------------------

    async def poll(self) -> PollOutcome:
        """Issue one blocking poll invoke and classify the answer."""
        self.polls += 1
        try:
            resp = await self._client.invoke(
                self._ref,
                {WAIT_FOR_ACTIVATION: True},
                blocking=True,
                timeout=self._poll_timeout,
            )
        except httpx.HTTPError as exc:
            return PollError(0, None, f"{exc.__class__.__name__}: {exc}")
        return parse_poll_response(resp.status, resp.body)

    async def complete(self, activation_id: str, result: dict[str, Any]) -> None:
        """Post *result* for *activation_id*; retried a bounded number of times."""
        body = dict(result)
        body[ACTIVATION_ID] = activation_id

        last_error = ""
        for attempt in range(1, self._completion_attempts + 1):
            try:
                resp = await self._client.invoke(self._ref, body, blocking=True)
            except httpx.HTTPError as exc:
                last_error = f"{exc.__class__.__name__}: {exc}"
            else:
                if resp.ok:
                    logger.debug("Completed activation %s", activation_id)
                    return
                last_error = f"HTTP {resp.status}: {resp.body}"

            logger.warning(
                "Completing activation %s failed (attempt %d/%d): %s",
                activation_id, attempt, self._completion_attempts, last_error,
            )

        raise ChannelError(
            f"Could not post result of activation {activation_id}: {last_error}",
            phase="complete",
        )

    async def handle(self, activation: Activation) -> None:
        """Dispatch one activation and post its result back."""
        self.current = activation
        self.idle.clear()
        try:
            activation.advance(ActivationState.DISPATCHED)
            logger.info("Activation %s received, executing locally", activation.id)

            result = await self._dispatch(activation)
            activation.result = result.payload
            await self.complete(activation.id, result.payload)

            activation.advance(
                ActivationState.COMPLETED if result.ok else ActivationState.FAILED
            )
            self.completed += 1
            if result.ok:
                logger.info("Activation %s completed", activation.id)
            else:
                logger.info("Activation %s failed: %s", activation.id, result.payload.get("error"))
        except ChannelError:
            activation.advance(ActivationState.FAILED)
            raise
        finally:
            self.current = None
            self.idle.set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Poll until the agent asks us to stop or the protocol breaks.

        Returns normally on a graceful stop; raises :class:`ChannelError`
        on anything the protocol does not define.  Cancellation aborts the
        in-flight poll request.
        """
        logger.info("Waiting for activations of %s", self._ref)
        while True:
            outcome = await self.poll()

            if isinstance(outcome, Retry):
                # Only yield to the loop; the poll invoke itself is the wait.
                await asyncio.sleep(0)
                continue

            if isinstance(outcome, Stop):
                logger.info("Agent requested shutdown")
                return

            if isinstance(outcome, PollError):
                raise ChannelError(
                    f"Unexpected poll response (HTTP {outcome.status}, "
                    f"code {outcome.code}): {outcome.message}",
                    phase="poll",
                )

            await self.handle(outcome.activation)
