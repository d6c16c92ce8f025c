"""Reconnection backoff for one tenant session."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from ticketbridge.models import ReconnectState

logger = structlog.get_logger()

AttemptFn = Callable[[], Awaitable[bool]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class ReconnectPolicy:
    """Exponential backoff without jitter."""

    base_ms: int = 1000
    cap_ms: int = 30000
    max_attempts: int = 5

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before the given 1-based attempt."""
        return min(self.cap_ms, self.base_ms * 2 ** (attempt - 1)) / 1000


class ReconnectionController:
    """Runs at most one reconnection sequence at a time.

    A sequence sleeps, attempts, and repeats until an attempt succeeds or the
    attempt budget is spent. ``schedule`` while a sequence is in flight is
    ignored. Exhausting the budget calls ``on_exhausted`` once and stops.
    """

    def __init__(
        self,
        tenant_id: str,
        attempt: AttemptFn,
        on_exhausted: Callable[[], None],
        policy: ReconnectPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.tenant_id = tenant_id
        self.policy = policy or ReconnectPolicy()
        self.state = ReconnectState(max_attempts=self.policy.max_attempts)
        self._attempt = attempt
        self._on_exhausted = on_exhausted
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    @property
    def in_flight(self) -> bool:
        return self.state.in_flight

    def schedule(self) -> bool:
        """Start a reconnection sequence unless one is already running.

        Returns:
            True if a new sequence was started
        """
        if self.state.in_flight:
            logger.debug("Reconnection already in flight", tenant_id=self.tenant_id)
            return False
        self.state.in_flight = True
        self._task = asyncio.get_running_loop().create_task(self._run())
        return True

    def cancel(self) -> None:
        """Cancel a pending or running sequence."""
        task = self._task
        self._task = None
        self.state.in_flight = False
        if task is not None and not task.done():
            task.cancel()
            logger.info("Cancelled reconnection", tenant_id=self.tenant_id)

    def reset(self) -> None:
        self.state.attempts = 0

    async def join(self) -> None:
        """Wait for the current sequence to finish."""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def _run(self) -> None:
        task = asyncio.current_task()
        try:
            while True:
                self.state.attempts += 1
                if self.state.attempts > self.policy.max_attempts:
                    logger.error(
                        "Reconnection attempts exhausted",
                        tenant_id=self.tenant_id,
                        max_attempts=self.policy.max_attempts,
                    )
                    self._on_exhausted()
                    return

                delay = self.policy.delay_for(self.state.attempts)
                logger.info(
                    "Scheduling reconnection",
                    tenant_id=self.tenant_id,
                    attempt=self.state.attempts,
                    max_attempts=self.policy.max_attempts,
                    delay_seconds=delay,
                )
                await self._sleep(delay)

                if await self._attempt():
                    logger.info("Reconnected", tenant_id=self.tenant_id, attempt=self.state.attempts)
                    return
        finally:
            if self._task is task:
                self._task = None
                self.state.in_flight = False
