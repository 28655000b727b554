"""Cancellable repeating poll bounded by an interval and a deadline."""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from config import POLL_DEADLINE, POLL_INTERVAL
from exceptions import NegotiationTimeout

logger = logging.getLogger(__name__)


class PollHandle:
    """Handle on a running Poller; cancel() stops it at the next await."""

    def __init__(self, task: asyncio.Task) -> None:
        self._task = task

    def cancel(self) -> None:
        self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self):
        """Wait for the poll to finish. Re-raises the step's error,
        NegotiationTimeout, or CancelledError if it was cancelled."""
        return await self._task


class Poller:
    """Calls `step` every `interval` seconds until it returns True.

    The first call happens one interval after start. Raises
    NegotiationTimeout once `deadline` seconds have elapsed without
    success. Errors raised by `step` end the poll. `clock` and `sleep`
    are injectable so tests can drive time.
    """

    def __init__(
        self,
        step: Callable[[], Awaitable[bool]],
        interval: float = POLL_INTERVAL,
        deadline: float = POLL_DEADLINE,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if interval <= 0:
            raise ValueError("Poll interval must be positive")
        self._step = step
        self._interval = interval
        self._deadline = deadline
        self._clock = clock
        self._sleep = sleep
        self.attempts = 0

    async def run(self) -> bool:
        started = self._clock()
        while True:
            await self._sleep(self._interval)
            if self._clock() - started >= self._deadline:
                raise NegotiationTimeout(
                    f"No answer after {self.attempts} polls ({self._deadline:.0f}s)"
                )
            self.attempts += 1
            if await self._step():
                return True

    def start(self) -> PollHandle:
        return PollHandle(asyncio.create_task(self.run()))
