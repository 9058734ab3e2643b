"""Fixed-interval readiness polling with a deadline.

A :class:`Poller` starts ``PENDING`` and moves to ``READY`` the first time
its probe returns a value other than ``None``; it never moves back. If the
deadline passes first, the caller-supplied timeout error is raised. Sleeps
wait on a :class:`threading.Event` so setting it cancels the wait.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from binderhub_deploy.errors import DeploymentCancelled, PollTimeout
from binderhub_deploy.models import PollState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Poller:
    """Polls a probe every *interval* seconds for at most *timeout* seconds."""

    def __init__(
        self,
        interval: float,
        timeout: float,
        *,
        description: str = "",
        cancel: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.interval = interval
        self.timeout = timeout
        self.description = description
        self._cancel = cancel or threading.Event()
        self._clock = clock
        self._sleep = sleep
        self.state = PollState.PENDING
        self.attempts = 0

    def wait_until(
        self,
        probe: Callable[[], T | None],
        on_timeout: Callable[[int, float], PollTimeout],
    ) -> T:
        """Call *probe* until it returns a value, then return that value.

        Args:
            probe: Returns ``None`` while pending, any other value when ready.
            on_timeout: Builds the error raised when the deadline passes;
                receives the attempt count and the elapsed seconds.

        Raises:
            PollTimeout: as built by *on_timeout*.
            DeploymentCancelled: if the cancel event is set.
        """
        if self.state == PollState.READY:
            raise RuntimeError("Poller has already reached its ready state")

        start = self._clock()
        while True:
            self._check_cancelled()
            self.attempts += 1
            value = probe()
            if value is not None:
                self.state = PollState.READY
                return value

            elapsed = self._clock() - start
            if elapsed >= self.timeout:
                raise on_timeout(self.attempts, elapsed)

            logger.info(
                "%s: waiting (attempt %d, %.0fs elapsed)",
                self.description or "poll", self.attempts, elapsed,
            )
            self._wait(min(self.interval, self.timeout - elapsed))

    def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
            self._check_cancelled()
            return
        if self._cancel.wait(seconds):
            self._check_cancelled()

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise DeploymentCancelled(f"Cancelled while waiting: {self.description or 'poll'}")
