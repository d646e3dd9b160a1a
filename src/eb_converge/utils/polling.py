"""Bounded polling for long-running AWS operations."""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional
from eb_converge.utils.logging import get_logger

logger = get_logger(__name__)


class PollStatus(Enum):
    """Terminal result of a bounded wait."""
    READY = "ready"
    TIMEOUT = "timeout"
    FAILED = "failed"


@dataclass(frozen=True)
class PollResult:
    """Outcome of a bounded wait."""
    status: PollStatus
    last_state: Optional[str]
    elapsed: float
    attempts: int

    @property
    def ready(self) -> bool:
        return self.status is PollStatus.READY


class BoundedPoller:
    """Polls a state function at a fixed interval within a wall-clock timeout.

    A timeout is not a failure: the resource may still finish after the
    process exits, so callers log a warning and carry on.
    """

    def __init__(
        self,
        interval: float = 20.0,
        timeout: float = 900.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize poller.

        Args:
            interval: Seconds between state checks
            timeout: Maximum seconds to wait in total
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock function (injectable for tests)
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        self.interval = interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    def wait(
        self,
        check: Callable[[], Optional[str]],
        ready_states: Iterable[str],
        failed_states: Iterable[str] = (),
        description: str = 'resource'
    ) -> PollResult:
        """Poll ``check`` until it reports a ready or failed state.

        Args:
            check: Returns the current state string (None if not yet visible)
            ready_states: States that end the wait successfully
            failed_states: States that end the wait as a failure
            description: Label used in log messages

        Returns:
            PollResult with READY, FAILED or TIMEOUT
        """
        ready = set(ready_states)
        failed = set(failed_states)
        start = self._clock()
        attempts = 0

        while True:
            attempts += 1
            state = check()
            elapsed = self._clock() - start

            if state in ready:
                logger.info(f"{description} is {state} after {elapsed:.0f}s")
                return PollResult(PollStatus.READY, state, elapsed, attempts)

            if state in failed:
                logger.error(f"{description} entered failed state {state}")
                return PollResult(PollStatus.FAILED, state, elapsed, attempts)

            if elapsed + self.interval > self.timeout:
                logger.warning(
                    f"Timed out after {elapsed:.0f}s waiting for {description} "
                    f"(last state: {state}); it may still complete in the background"
                )
                return PollResult(PollStatus.TIMEOUT, state, elapsed, attempts)

            logger.debug(f"Waiting for {description} (state: {state}, {elapsed:.0f}s elapsed)")
            self._sleep(self.interval)
