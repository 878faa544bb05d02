"""Base worker class for background tasks."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)


class BaseWorker(ABC):
    """
    Abstract base class for background workers.

    Runs ``process`` every ``interval_seconds``. A failing iteration is
    logged and the next attempt is delayed with exponential back-off, capped
    at ``max_backoff_seconds``; the first successful iteration resets it.
    """

    def __init__(self, name: str, interval_seconds: int = 60, max_backoff_seconds: int = 900):
        """
        Initialize the worker.

        Args:
            name: Worker name for logging
            interval_seconds: How often to run the task
            max_backoff_seconds: Upper bound for the delay after repeated failures
        """
        self.name = name
        self.interval_seconds = interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.consecutive_failures = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @abstractmethod
    async def process(self) -> None:
        """Process one iteration of the background task."""

    def backoff_seconds(self) -> float:
        """Delay before the next iteration given the current failure streak."""
        if not self.consecutive_failures:
            return self.interval_seconds
        delay = self.interval_seconds * (2 ** (self.consecutive_failures - 1))
        return min(delay, self.max_backoff_seconds)

    async def start(self) -> None:
        """Start the worker."""
        if self._running:
            logger.warning(f"{self.name} worker is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"{self.name} worker started with {self.interval_seconds}s interval")

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        if not self._running:
            logger.warning(f"{self.name} worker is not running")
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info(f"{self.name} worker stopped")

    async def run_once(self) -> bool:
        """
        Run a single iteration, recording the outcome.

        Returns:
            True if the iteration succeeded
        """
        started = time.perf_counter()
        try:
            await self.process()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.consecutive_failures += 1
            logger.error(
                f"{self.name} worker error: {str(e)}",
                exc_info=True,
                extra={
                    "worker": self.name,
                    "consecutive_failures": self.consecutive_failures,
                    "retry_in_seconds": self.backoff_seconds(),
                }
            )
            return False

        self.consecutive_failures = 0
        duration = time.perf_counter() - started
        logger.info(
            f"{self.name} worker iteration completed",
            extra={
                "duration_seconds": duration,
                "worker": self.name,
            }
        )
        return True

    async def _run(self) -> None:
        """Main worker loop."""
        logger.info(f"{self.name} worker loop started")

        while self._running:
            try:
                started = time.monotonic()
                succeeded = await self.run_once()

                if succeeded:
                    # Sleep for the remaining interval time
                    sleep_time = max(0, self.interval_seconds - (time.monotonic() - started))
                else:
                    sleep_time = self.backoff_seconds()

                if sleep_time > 0:
                    await asyncio.sleep(sleep_time)

            except asyncio.CancelledError:
                logger.info(f"{self.name} worker loop cancelled")
                break
