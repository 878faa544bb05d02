"""Worker manager for coordinating background tasks."""

import asyncio
import logging
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, settings as app_settings
from ..core.database import async_session_factory
from ..core.observability import metrics_collector
from .base import BaseWorker
from .expiration_worker import ExpirationSweepWorker
from .reconciliation_worker import ReconciliationWorker

logger = logging.getLogger(__name__)


class WorkerManager:
    """
    Manages background workers for the application.

    Coordinates starting, stopping, and monitoring of all background workers.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        config: Optional[Settings] = None,
    ):
        """Initialize the worker manager."""
        self.session_factory = session_factory
        self.config = config or app_settings
        self.workers: Dict[str, BaseWorker] = {}
        self._setup_workers()

    def _setup_workers(self) -> None:
        """Initialize all workers."""
        self.workers["expiration"] = ExpirationSweepWorker(
            session_factory=self.session_factory,
            config=self.config,
        )
        self.workers["reconciliation"] = ReconciliationWorker(
            session_factory=self.session_factory,
            config=self.config,
        )

        logger.info(f"Initialized {len(self.workers)} workers")

    async def start_all(self) -> None:
        """Start all workers."""
        logger.info("Starting all workers")

        for name, worker in self.workers.items():
            try:
                await worker.start()
                logger.info(f"Started worker: {name}")
            except Exception as e:
                logger.error(f"Failed to start worker {name}: {str(e)}", exc_info=True)

        metrics_collector.set_workers_running(self.running_count())
        logger.info(f"Started {self.running_count()} workers")

    async def stop_all(self) -> None:
        """Stop all workers gracefully."""
        logger.info("Stopping all workers")

        running = {name: worker for name, worker in self.workers.items() if worker.is_running}
        results = await asyncio.gather(
            *(worker.stop() for worker in running.values()),
            return_exceptions=True,
        )

        for name, result in zip(running, results):
            if isinstance(result, Exception):
                logger.error(f"Error stopping worker {name}: {str(result)}")
            else:
                logger.info(f"Stopped worker: {name}")

        metrics_collector.set_workers_running(self.running_count())
        logger.info("All workers stopped")

    def get_worker(self, name: str) -> BaseWorker:
        """
        Get a specific worker by name.

        Raises:
            KeyError: If worker not found
        """
        return self.workers[name]

    def running_count(self) -> int:
        return sum(1 for worker in self.workers.values() if worker.is_running)

    def get_worker_status(self) -> Dict[str, bool]:
        """
        Get the status of all workers.

        Returns:
            Dictionary mapping worker names to their running status
        """
        return {name: worker.is_running for name, worker in self.workers.items()}


# Global worker manager instance
worker_manager = WorkerManager()
