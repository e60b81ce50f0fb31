"""
Worker process: consumes the analysis queue and runs the cleanup sweeper.

Run with ``webanalyzer-worker`` or ``python -m webanalyzer.jobs.worker``.
"""

import asyncio
import signal

from webanalyzer.analysis.fetcher import Fetcher
from webanalyzer.config.logging import get_logger, setup_logging
from webanalyzer.config.settings import Settings, settings
from webanalyzer.infra.database import Database
from webanalyzer.jobs.queue import QueueAdapter
from webanalyzer.jobs.service import JobLifecycleController
from webanalyzer.jobs.store import JobStore
from webanalyzer.jobs.sweeper import CleanupSweeper

logger = get_logger(__name__)


class AnalysisWorker:
    """Wires the controller, queue consumer and sweeper for one process."""

    def __init__(self, settings: Settings, database: Database | None = None):
        self.settings = settings
        self.database = database or Database(settings)
        self.store = JobStore(settings, self.database)
        self.queue = QueueAdapter(settings, self.database)
        self.fetcher = Fetcher(settings)
        self.controller = JobLifecycleController(
            settings, self.store, self.queue, fetcher=self.fetcher
        )
        self.controller.register(self.queue)
        self.sweeper = CleanupSweeper(settings, self.store, self.queue)
        self._consumer: asyncio.Task | None = None

    async def start(self) -> None:
        if self.settings.db_auto_create:
            await self.database.create_all()

        self.sweeper.start()
        self._consumer = asyncio.create_task(
            self.queue.process(self.controller.process_work_item)
        )
        logger.info(
            "Worker started successfully",
            worker_id=self.queue.worker_id,
            concurrency=self.settings.worker_concurrency,
            queue=self.queue.name,
        )

    async def wait(self) -> None:
        if self._consumer is not None:
            await self._consumer

    async def shutdown(self) -> None:
        """Drain in-flight work, then release every resource."""
        logger.info("Starting graceful shutdown")
        await self.sweeper.stop()
        await self.queue.stop(self.settings.worker_shutdown_grace_s)
        if self._consumer is not None:
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        await self.fetcher.aclose()
        await self.database.close()
        logger.info("Graceful shutdown completed")


async def run_worker(settings: Settings = settings) -> None:
    worker = AnalysisWorker(settings)
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)

    await worker.start()
    waiter = asyncio.create_task(stop_requested.wait())
    consumer = asyncio.create_task(worker.wait())
    await asyncio.wait({waiter, consumer}, return_when=asyncio.FIRST_COMPLETED)

    if consumer.done() and consumer.exception() is not None:
        logger.error("Queue consumer crashed", error=str(consumer.exception()))
    else:
        logger.info("Shutdown signal received")

    waiter.cancel()
    await worker.shutdown()


def main() -> None:
    setup_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
