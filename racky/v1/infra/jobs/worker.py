"""
Job worker process: attaches registered processors to their broker queues.
"""

import asyncio
import importlib
import logging
import os
import signal
import socket

from racky.config.logging import setup_logging
from racky.config.settings import Settings, settings as default_settings
from racky.infra.database import Database
from racky.v1.core.registries import (
    JobProcessor,
    JobProcessorRegistry,
    ProcessorDefinition,
    job_processor_registry,
)
from racky.v1.infra.jobs.service import JobQueueService, build_job_queue_service
from racky.v1.infra.jobs.topology import QUEUE_EXCHANGES
from racky.v1.infra.jobs.types import JobType

logger = logging.getLogger(__name__)

# Default (queue alias, concurrency) per job type
DEFAULT_PROCESSOR_LAYOUT: dict[JobType, tuple[str, int]] = {
    JobType.MARKETPLACE_SYNC: ("marketplace-sync", 1),
    JobType.PRODUCT_BATCH: ("product-processing", 3),
    JobType.PRODUCT_INDIVIDUAL: ("product-processing", 5),
    JobType.AI_OPTIMIZATION_SCAN: ("ai-optimization", 1),
    JobType.AI_DESCRIPTION_BATCH: ("ai-optimization", 2),
    JobType.AI_DESCRIPTION_GENERATION: ("ai-description", 3),
    JobType.MARKETPLACE_UPDATE_BATCH: ("marketplace-updates", 2),
    JobType.MARKETPLACE_UPDATE: ("marketplace-update", 3),
}


def register_job_processor(
    job_type: JobType | str,
    handler: JobProcessor,
    queue_alias: str | None = None,
    concurrency: int | None = None,
    registry: JobProcessorRegistry = job_processor_registry,
) -> ProcessorDefinition:
    """Register a processor for the worker, defaulting alias and concurrency."""
    job_type = JobType(job_type)
    default_alias, default_concurrency = DEFAULT_PROCESSOR_LAYOUT[job_type]
    definition = ProcessorDefinition(
        queue_alias=queue_alias or default_alias,
        job_type=job_type.value,
        concurrency=concurrency or default_concurrency,
        handler=handler,
    )
    registry.register(job_type.value, definition)
    return definition


def load_processor_modules(module_names: list[str]) -> None:
    """Import processor modules; each registers its handlers on import."""
    for module_name in module_names:
        importlib.import_module(module_name)
        logger.info("Processor module loaded", extra={"processor_module": module_name})


class JobWorker:
    """
    Broker-backed job worker.

    Features:
    - One delivery loop per concurrency slot for every registered processor
    - Consumers re-attached automatically after a broker reconnect
    - Periodic queue health snapshots
    - Graceful shutdown that lets in-flight deliveries settle
    """

    def __init__(
        self,
        settings: Settings,
        service: JobQueueService | None = None,
        registry: JobProcessorRegistry = job_processor_registry,
    ):
        self.settings = settings
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.registry = registry
        self._database: Database | None = None
        if service is None:
            self._database = Database(settings)
            service = build_job_queue_service(settings, self._database.SessionLocal)
        self.service = service
        self.running = False
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Connect, register processors and run until ``stop()``."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._stop_event.clear()
        logger.info(
            "Starting job worker",
            extra={"worker_id": self.worker_id, "processors": self.registry.list()},
        )

        try:
            if not await self.service.initialize():
                logger.warning(
                    "Broker unavailable at startup, processors attach on reconnect",
                    extra={"worker_id": self.worker_id},
                )

            for _, definition in self.registry.items():
                await self.service.register_processor(
                    definition.queue_alias,
                    definition.job_type,
                    definition.concurrency,
                    definition.handler,
                )

            health_task = None
            if self.settings.health_snapshot_interval_s > 0:
                health_task = asyncio.create_task(self._health_snapshot_loop())

            await self._stop_event.wait()

            if health_task is not None:
                health_task.cancel()
                await asyncio.gather(health_task, return_exceptions=True)
        finally:
            await self.service.shutdown()
            if self._database is not None:
                await self._database.close()
            self.running = False
            logger.info("Job worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Ask the worker to stop; ``start()`` returns once consumers settle."""
        logger.info("Stopping job worker", extra={"worker_id": self.worker_id})
        self._stop_event.set()

    async def _health_snapshot_loop(self) -> None:
        """Record a health snapshot for every physical queue on an interval."""
        while self.running:
            await asyncio.sleep(self.settings.health_snapshot_interval_s)
            for queue_name in QUEUE_EXCHANGES:
                try:
                    await self.service.record_health_snapshot(queue_name)
                except Exception:
                    logger.exception(
                        "Health snapshot failed", extra={"queue": queue_name}
                    )


async def run_worker(settings: Settings = default_settings) -> None:
    load_processor_modules(settings.job_processor_modules)
    worker = JobWorker(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))
    await worker.start()


def main() -> None:
    setup_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
