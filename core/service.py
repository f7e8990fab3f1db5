"""
Relay Service — Composes queue, router, worker and janitor into one
lifecycle owned by the application.

  start():  connect queue → spawn worker slots → start janitor
  stop():   stop janitor → drain worker (grace period) → close clients → close queue
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from config.settings import Settings, get_settings
from core.router import ConversionRouter
from destinations.facebook import FacebookConversionsClient
from job_queue.message_queue import JobQueue, create_job_queue
from job_queue.worker import DeliveryWorker, QueueJanitor
from models.schemas import JobOptions

logger = structlog.get_logger()


class RelayService:
    """Explicit start/stop lifecycle for the delivery pipeline."""

    def __init__(
        self,
        settings: Settings = None,
        queue: JobQueue = None,
        router: ConversionRouter = None,
    ):
        self.settings = settings or get_settings()
        self.queue = queue or create_job_queue(self.settings.queue)
        self.router = router or self._build_router()
        self.worker = DeliveryWorker(
            self.router,
            self.queue,
            concurrency=self.settings.queue.concurrency,
            poll_interval=self.settings.queue.poll_interval,
        )
        self.janitor = QueueJanitor(self.queue, interval_seconds=self.settings.queue.maintenance_interval)
        self._started = False

    def _build_router(self) -> ConversionRouter:
        router = ConversionRouter(default_destination=self.settings.router.default_destination)
        router.register_route("facebook", FacebookConversionsClient(self.settings.facebook))
        return router

    @property
    def started(self) -> bool:
        return self._started

    async def start(self):
        if self._started:
            return
        await self.queue.connect()
        await self.worker.start()
        await self.janitor.start_background()
        self._started = True
        logger.info("relay_service_started",
                    queue_backend=self.settings.queue.backend,
                    routes=sorted(self.router.routes))

    async def stop(self, grace_period: Optional[float] = None):
        if not self._started:
            return
        if grace_period is None:
            grace_period = self.settings.server.shutdown_grace_period

        await self.janitor.stop()
        await self.worker.stop(grace_period)
        await self.router.close()
        await self.queue.close()
        self._started = False
        logger.info("relay_service_stopped")

    async def submit(self, payload: dict[str, Any], options: JobOptions = None) -> str:
        """Enqueue an accepted webhook; never waits on delivery."""
        return await self.queue.enqueue(payload, options)

    async def health(self) -> dict[str, Any]:
        """Queue counts plus destination health. Raises QueueUnavailable."""
        stats = await self.queue.stats()
        return {
            "queue": stats.to_dict(),
            "destinations": await self.router.health_check(),
            "worker": {
                "running": self.worker.running,
                "in_flight": len(self.worker.in_flight),
                "processed": self.worker.processed,
                "failed": self.worker.failed,
            },
        }
