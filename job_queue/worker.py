"""
Delivery Worker — Drains the job queue through the router.

Runs as a fixed pool of async slots inside the application process.
For horizontal scaling, run more processes against the same Redis queue;
the queue hands each job to exactly one active holder.

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌────────────┐
  │ POST /webhook│──────▶│  job queue       │──────▶│  Worker    │
  └──────────────┘       │ (waiting)        │       │  slot(s)   │
                         └────────▲────────┘       └─────┬──────┘
                                  │                       │ route()
                                  │ nack (backoff)        ▼
                                  │                ┌────────────┐
                                  └────────────────│  Router    │──▶ destination API
                                                   └────────────┘
                         ┌─────────────────┐              │
                         │  completed /    │◀── ack ──────┘
                         │  failed         │
                         └─────────────────┘
"""
from __future__ import annotations

import asyncio
import time
from typing import Optional

import structlog

from job_queue.message_queue import Job, JobQueue, get_job_queue

logger = structlog.get_logger()


class DeliveryWorker:
    """
    Pulls jobs and hands each to the router, translating the outcome into
    ack/nack. Retry policy belongs to the queue alone.

    Usage:
        worker = DeliveryWorker(router, queue, concurrency=5)
        await worker.start()                 # spawns slots, returns immediately
        await worker.stop(grace_period=10)   # drain in-flight, then cancel
    """

    def __init__(
        self,
        router,  # type: core.router.ConversionRouter
        queue: JobQueue = None,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        error_backoff: float = 1.0,
    ):
        self.router = router
        self.queue = queue or get_job_queue()
        self.concurrency = max(concurrency, 1)
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._in_flight: dict[int, str] = {}   # slot -> job id
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    @property
    def in_flight(self) -> list[str]:
        return list(self._in_flight.values())

    async def start(self):
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run_slot(slot), name=f"delivery-slot-{slot}")
            for slot in range(self.concurrency)
        ]
        logger.info("delivery_worker_started", concurrency=self.concurrency)

    async def stop(self, grace_period: float = 10.0):
        """
        Stop taking new jobs, give in-flight deliveries up to grace_period
        seconds, then cancel. A cancelled job stays active in the queue and
        is reclaimed once its lease expires.
        """
        if not self._tasks:
            return
        self._stopping.set()
        logger.info("delivery_worker_stopping",
                    in_flight=len(self._in_flight),
                    grace_period=grace_period)

        _, pending = await asyncio.wait(self._tasks, timeout=grace_period)
        if pending:
            logger.warning("delivery_worker_forced_stop",
                           cancelled_slots=len(pending),
                           job_ids=self.in_flight)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._tasks.clear()
        logger.info("delivery_worker_stopped",
                    processed=self.processed,
                    failed=self.failed)

    async def _idle(self, seconds: float):
        """Sleep, waking early when stop() is called."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_slot(self, slot: int):
        logger.debug("delivery_slot_started", slot=slot)
        while not self._stopping.is_set():
            try:
                job = await self.queue.dequeue()
            except Exception as e:
                logger.error("dequeue_error", slot=slot, error=str(e))
                await self._idle(self.error_backoff)
                continue

            if job is None:
                await self._idle(self.poll_interval)
                continue

            self._in_flight[slot] = job.id
            try:
                await self.process(job)
            finally:
                self._in_flight.pop(slot, None)

    async def process(self, job: Job):
        """
        Deliver a single job.

        Flow:
        1. Route the payload (validation + destination call)
        2. Success → ack with the lease token
        3. Any exception → nack; the queue decides retry vs failed
        """
        logger.info("processing_job", job_id=job.id, attempt=job.attempts)
        started = time.monotonic()

        try:
            outcome = await self.router.route(job.payload, job_id=job.id)
        except Exception as e:
            elapsed_ms = round((time.monotonic() - started) * 1000, 1)
            self.failed += 1
            logger.error("job_delivery_failed",
                         job_id=job.id,
                         attempt=job.attempts,
                         route=getattr(e, "route", None),
                         error=str(e),
                         duration_ms=elapsed_ms)
            await self._signal("nack", job, error=e)
            return

        elapsed_ms = round((time.monotonic() - started) * 1000, 1)
        self.processed += 1
        logger.info("job_delivered",
                    job_id=job.id,
                    route=outcome.route,
                    events_received=outcome.result.events_received,
                    duration_ms=elapsed_ms)
        await self._signal("ack", job)

    async def _signal(self, operation: str, job: Job, **kwargs):
        # A lost ack/nack leaves the job active until its lease expires.
        try:
            await getattr(self.queue, operation)(job.id, token=job.token, **kwargs)
        except Exception as e:
            logger.error("job_signal_failed",
                         job_id=job.id,
                         operation=operation,
                         error=str(e))


# ──────────────────────────────────────────────────────────────
#  Queue Janitor
# ──────────────────────────────────────────────────────────────

class QueueJanitor:
    """
    Background task that periodically returns stalled jobs to waiting and
    evicts terminal jobs past their retention window.
    """

    def __init__(self, queue: JobQueue = None, interval_seconds: float = 5.0):
        self.queue = queue or get_job_queue()
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def sweep(self) -> dict[str, int]:
        reclaimed = await self.queue.reclaim_stalled()
        evicted = await self.queue.clean()
        return {"reclaimed": len(reclaimed), "evicted": evicted}

    async def _run(self):
        logger.info("queue_janitor_started", interval=self.interval)
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_janitor_error", error=str(e))
            await asyncio.sleep(self.interval)
