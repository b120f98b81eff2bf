"""
Welcome Worker — Pulls welcome jobs from the queue and delivers them.

Runs as an async task inside the API process or as its own process
(scripts/run_worker.py). For horizontal scaling, run several workers with
the same consumer_group; each job goes to exactly one of them.

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌────────────┐
  │  Producer    │──pub──▶│  jobs.welcome    │──────▶│   Worker   │
  │ (subscribe)  │       │ (Redis Stream)   │       │  (prefetch)│
  └──────────────┘       └─────────────────┘       └─────┬──────┘
                                  ▲                       │
                                  │ promote               │ long wait / retry
                         ┌────────┴────────┐              │
                         │ :delayed (zset)  │◀─────────────┘
                         └─────────────────┘              │
                         ┌─────────────────┐              │
                         │ :dlq             │◀── malformed / exhausted
                         └─────────────────┘

Per delivery:
  1. Parse; malformed → dead-letter + ack (never redelivered)
  2. wait = max(0, delay_ms - (now - created_at))
  3. wait > max_inline_wait_ms → park in :delayed at created_at + delay_ms, ack
     0 < wait               → sleep in its own task, then process, then ack
     wait == 0              → process, then ack
  4. Processing error → retry copy with backoff, or dead-letter when exhausted
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

from database.store_base import BaseStore
from job_queue.message_queue import DEFAULT_GROUP, Delivery, MessageQueue, Queues
from models.schemas import (
    MalformedJobError, Message, WelcomeJob, format_welcome_content, now_ms,
)

logger = structlog.get_logger()


def compute_wait_ms(job: WelcomeJob, now: int) -> int:
    """Remaining delay, counted from the job's creation, never negative."""
    return max(0, job.delay_ms - (now - job.created_at))


async def process_welcome_job(store: BaseStore, job: WelcomeJob) -> Message:
    """Write the welcome DM from creator to subscriber and bump sent_count."""
    p = job.payload
    return await store.deliver_welcome(
        sender_id=p.creator_id,
        receiver_id=p.subscriber_id,
        content=format_welcome_content(p.subject, p.content),
        welcome_id=p.welcome_message_id,
    )


@dataclass
class WorkerStats:
    processed: int = 0
    failed: int = 0
    retried: int = 0
    deferred: int = 0
    dead_lettered: int = 0
    malformed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class WelcomeWorker:
    """
    Consumes welcome jobs with at most `prefetch` unacknowledged at once.

    Usage:
        worker = WelcomeWorker(queue, store)
        await worker.start()               # blocks until stop()
        await worker.start_background()    # returns immediately, runs as task
        await worker.stop()
    """

    def __init__(
        self,
        queue: MessageQueue,
        store: BaseStore,
        queue_name: str = Queues.WELCOME,
        consumer_group: str = DEFAULT_GROUP,
        consumer_name: str = "",
        prefetch: int = 5,
        max_inline_wait_ms: int = 60_000,
        retry_backoff_ms: int = 60_000,
        promote_interval_s: float = 5,
        reclaim_idle_ms: int = 300_000,
        reclaim_interval_s: float = 30,
        block_ms: int = 2000,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.queue = queue
        self.store = store
        self.queue_name = queue_name
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        self.prefetch = prefetch
        self.max_inline_wait_ms = max_inline_wait_ms
        self.retry_backoff_ms = retry_backoff_ms
        self.reclaim_idle_ms = reclaim_idle_ms
        self.reclaim_interval_ms = int(reclaim_interval_s * 1000)
        self.block_ms = block_ms
        self.stats = WorkerStats()
        self.promoter = DelayedJobPromoter(queue, queue_name, interval_seconds=promote_interval_s)
        self._clock = clock
        self._sleep = sleep
        self._inflight: dict[str, asyncio.Task] = {}
        self._last_reclaim = 0
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> bool:
        """
        Consume until stop() is called. Returns False straight away when the
        transport is unavailable; the feature is then off for this process.
        """
        if not await self.queue.connect():
            logger.warning("welcome_worker_disabled", reason="queue unavailable")
            return False

        await self.queue.ensure_queue(self.queue_name, self.consumer_group)
        self._running = True
        await self.promoter.start_background()
        logger.info("welcome_worker_started",
                    queue=self.queue_name,
                    group=self.consumer_group,
                    consumer=self.consumer_name,
                    prefetch=self.prefetch)

        while self._running:
            try:
                if self._clock() - self._last_reclaim >= self.reclaim_interval_ms:
                    await self.reclaim()
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("welcome_worker_error", queue=self.queue_name, error=str(e))
                await self._sleep(1)
        return True

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        self._task = asyncio.create_task(self.start())
        return self._task

    async def stop(self):
        """
        Stop consuming. Jobs still waiting in-process are cancelled before
        their ack, so they stay pending in the broker and get reclaimed.
        """
        self._running = False
        tasks = list(self._inflight.values())
        if self._task:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._task = None
        await self.promoter.stop()
        logger.info("welcome_worker_stopped", stats=self.stats.as_dict())

    # ── Receiving ─────────────────────────────────────────

    async def poll_once(self, block_ms: Optional[int] = None) -> int:
        """Receive and dispatch one batch; returns the number of deliveries."""
        free = self.prefetch - len(self._inflight)
        if free <= 0:
            await asyncio.wait(list(self._inflight.values()),
                               return_when=asyncio.FIRST_COMPLETED)
            return 0

        deliveries = await self.queue.receive(
            self.queue_name,
            group=self.consumer_group,
            consumer=self.consumer_name,
            count=free,
            block_ms=self.block_ms if block_ms is None else block_ms,
        )
        for delivery in deliveries:
            await self.handle_delivery(delivery)
        return len(deliveries)

    async def reclaim(self) -> int:
        """
        Pick up deliveries a crashed consumer left unacknowledged, in batches
        no larger than the free prefetch slots. Keeps claiming until the broker
        has nothing stale left; when the window fills first, the reclaim stays
        due and resumes on the next loop.
        """
        handled = 0
        while True:
            free = self.prefetch - len(self._inflight)
            if free <= 0:
                return handled
            deliveries = await self.queue.reclaim_stale(
                self.queue_name,
                group=self.consumer_group,
                consumer=self.consumer_name,
                min_idle_ms=self.reclaim_idle_ms,
                count=free,
            )
            for delivery in deliveries:
                if delivery.delivery_id in self._inflight:
                    continue
                await self.handle_delivery(delivery)
                handled += 1
            if len(deliveries) < free:
                self._last_reclaim = self._clock()
                return handled

    async def handle_delivery(self, delivery: Delivery):
        try:
            job = WelcomeJob.parse(delivery.body)
        except MalformedJobError as e:
            self.stats.malformed += 1
            logger.warning("welcome_job_malformed",
                           delivery_id=delivery.delivery_id,
                           error=str(e))
            await self._dead_letter(delivery, "malformed")
            return

        wait_ms = compute_wait_ms(job, self._clock())
        if wait_ms > self.max_inline_wait_ms:
            await self._defer(delivery, job)
        elif wait_ms > 0:
            self._spawn(delivery, job, wait_ms)
        else:
            await self._execute(delivery, job)

    # ── Scheduling ────────────────────────────────────────

    def _spawn(self, delivery: Delivery, job: WelcomeJob, wait_ms: int):
        task = asyncio.create_task(self._run_after(delivery, job, wait_ms))
        self._inflight[delivery.delivery_id] = task
        task.add_done_callback(lambda _t: self._inflight.pop(delivery.delivery_id, None))

    async def _run_after(self, delivery: Delivery, job: WelcomeJob, wait_ms: int):
        logger.debug("welcome_job_waiting", job_id=job.job_id, wait_ms=wait_ms)
        await self._sleep(wait_ms / 1000)
        await self._execute(delivery, job)

    async def _defer(self, delivery: Delivery, job: WelcomeJob):
        """Park the job in the delayed index so no in-process timer holds it."""
        if await self.queue.publish_delayed(self.queue_name, job, job.due_at):
            self.stats.deferred += 1
            logger.info("welcome_job_deferred", job_id=job.job_id, due_at=job.due_at)
            await self._ack(delivery)
            return

        # Broker refused the park. Holding the delivery here is only safe while
        # the wait ends before another consumer could reclaim it.
        wait_ms = compute_wait_ms(job, self._clock())
        if wait_ms < self.reclaim_idle_ms:
            self._spawn(delivery, job, wait_ms)
        else:
            logger.warning("welcome_job_defer_failed",
                           job_id=job.job_id,
                           wait_ms=wait_ms,
                           action="left pending for reclaim")

    # ── Processing ────────────────────────────────────────

    async def _execute(self, delivery: Delivery, job: WelcomeJob):
        try:
            message = await process_welcome_job(self.store, job)
        except Exception as e:
            self.stats.failed += 1
            logger.error("welcome_job_failed",
                         job_id=job.job_id,
                         attempt=job.attempt,
                         error=str(e))
            await self._retry_or_dead_letter(delivery, job, e)
            return

        self.stats.processed += 1
        await self._ack(delivery)
        logger.info("welcome_job_processed",
                    job_id=job.job_id,
                    message_id=message.id,
                    welcome_id=job.payload.welcome_message_id)

    async def _retry_or_dead_letter(self, delivery: Delivery, job: WelcomeJob, error: Exception):
        if job.attempt + 1 >= job.max_attempts:
            await self._dead_letter(delivery, f"max_attempts: {error}")
            return

        retry = job.next_attempt()
        retry_at = self._clock() + self.retry_backoff_ms * (2 ** job.attempt)
        if await self.queue.publish_delayed(self.queue_name, retry, retry_at):
            self.stats.retried += 1
            logger.info("welcome_job_scheduled_for_retry",
                        job_id=job.job_id,
                        attempt=retry.attempt,
                        retry_at=retry_at)
            await self._ack(delivery)
        else:
            await self._reject(delivery)

    async def _dead_letter(self, delivery: Delivery, reason: str):
        if await self.queue.dead_letter(self.queue_name, delivery.body, reason):
            self.stats.dead_lettered += 1
            await self._ack(delivery)
        else:
            await self._reject(delivery)

    async def _ack(self, delivery: Delivery):
        try:
            await self.queue.ack(self.queue_name, delivery, self.consumer_group)
        except Exception as e:
            # Left pending in the broker; a later reclaim redelivers it
            logger.error("welcome_job_ack_failed",
                         delivery_id=delivery.delivery_id,
                         error=str(e))

    async def _reject(self, delivery: Delivery):
        try:
            await self.queue.reject(self.queue_name, delivery, self.consumer_group)
        except Exception as e:
            logger.error("welcome_job_reject_failed",
                         delivery_id=delivery.delivery_id,
                         error=str(e))


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves delayed/retry jobs whose
    visible-at time has arrived onto the live queue.
    """

    def __init__(self, queue: MessageQueue, queue_name: str = Queues.WELCOME,
                 interval_seconds: float = 5):
        self.queue = queue
        self.queue_name = queue_name
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

    async def _run(self):
        logger.info("delayed_promoter_started", queue=self.queue_name, interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed(self.queue_name)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", queue=self.queue_name, error=str(e))
            await asyncio.sleep(self.interval)
