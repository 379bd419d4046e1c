from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from pydantic import ValidationError
from redis.exceptions import RedisError

from statsgoblin.common.errors import StoreError
from statsgoblin.events.schema import SearchMetricEvent
from statsgoblin.indexer.writer import IndexWriter
from statsgoblin.queue.redis_queue import Job, RedisJobQueue

log = logging.getLogger(__name__)


class Outcome(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class HandlerResult:
    ok: bool
    retryable: bool = False
    error: str | None = None

    @classmethod
    def success(cls) -> HandlerResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str, retryable: bool) -> HandlerResult:
        return cls(ok=False, retryable=retryable, error=error)


Handler = Callable[[Job], Awaitable[HandlerResult]]


def backoff_delay(attempts_made: int, base: float, cap: float) -> float:
    """Exponential backoff before the next attempt: base, 2*base, 4*base ... capped."""
    return min(cap, base * (2 ** max(0, attempts_made - 1)))


class MetricEventHandler:
    """Decodes a job payload and writes the event to its partition."""

    def __init__(self, writer: IndexWriter):
        self.writer = writer

    async def __call__(self, job: Job) -> HandlerResult:
        try:
            event = SearchMetricEvent.model_validate_json(job.data)
        except ValidationError as e:
            return HandlerResult.failure(f"malformed payload: {e.error_count()} validation error(s)", retryable=False)

        log.info("processing_metric", extra={"job_id": job.id, "attempt": job.attempts_made, "query": event.query})
        try:
            await self.writer.write(event)
        except StoreError as e:
            return HandlerResult.failure(str(e), retryable=e.retryable)

        log.info(
            "metric_indexed",
            extra={"job_id": job.id, "request_id": event.request_id, "latency_ms": event.execution_time_ms},
        )
        return HandlerResult.success()


class IngestionConsumer:
    def __init__(
        self,
        queue: RedisJobQueue,
        handler: Handler,
        concurrency: int = 4,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        poll_interval: float = 0.5,
        stalled_check_interval: float = 15.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.poll_interval = poll_interval
        self.stalled_check_interval = stalled_check_interval
        self._stopping = asyncio.Event()

    async def process_next(self) -> Outcome | None:
        """Run at most one job through the handler; None when the queue is empty."""
        job = await self.queue.fetch()
        if job is None:
            return None

        try:
            result = await self.handler(job)
        except Exception as e:
            log.exception("handler_crashed", extra={"job_id": job.id, "attempt": job.attempts_made})
            result = HandlerResult.failure(f"{type(e).__name__}: {e}", retryable=True)

        return await self._settle(job, result)

    async def _settle(self, job: Job, result: HandlerResult) -> Outcome:
        if result.ok:
            await self.queue.ack(job)
            return Outcome.ACKNOWLEDGED

        reason = result.error or "unknown error"
        if result.retryable and job.attempts_made < self.max_attempts:
            delay = backoff_delay(job.attempts_made, self.backoff_base, self.backoff_max)
            if not await self.queue.retry(job, delay, reason):
                return Outcome.RETRIED
            log.warning(
                "job_retry_scheduled",
                extra={"job_id": job.id, "attempt": job.attempts_made, "delay_seconds": delay, "error": reason},
            )
            return Outcome.RETRIED

        if not await self.queue.dead_letter(job, reason):
            # already back on the wait list, so it will run again
            return Outcome.RETRIED
        log.error(
            "job_dead_lettered",
            extra={"job_id": job.id, "attempt": job.attempts_made, "error": reason, "outcome": Outcome.DEAD_LETTERED.value},
        )
        return Outcome.DEAD_LETTERED

    async def _worker(self, worker: int) -> None:
        while not self._stopping.is_set():
            try:
                outcome = await self.process_next()
            except RedisError as e:
                log.error("queue_unavailable", extra={"worker": worker, "error": str(e)})
                outcome = None
            except Exception:
                log.exception("worker_iteration_failed", extra={"worker": worker, "queue": self.queue.name})
                outcome = None
            if outcome is None:
                await self._sleep(self.poll_interval)

    async def _stall_watch(self) -> None:
        while not self._stopping.is_set():
            await self._sleep(self.stalled_check_interval)
            try:
                await self.queue.requeue_stalled()
            except RedisError as e:
                log.error("stall_check_failed", extra={"queue": self.queue.name, "error": str(e)})

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Run the worker pool until ``stop()`` is called."""
        self._stopping.clear()
        await self.queue.requeue_stalled()
        log.info("consumer_started", extra={"queue": self.queue.name, "count": self.concurrency})

        watcher = asyncio.create_task(self._stall_watch())
        try:
            await asyncio.gather(*(self._worker(i) for i in range(self.concurrency)))
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            log.info("consumer_stopped", extra={"queue": self.queue.name})

    def stop(self) -> None:
        self._stopping.set()
