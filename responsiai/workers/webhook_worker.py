"""
In-process webhook worker pool.

The endpoint verifies a delivery and submits it here; a fixed number of
asyncio tasks drain a bounded queue and run the pipeline for each event.
submit() returns a future resolved with the ProcessResult (or the error).

Inline mode awaits that future and turns a failure into a 5xx so the
processor redelivers. In queued mode the processor already got its 200, so
a failed event is put back on the queue after an exponential delay instead,
up to `requeue_attempts` times.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Set

from responsiai.features.webhooks.pipeline import ProcessResult, WebhookPipeline
from responsiai.models.event import VerifiedEvent

logger = logging.getLogger("responsiai.webhooks.worker")

MAX_REQUEUE_DELAY_SECONDS = 300.0


def _mark_retrieved(future: asyncio.Future) -> None:
    # Nobody awaits the future when acknowledging early; the pipeline already logged the error
    if not future.cancelled():
        future.exception()


class QueueFullError(Exception):
    """Backpressure: the webhook queue is at capacity."""


@dataclass
class _Job:
    event: VerifiedEvent
    future: asyncio.Future
    requeue: bool
    attempt: int = 1


class WebhookWorkerPool:
    def __init__(
        self,
        pipeline: WebhookPipeline,
        workers: int = 4,
        queue_size: int = 1000,
        requeue_attempts: int = 5,
        requeue_base_seconds: float = 1.0,
    ) -> None:
        self.pipeline = pipeline
        self.worker_count = max(1, workers)
        self.queue_size = queue_size
        self.requeue_attempts = max(1, requeue_attempts)
        self.requeue_base_seconds = requeue_base_seconds
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._delayed: Set[asyncio.Task] = set()
        self._draining: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def qsize(self) -> int:
        return (self._queue.qsize() if self._queue else 0) + len(self._delayed)

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._draining = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"webhook-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"[webhooks] started {self.worker_count} workers (queue={self.queue_size})")

    async def stop(self, drain: bool = True) -> None:
        """Stop workers; with drain=True, finish queued and pending retries first.

        Pending retries skip the rest of their delay once draining starts.
        """
        if not self.running:
            return
        self._draining.set()
        if drain:
            while True:
                await self._queue.join()
                if not self._delayed:
                    break
                await asyncio.gather(*list(self._delayed), return_exceptions=True)
        for task in list(self._delayed):
            task.cancel()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, *self._delayed, return_exceptions=True)
        self._tasks = []
        # Anything left was never claimed; the processor's redelivery is the only retry
        while not self._queue.empty():
            job = self._queue.get_nowait()
            if not job.future.done():
                job.future.cancel()
        logger.info("[webhooks] workers stopped")

    def submit(self, event: VerifiedEvent, requeue_on_failure: bool = False) -> "asyncio.Future[ProcessResult]":
        """Queue an event. requeue_on_failure is for callers that don't await the result."""
        if not self.running:
            raise RuntimeError("worker pool is not running")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_mark_retrieved)
        try:
            self._queue.put_nowait(_Job(event, future, requeue_on_failure))
        except asyncio.QueueFull:
            raise QueueFullError("webhook queue is full") from None
        return future

    def _retry_delay(self, attempt: int) -> float:
        return min(self.requeue_base_seconds * (2 ** (attempt - 1)), MAX_REQUEUE_DELAY_SECONDS)

    async def _requeue_later(self, job: _Job, delay: float) -> None:
        try:
            await asyncio.wait_for(self._draining.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        await self._queue.put(job)

    def _schedule_retry(self, job: _Job) -> None:
        delay = self._retry_delay(job.attempt)
        job.attempt += 1
        logger.warning(
            f"[webhooks] requeueing event in {delay:.1f}s (attempt {job.attempt}/{self.requeue_attempts})",
            extra={"event_id": job.event.event_id, "event_type": job.event.event_type, "outcome": "requeued"},
        )
        task = asyncio.create_task(self._requeue_later(job, delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _run(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                result = await self.pipeline.process(job.event)
            except asyncio.CancelledError:
                if not job.future.done():
                    job.future.cancel()
                raise
            except Exception as e:
                # Already logged by the pipeline; the claim was released
                if job.requeue and job.attempt < self.requeue_attempts:
                    self._schedule_retry(job)
                    continue
                if job.requeue:
                    logger.error(
                        f"[webhooks] giving up after {job.attempt} attempts",
                        extra={"event_id": job.event.event_id, "event_type": job.event.event_type, "outcome": "dropped"},
                    )
                if not job.future.done():
                    job.future.set_exception(e)
                else:
                    logger.debug(f"[webhooks] worker {index} result dropped")
            else:
                if not job.future.done():
                    job.future.set_result(result)
            finally:
                self._queue.task_done()
