"""
Asynchronous event intake.

Events are sharded by referee id onto a fixed set of worker queues, so every
event for one driver is evaluated by the same worker in arrival order while
different drivers proceed in parallel. The evaluator itself is synchronous and
runs in a worker thread.
"""

import asyncio
import zlib
from typing import Optional

import structlog

from core.errors import ValidationError
from rules.evaluator import Event, PolicyEvaluator
from rules.models import EvaluationOutcome

logger = structlog.get_logger()


def shard_for(referee_id: str, workers: int) -> int:
    return zlib.crc32(referee_id.encode("utf-8")) % workers


class EventIngestor:
    def __init__(self, evaluator: PolicyEvaluator, workers: int = 4, queue_size: int = 1000):
        if workers < 1:
            raise ValidationError("At least one ingest worker is required")
        self.evaluator = evaluator
        self.workers = workers
        self.queue_size = queue_size
        self._queues: list[asyncio.Queue] = []
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self.running:
            logger.warning("ingest.already_running")
            return
        self._queues = [asyncio.Queue(maxsize=self.queue_size) for _ in range(self.workers)]
        self._tasks = [asyncio.create_task(self._worker(i, q)) for i, q in enumerate(self._queues)]
        logger.info("ingest.started", workers=self.workers, queue_size=self.queue_size)

    async def submit(self, event: Event) -> "asyncio.Future[EvaluationOutcome]":
        """Queue an event; waits while the target shard is full.

        The returned future resolves to the evaluation outcome, or carries the
        error the evaluator raised.
        """
        if not self.running:
            raise ValidationError("Event ingestor is not running")
        future = asyncio.get_running_loop().create_future()
        await self._queues[shard_for(event.referee_id, self.workers)].put((event, future))
        return future

    async def process(self, event: Event) -> EvaluationOutcome:
        return await (await self.submit(event))

    async def join(self) -> None:
        """Wait until every queued event has been evaluated."""
        await asyncio.gather(*(q.join() for q in self._queues))

    async def stop(self) -> None:
        """Drain outstanding events, then shut the workers down."""
        if not self.running:
            return
        await self.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queues = []
        logger.info("ingest.stopped")

    async def _worker(self, index: int, queue: asyncio.Queue) -> None:
        while True:
            event, future = await queue.get()
            try:
                with structlog.contextvars.bound_contextvars(worker=index, event_key=event.idempotency_key):
                    outcome = await asyncio.to_thread(self.evaluator.handle, event)
            except Exception as e:
                logger.error("ingest.event_failed", worker=index, event_key=event.idempotency_key, error=str(e))
                self._settle(future, error=e)
            else:
                self._settle(future, outcome=outcome)
            finally:
                queue.task_done()

    @staticmethod
    def _settle(
        future: asyncio.Future,
        outcome: Optional[EvaluationOutcome] = None,
        error: Optional[Exception] = None,
    ) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(outcome)
