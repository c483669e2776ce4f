"""Worker pool pulling jobs from the queue into the execution engine.

``concurrency`` worker tasks each lease one job at a time, which bounds the
number of in-flight provider calls. A job whose processing raises is left
un-acked and comes back when its lease expires.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from metricshub.config import settings
from metricshub.execution.engine import ExecutionEngine, ProcessResult
from metricshub.jobs.queue import Job, JobQueue

logger = structlog.get_logger()


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        engine: ExecutionEngine,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self._queue = queue
        self._engine = engine
        self._concurrency = concurrency or settings.worker_concurrency
        self._poll_interval = poll_interval if poll_interval is not None else settings.queue_poll_interval_s
        self._workers: list[asyncio.Task[None]] = []
        self._running = False

        self._processed = 0
        self._failed = 0
        self._in_flight = 0

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for i in range(self._concurrency):
            self._workers.append(
                asyncio.create_task(self._worker(f"worker-{i}"), name=f"execution-worker-{i}")
            )
        logger.info("worker_pool_started", concurrency=self._concurrency, worker_id=self._engine.worker_id)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("worker_pool_stopped", processed=self._processed, failed=self._failed)

    async def run_once(self) -> int:
        """Process every visible job once, concurrently up to ``concurrency``."""
        handled = 0
        while True:
            batch = []
            for _ in range(self._concurrency):
                job = await self._queue.dequeue(self._engine.worker_id)
                if job is None:
                    break
                batch.append(job)
            if not batch:
                return handled
            await asyncio.gather(*(self._handle(job, "once") for job in batch))
            handled += len(batch)

    async def _worker(self, name: str) -> None:
        while self._running:
            try:
                job = await self._queue.dequeue(self._engine.worker_id)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("job_dequeue_failed", worker=name, error=str(e))
                await asyncio.sleep(self._poll_interval)
                continue

            if job is None:
                await asyncio.sleep(self._poll_interval)
                continue
            await self._handle(job, name)

    async def _handle(self, job: Job, worker: str) -> ProcessResult | None:
        self._in_flight += 1
        try:
            result = await self._engine.process(job)
            self._processed += 1
            logger.debug("job_processed", worker=worker, job_id=job.job_id, outcome=result.outcome.value)
            return result
        except Exception as e:
            self._failed += 1
            logger.error(
                "job_processing_error",
                worker=worker,
                job_id=job.job_id,
                installation_id=str(job.installation_id),
                error=str(e),
                exc_info=True,
            )
            return None
        finally:
            self._in_flight -= 1

    @property
    def metrics(self) -> dict[str, Any]:
        return {
            "concurrency": self._concurrency,
            "running": self._running,
            "in_flight": self._in_flight,
            "processed": self._processed,
            "failed": self._failed,
        }
