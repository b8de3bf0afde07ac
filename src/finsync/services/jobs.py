"""Bounded background job queue.

Budget re-labeling and recategorization run here instead of as detached
tasks, so every job has an observable status and a full queue pushes back
on the caller with ``JobQueueFullError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal
import uuid

import loguru
from loguru import logger

from finsync.errors import JobQueueFullError

JobStatus = Literal["queued", "running", "succeeded", "failed"]
JobFn = Callable[[], Awaitable[object]]


@dataclass
class JobHandle:
    job_id: str
    name: str
    status: JobStatus = "queued"
    error: str | None = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def done(self) -> bool:
        return self.status in ("succeeded", "failed")

    async def wait(self) -> JobHandle:
        await self._done.wait()
        return self


class JobQueueLogger:
    """Handles all logging for the background job queue."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def submitted(self, handle: JobHandle, pending: int) -> None:
        self._logger.bind(job_id=handle.job_id, pending=pending).debug(
            "Queued job {} ({}), {} pending", handle.name, handle.job_id, pending
        )

    def rejected(self, name: str, max_pending: int) -> None:
        self._logger.bind(job=name).warning(
            "Rejected job {}: queue is full ({} pending)", name, max_pending
        )

    def succeeded(self, handle: JobHandle) -> None:
        self._logger.bind(job_id=handle.job_id).info(
            "Job {} ({}) succeeded", handle.name, handle.job_id
        )

    def failed(self, handle: JobHandle, error: Exception) -> None:
        self._logger.bind(job_id=handle.job_id).error(
            "Job {} ({}) failed: {}", handle.name, handle.job_id, error
        )


class JobQueue:
    """Fixed pool of asyncio workers draining a bounded queue."""

    def __init__(self, *, max_workers: int = 2, max_pending: int = 100) -> None:
        if max_workers < 1 or max_pending < 1:
            raise ValueError("max_workers and max_pending must be at least 1")
        self._max_workers = max_workers
        self._max_pending = max_pending
        self._queue: asyncio.Queue[tuple[JobHandle, JobFn]] = asyncio.Queue(
            maxsize=max_pending
        )
        self._workers: list[asyncio.Task[None]] = []
        self._logger = JobQueueLogger()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Spawn the workers. Must be called from a running event loop."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._work(), name=f"finsync-job-worker-{idx}")
            for idx in range(self._max_workers)
        ]

    def submit(self, name: str, fn: JobFn) -> JobHandle:
        """Queue ``fn`` and return its handle.

        Raises:
            JobQueueFullError: ``max_pending`` jobs are already waiting
        """
        self.start()
        handle = JobHandle(job_id=uuid.uuid4().hex, name=name)
        try:
            self._queue.put_nowait((handle, fn))
        except asyncio.QueueFull as e:
            self._logger.rejected(name, self._max_pending)
            raise JobQueueFullError(
                f"Job queue is full ({self._max_pending} pending)"
            ) from e
        self._logger.submitted(handle, self._queue.qsize())
        return handle

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def stop(self) -> None:
        """Finish queued jobs, then shut the workers down."""
        if self._workers:
            await self._queue.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def __aenter__(self) -> JobQueue:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _work(self) -> None:
        while True:
            handle, fn = await self._queue.get()
            handle.status = "running"
            try:
                await fn()
            except Exception as e:  # noqa: BLE001
                handle.status = "failed"
                handle.error = str(e) or type(e).__name__
                self._logger.failed(handle, e)
            else:
                handle.status = "succeeded"
                self._logger.succeeded(handle)
            finally:
                handle._done.set()
                self._queue.task_done()
