"""Worker loops that claim jobs and run their handlers."""

from __future__ import annotations

import asyncio
import functools
import logging
import traceback
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    CircuitOpenFailure,
    CuratorError,
    InfrastructureFailure,
    JobCancelled,
    TransientProviderFailure,
    ValidationFailure,
)
from ..models import JobView
from .circuit_breaker import CircuitBreaker
from .job_queue import JobQueue

logger = logging.getLogger(__name__)


class JobContext:
    """What a handler sees of the job it is running."""

    def __init__(self, job: JobView, queue: JobQueue):
        self.job = job
        self._queue = queue

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload

    @property
    def priority(self) -> int:
        return self.job.priority

    @property
    def queue(self) -> JobQueue:
        return self._queue

    async def checkpoint(self) -> None:
        """Raise :class:`JobCancelled` if cancellation was requested for this job."""

        if await self._queue.is_cancel_requested(self.job.id):
            raise JobCancelled(f"Job {self.job.id} cancelled")

    async def progress(
        self, current: int, total: int | None = None, message: str | None = None
    ) -> None:
        await self._queue.update_progress(self.job.id, current, total, message)


Handler = Callable[[JobContext], Awaitable[Any]]


@dataclass(slots=True)
class HandlerSpec:
    handler: Handler
    timeout: float


def classify_failure(exc: BaseException) -> BaseException:
    """Map an arbitrary handler exception onto the failure taxonomy."""

    if isinstance(exc, CuratorError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return TransientProviderFailure("Job exceeded its soft timeout")
    if isinstance(exc, SQLAlchemyError):
        return InfrastructureFailure(f"Database error: {exc.__class__.__name__}")
    if isinstance(exc, (ValidationError, KeyError)):
        return ValidationFailure(f"Invalid job payload: {exc}")
    return TransientProviderFailure(f"{exc.__class__.__name__}: {exc}")


class WorkerPool:
    """A fixed number of polling loops sharing one queue and handler registry."""

    def __init__(
        self,
        queue: JobQueue,
        *,
        concurrency: int = 1,
        poll_interval: float = 1.0,
        default_timeout: float = 120.0,
        infra_breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._queue = queue
        self._concurrency = max(concurrency, 1)
        self._poll_interval = poll_interval
        self._default_timeout = default_timeout
        self._infra_breaker = infra_breaker or CircuitBreaker("database")
        self._sleep = sleep
        self._handlers: dict[str, HandlerSpec] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._unsettled: dict[int, Callable[[], Awaitable[Any]]] = {}

    def register(
        self, job_type: str, handler: Handler, *, timeout: float | None = None
    ) -> None:
        self._handlers[job_type] = HandlerSpec(
            handler=handler, timeout=timeout or self._default_timeout
        )

    @property
    def job_types(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        for index in range(self._concurrency):
            self._tasks.append(asyncio.create_task(self._loop(index)))
        logger.info("Started %s worker loop(s)", self._concurrency)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

    async def _loop(self, index: int) -> None:
        while True:
            try:
                ran = await self.run_once()
            except CircuitOpenFailure:
                ran = False
            except InfrastructureFailure as exc:
                logger.warning("Worker %s cannot reach the database: %s", index, exc)
                ran = False
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Worker %s loop error: %s", index, exc)
                ran = False
            if ran:
                # Let other loops and request handlers run between jobs.
                await asyncio.sleep(0)
            else:
                await self._sleep(self._poll_interval)

    async def run_once(self) -> bool:
        """Claim and execute one job; return whether there was one.

        Settlements that could not be written earlier are retried first, and a
        job is only claimed once none are outstanding.
        """

        await self._retry_unsettled()
        job = await self._infra_breaker.call(self._claim)
        if job is None:
            return False
        await self.execute(job)
        return True

    @property
    def unsettled(self) -> tuple[int, ...]:
        return tuple(self._unsettled)

    async def _claim(self) -> JobView | None:
        try:
            return await self._queue.claim_next()
        except SQLAlchemyError as exc:
            raise InfrastructureFailure(
                f"Could not claim a job: {exc.__class__.__name__}", resource="database"
            ) from exc

    async def _persist(
        self, operation: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        try:
            return await operation(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise InfrastructureFailure(
                f"Could not record a job result: {exc.__class__.__name__}",
                resource="database",
            ) from exc

    async def _settle(
        self, job_id: int, operation: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> None:
        """Write a job's outcome, keeping it for a later retry if the database is down."""

        settle = functools.partial(operation, job_id, *args, **kwargs)
        try:
            await self._infra_breaker.call(self._persist, settle)
        except (InfrastructureFailure, CircuitOpenFailure) as exc:
            logger.warning("Job %s result not recorded yet: %s", job_id, exc)
            self._unsettled[job_id] = settle

    async def _retry_unsettled(self) -> None:
        for job_id, settle in list(self._unsettled.items()):
            await self._infra_breaker.call(self._persist, settle)
            del self._unsettled[job_id]
            logger.info("Recorded the deferred result of job %s", job_id)

    async def execute(self, job: JobView) -> None:
        spec = self._handlers.get(job.type)
        if spec is None:
            await self._settle(
                job.id,
                self._queue.fail,
                ValidationFailure(f"No handler registered for job type {job.type}"),
            )
            return

        context = JobContext(job, self._queue)
        try:
            await asyncio.wait_for(spec.handler(context), timeout=spec.timeout)
        except JobCancelled:
            await self._settle(job.id, self._queue.mark_cancelled)
        except Exception as exc:
            error = classify_failure(exc)
            await self._settle(job.id, self._queue.fail, error, stack=traceback.format_exc())
        else:
            await self._settle(job.id, self._queue.complete)
