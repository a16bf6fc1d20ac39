"""Periodic enqueueing of catalog sweeps and candidate cleanup."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Any, Awaitable, Callable

from ..config import Settings
from ..models import JobPriority
from .handlers import CLEANUP_CANDIDATES, PROVIDER_SWEEP, sweep_dedupe_key
from .job_queue import JobQueue

logger = logging.getLogger(__name__)


class Scheduler:
    """Enqueue recurring jobs; dedupe keys skip a cycle whose previous run is still active."""

    def __init__(
        self,
        queue: JobQueue,
        settings: Settings,
        *,
        entity_types: tuple[str, ...] = ("movie",),
        poll_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._queue = queue
        self._settings = settings
        self._entity_types = entity_types
        self._poll_seconds = poll_seconds
        self._clock = clock
        self._sleep = sleep
        self._last_sweep: float | None = None
        self._last_cleanup: float | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduler tick failed: %s", exc)
            await self._sleep(self._poll_seconds)

    def _due(self, last: float | None, interval: float, now: float) -> bool:
        return last is None or now - last >= interval

    async def tick(self) -> list[int]:
        """Enqueue whatever is due now and return the job ids."""

        now = self._clock()
        job_ids: list[int] = []
        if self._due(self._last_sweep, self._settings.sweep_interval_seconds, now):
            for entity_type in self._entity_types:
                job_ids.append(
                    await self._queue.enqueue(
                        PROVIDER_SWEEP,
                        JobPriority.LOW,
                        {"entity_type": entity_type, "offset": 0},
                        dedupe_key=sweep_dedupe_key(entity_type, 0),
                    )
                )
            self._last_sweep = now
        if self._due(self._last_cleanup, self._settings.cleanup_interval_seconds, now):
            job_ids.append(
                await self._queue.enqueue(
                    CLEANUP_CANDIDATES,
                    JobPriority.BACKGROUND,
                    {},
                    dedupe_key=CLEANUP_CANDIDATES,
                )
            )
            self._last_cleanup = now
        if job_ids:
            logger.info("Scheduler enqueued jobs %s", job_ids)
        return job_ids
