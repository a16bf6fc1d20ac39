"""Durable priority job queue with retry scheduling.

Jobs move ``pending -> processing -> completed | pending (retry) | failed |
cancelled``. Every transition is one short statement or transaction against
the ``jobs`` table, and claiming is a compare-and-set on the status column so
several workers can poll the same table without running a job twice.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import JobRecord
from ..errors import ValidationFailure
from ..models import ACTIVE_STATUSES, TERMINAL_STATUSES, JobPriority, JobView, QueueSnapshot
from ..utils import utcnow

logger = logging.getLogger(__name__)

CLAIM_ATTEMPTS = 5

PayloadMerger = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]


def backoff(retry_count: int, cap: float = 300.0) -> float:
    """Seconds to wait before retry number ``retry_count + 1``: ``min(2**n, cap)``."""

    if retry_count < 0:
        retry_count = 0
    return float(min(2**retry_count, cap))


class JobQueue:
    """Enqueue, claim and settle jobs stored in the database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        default_max_retries: int = 3,
        backoff_cap: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._default_max_retries = default_max_retries
        self._backoff_cap = backoff_cap
        self._clock = clock
        self._enqueue_lock = asyncio.Lock()

    async def enqueue(
        self,
        job_type: str,
        priority: int = JobPriority.NORMAL,
        payload: dict[str, Any] | None = None,
        *,
        dedupe_key: str | None = None,
        merge_payload: PayloadMerger | None = None,
        requeue_if_running: bool = False,
        max_retries: int | None = None,
        is_cancellable: bool = True,
    ) -> int:
        """Persist a new pending job and return its id.

        While a job with the same ``dedupe_key`` is pending its id is returned
        instead, after raising its priority to the more urgent of the two and
        folding ``payload`` into it with ``merge_payload``. A job that is
        already processing is returned as well, unless ``requeue_if_running``
        asks for a follow-up job that starts after it.
        """

        if not job_type:
            raise ValidationFailure("Job type is required")
        payload = dict(payload or {})
        async with self._enqueue_lock:
            async with self._session_factory() as session:
                if dedupe_key:
                    existing_id = await self._fold_into_active(
                        session,
                        dedupe_key,
                        int(priority),
                        payload,
                        merge_payload,
                        requeue_if_running,
                    )
                    if existing_id is not None:
                        return existing_id

                now = self._clock()
                record = JobRecord(
                    type=job_type,
                    priority=int(priority),
                    payload=payload,
                    status="pending",
                    dedupe_key=dedupe_key,
                    max_retries=(
                        self._default_max_retries if max_retries is None else max_retries
                    ),
                    is_cancellable=is_cancellable,
                    created_at=now,
                    updated_at=now,
                )
                session.add(record)
                await session.commit()
                job_id = record.id

        logger.info("Enqueued %s job %s at priority %s", job_type, job_id, int(priority))
        return job_id

    async def _fold_into_active(
        self,
        session: AsyncSession,
        dedupe_key: str,
        priority: int,
        payload: dict[str, Any],
        merge_payload: PayloadMerger | None,
        requeue_if_running: bool,
    ) -> int | None:
        """Return the id of the active job ``dedupe_key`` resolves to, if any."""

        result = await session.execute(
            select(JobRecord.id, JobRecord.status, JobRecord.priority, JobRecord.payload)
            .where(
                JobRecord.dedupe_key == dedupe_key,
                JobRecord.status.in_(tuple(ACTIVE_STATUSES)),
            )
            .order_by(JobRecord.id)
        )
        active = result.all()
        for job_id, status, current, existing in active:
            if status != "pending":
                continue
            merged = (
                merge_payload(dict(existing or {}), payload)
                if merge_payload is not None
                else existing
            )
            target = min(current, priority)
            updated = await session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, JobRecord.status == "pending")
                .values(priority=target, payload=merged, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if updated.rowcount == 1:
                if target != current:
                    logger.info(
                        "Raised queued job %s (%s) to priority %s", job_id, dedupe_key, target
                    )
                else:
                    logger.debug("Job %s already queued as %s", dedupe_key, job_id)
                return job_id
            # Claimed since the read above; treat it as running.

        if active and not requeue_if_running:
            logger.debug("Job %s already running as %s", dedupe_key, active[0].id)
            return active[0].id
        if active:
            logger.info("Job %s is running; queueing a follow-up", dedupe_key)
        return None

    async def claim_next(self) -> JobView | None:
        """Atomically move the most urgent eligible job to ``processing``."""

        for _ in range(CLAIM_ATTEMPTS):
            now = self._clock()
            async with self._session_factory() as session:
                result = await session.execute(
                    select(JobRecord.id)
                    .where(
                        JobRecord.status == "pending",
                        or_(
                            JobRecord.next_retry_at.is_(None),
                            JobRecord.next_retry_at <= now,
                        ),
                    )
                    .order_by(JobRecord.priority, JobRecord.created_at, JobRecord.id)
                    .limit(1)
                )
                job_id = result.scalar_one_or_none()
                if job_id is None:
                    return None
                claimed = await session.execute(
                    update(JobRecord)
                    .where(JobRecord.id == job_id, JobRecord.status == "pending")
                    .values(status="processing", started_at=now, updated_at=now)
                )
                await session.commit()
                if claimed.rowcount != 1:
                    # Another worker won the race; look again.
                    continue
                record = await session.get(JobRecord, job_id, populate_existing=True)
                if record is None:
                    return None
                logger.info(
                    "Claimed %s job %s (priority %s, attempt %s)",
                    record.type,
                    record.id,
                    record.priority,
                    record.retry_count + 1,
                )
                return JobView.from_record(record)
        return None

    async def complete(self, job_id: int) -> JobView:
        """Mark a processing job completed. Jobs in any other state are left alone."""

        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, JobRecord.status == "processing")
                .values(
                    status="completed",
                    completed_at=now,
                    updated_at=now,
                    next_retry_at=None,
                    progress_current=case(
                        (JobRecord.progress_total > 0, JobRecord.progress_total),
                        else_=JobRecord.progress_current,
                    ),
                )
            )
            await session.commit()
            view = JobView.from_record(await self._load(session, job_id))
        if result.rowcount == 1:
            logger.info("Job %s (%s) completed", job_id, view.type)
        else:
            logger.info("Job %s is %s; completion ignored", job_id, view.status)
        return view

    async def fail(
        self, job_id: int, error: BaseException, *, stack: str | None = None
    ) -> JobView:
        """Record a handler failure and either schedule a retry or fail the job.

        Only the error's ``retryable`` flag and the retry counter decide. A job
        that is no longer processing is returned unchanged.
        """

        message = str(error) or error.__class__.__name__
        retryable = bool(getattr(error, "retryable", False))
        async with self._session_factory() as session:
            for _ in range(CLAIM_ATTEMPTS):
                now = self._clock()
                record = await self._load(session, job_id, refresh=True)
                if record.status != "processing":
                    return JobView.from_record(record)

                values: dict[str, Any] = {
                    "error_message": message,
                    "error_stack": stack,
                    "updated_at": now,
                }
                if record.cancel_requested:
                    values.update(status="cancelled", completed_at=now)
                elif retryable and record.retry_count + 1 <= record.max_retries:
                    delay = backoff(record.retry_count, self._backoff_cap)
                    values.update(
                        status="pending",
                        retry_count=record.retry_count + 1,
                        started_at=None,
                        next_retry_at=now + timedelta(seconds=delay),
                    )
                else:
                    values.update(status="failed", completed_at=now, next_retry_at=None)

                # A cancel request landing after the read makes this a no-op; re-read.
                result = await session.execute(
                    update(JobRecord)
                    .where(
                        JobRecord.id == job_id,
                        JobRecord.status == "processing",
                        JobRecord.cancel_requested == record.cancel_requested,
                    )
                    .values(**values)
                )
                await session.commit()
                if result.rowcount != 1:
                    continue

                if values["status"] == "pending":
                    logger.warning(
                        "Job %s (%s) failed: %s; retry %s/%s in %.0fs",
                        job_id,
                        record.type,
                        message,
                        values["retry_count"],
                        record.max_retries,
                        delay,
                    )
                elif values["status"] == "failed":
                    logger.warning(
                        "Job %s (%s) failed permanently after %s retries: %s",
                        job_id,
                        record.type,
                        record.retry_count,
                        message,
                    )
                break
            return JobView.from_record(await self._load(session, job_id, refresh=True))

    async def cancel(self, job_id: int) -> JobView:
        """Cancel a pending job, or ask a running one to stop at its next checkpoint."""

        now = self._clock()
        async with self._session_factory() as session:
            record = await self._load(session, job_id)
            if record.status in TERMINAL_STATUSES:
                return JobView.from_record(record)
            if not record.is_cancellable:
                raise ValidationFailure(f"Job {job_id} cannot be cancelled")

            result = await session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, JobRecord.status == "pending")
                .values(status="cancelled", completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                logger.info("Job %s cancelled before it started", job_id)
            else:
                # Claimed since the read above.
                result = await session.execute(
                    update(JobRecord)
                    .where(JobRecord.id == job_id, JobRecord.status == "processing")
                    .values(cancel_requested=True, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    logger.info("Cancellation requested for running job %s", job_id)
            await session.commit()
            return JobView.from_record(await self._load(session, job_id, refresh=True))

    async def mark_cancelled(self, job_id: int) -> JobView:
        """Settle a running job that stopped at a cancellation checkpoint."""

        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, JobRecord.status == "processing")
                .values(status="cancelled", completed_at=now, updated_at=now)
            )
            await session.commit()
            view = JobView.from_record(await self._load(session, job_id))
        if result.rowcount == 1:
            logger.info("Job %s (%s) cancelled at a checkpoint", job_id, view.type)
        return view

    async def is_cancel_requested(self, job_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(JobRecord.cancel_requested).where(JobRecord.id == job_id)
            )
            return bool(result.scalar_one_or_none())

    async def update_progress(
        self,
        job_id: int,
        current: int,
        total: int | None = None,
        message: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"progress_current": current, "updated_at": self._clock()}
        if total is not None:
            values["progress_total"] = total
        if message is not None:
            values["progress_message"] = message[:255]
        async with self._session_factory() as session:
            await session.execute(
                update(JobRecord).where(JobRecord.id == job_id).values(**values)
            )
            await session.commit()

    async def get_status(self, job_id: int) -> JobView:
        async with self._session_factory() as session:
            record = await self._load(session, job_id)
            return JobView.from_record(record)

    async def list_jobs(
        self, *, status: str | None = None, limit: int = 50
    ) -> list[JobView]:
        stmt = select(JobRecord)
        if status:
            stmt = stmt.where(JobRecord.status == status)
        stmt = stmt.order_by(JobRecord.created_at.desc(), JobRecord.id.desc()).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [JobView.from_record(record) for record in result.scalars().all()]

    async def snapshot(self, *, recent_limit: int = 20) -> QueueSnapshot:
        """Running, queued and retry-scheduled jobs plus the most recently finished ones."""

        now = self._clock()
        snapshot = QueueSnapshot()
        async with self._session_factory() as session:
            result = await session.execute(
                select(JobRecord)
                .where(JobRecord.status.in_(tuple(ACTIVE_STATUSES)))
                .order_by(JobRecord.priority, JobRecord.created_at, JobRecord.id)
            )
            for record in result.scalars().all():
                view = JobView.from_record(record)
                if record.status == "processing":
                    snapshot.running.append(view)
                elif record.next_retry_at is not None and record.next_retry_at > now:
                    snapshot.scheduled.append(view)
                else:
                    snapshot.queued.append(view)

            recent = await session.execute(
                select(JobRecord)
                .where(JobRecord.status.in_(tuple(TERMINAL_STATUSES)))
                .order_by(JobRecord.completed_at.desc(), JobRecord.id.desc())
                .limit(recent_limit)
            )
            snapshot.recent = [
                JobView.from_record(record) for record in recent.scalars().all()
            ]
        return snapshot

    async def reset_stalled(self) -> int:
        """Return jobs left ``processing`` by a previous process to ``pending``."""

        async with self._session_factory() as session:
            result = await session.execute(
                update(JobRecord)
                .where(JobRecord.status == "processing")
                .values(status="pending", started_at=None, updated_at=self._clock())
            )
            await session.commit()
            count = int(result.rowcount or 0)
        if count:
            logger.warning("Reset %s stalled jobs to pending", count)
        return count

    @staticmethod
    async def _load(
        session: AsyncSession, job_id: int, *, refresh: bool = False
    ) -> JobRecord:
        record = await session.get(JobRecord, job_id, populate_existing=refresh)
        if record is None:
            raise KeyError(f"Job {job_id} not found")
        return record
