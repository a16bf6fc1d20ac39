"""Wiring of the long-lived services shared by the API and the worker pool."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Iterable

from ..config import Settings
from ..database import Database
from .asset_cache import AssetCache
from .candidates import CandidateStore, LockStore
from .circuit_breaker import BreakerRegistry, CircuitBreaker
from .handlers import JobHandlers
from .job_queue import JobQueue
from .ledger import ProviderRefreshLedger
from .providers.base import AssetProvider, ProviderGateway
from .rate_limiter import RateLimiter
from .scheduler import Scheduler
from .scoring import CandidateScorer
from .selection import AutoSelector
from .worker import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class CuratorServices:
    settings: Settings
    database: Database
    gateway: ProviderGateway
    queue: JobQueue
    candidates: CandidateStore
    locks: LockStore
    selector: AutoSelector
    ledger: ProviderRefreshLedger
    handlers: JobHandlers
    workers: WorkerPool
    scheduler: Scheduler
    infra_breaker: CircuitBreaker

    @classmethod
    def build(
        cls,
        settings: Settings,
        database: Database,
        providers: Iterable[AssetProvider],
        *,
        asset_cache: AssetCache | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> "CuratorServices":
        providers = list(providers)
        session_factory = database.session_factory
        limiters = {
            provider.provider_id: RateLimiter(
                provider.provider_id,
                settings.rate_limit_for(provider.provider_id),
                settings.rate_limit_window_seconds,
                reserved_capacity=settings.rate_limit_reserved,
                clock=monotonic,
            )
            for provider in providers
        }
        breakers = BreakerRegistry(
            failure_threshold=settings.breaker_failure_threshold,
            cooldown_seconds=settings.breaker_cooldown_seconds,
            clock=monotonic,
        )
        gateway = ProviderGateway(
            providers,
            limiters=limiters,
            breakers=breakers,
            timeout_seconds=settings.provider_timeout_seconds,
        )
        queue = JobQueue(
            session_factory,
            default_max_retries=settings.job_max_retries,
            backoff_cap=settings.backoff_cap_seconds,
        )
        scorer = CandidateScorer(
            preferred_language=settings.preferred_language,
            provider_priority=settings.provider_priority,
        )
        candidates = CandidateStore(session_factory, scorer)
        selector = AutoSelector(
            session_factory,
            preferred_language=settings.preferred_language,
            provider_priority=settings.provider_priority,
            asset_cache=asset_cache,
        )
        ledger = ProviderRefreshLedger(
            session_factory, max_age=timedelta(days=settings.ledger_max_age_days)
        )
        handlers = JobHandlers(
            settings,
            session_factory=session_factory,
            gateway=gateway,
            candidates=candidates,
            selector=selector,
            ledger=ledger,
        )
        infra_breaker = CircuitBreaker(
            "database",
            failure_threshold=settings.infra_breaker_failure_threshold,
            cooldown_seconds=settings.infra_breaker_cooldown_seconds,
            clock=monotonic,
        )
        workers = WorkerPool(
            queue,
            concurrency=settings.worker_count,
            poll_interval=settings.worker_poll_interval,
            default_timeout=settings.job_timeout_seconds,
            infra_breaker=infra_breaker,
        )
        handlers.register(workers)
        scheduler = Scheduler(queue, settings)
        return cls(
            settings=settings,
            database=database,
            gateway=gateway,
            queue=queue,
            candidates=candidates,
            locks=LockStore(session_factory),
            selector=selector,
            ledger=ledger,
            handlers=handlers,
            workers=workers,
            scheduler=scheduler,
            infra_breaker=infra_breaker,
        )

    async def start(self, *, run_workers: bool = True) -> None:
        await self.queue.reset_stalled()
        if run_workers:
            await self.workers.start()
        if self.settings.scheduler_enabled:
            await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.workers.stop()

    def status(self) -> dict[str, Any]:
        return {
            "providers": self.gateway.stats(),
            "database": self.infra_breaker.stats(),
            "workers": {
                "running": self.workers.running,
                "job_types": list(self.workers.job_types),
            },
        }
