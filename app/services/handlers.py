"""Handlers for every job type the worker pool runs."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import MediaEntity
from ..errors import PermanentProviderFailure, TransientProviderFailure, ValidationFailure
from ..models import EntityRef, JobPriority, SelectionOptions
from ..utils import entity_key, utcnow
from .candidates import CandidateStore
from .ledger import ProviderRefreshLedger
from .providers.base import AssetProvider, ProviderGateway, supports_changes
from .selection import AutoSelector
from .worker import JobContext, WorkerPool

logger = logging.getLogger(__name__)

WEBHOOK_RECEIVED = "webhook-received"
ENRICH_ASSETS = "enrich-assets"
SELECT_ASSETS = "select-assets"
PROVIDER_SWEEP = "provider-sweep"
CLEANUP_CANDIDATES = "cleanup-candidates"

JOB_TYPES = (
    WEBHOOK_RECEIVED,
    ENRICH_ASSETS,
    SELECT_ASSETS,
    PROVIDER_SWEEP,
    CLEANUP_CANDIDATES,
)


def enrich_dedupe_key(entity_type: str, entity_id: int) -> str:
    return f"{ENRICH_ASSETS}:{entity_key(entity_type, entity_id)}"


def sweep_dedupe_key(entity_type: str, offset: int) -> str:
    return f"{PROVIDER_SWEEP}:{entity_type}:{offset}"


def _union(first: list[str], second: list[str]) -> list[str]:
    return list(dict.fromkeys([*first, *second]))


def merge_enrich_payload(existing: dict[str, Any], requested: dict[str, Any]) -> dict[str, Any]:
    """Fold a second enrichment request into one that is still queued.

    A missing ``providers`` or ``asset_types`` list means "all", so the merged
    job only keeps a restriction both requests share.
    """

    merged = {**existing, **requested}
    for key in ("providers", "asset_types"):
        if existing.get(key) and requested.get(key):
            merged[key] = _union(existing[key], requested[key])
        else:
            merged.pop(key, None)
    changed = _union(
        existing.get("changed_providers") or [], requested.get("changed_providers") or []
    )
    if changed:
        merged["changed_providers"] = changed
    return merged


class JobHandlers:
    """Implements enrichment, selection, sweeps and cleanup on top of the services."""

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: ProviderGateway,
        candidates: CandidateStore,
        selector: AutoSelector,
        ledger: ProviderRefreshLedger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._gateway = gateway
        self._candidates = candidates
        self._selector = selector
        self._ledger = ledger
        self._clock = clock

    def register(self, pool: WorkerPool) -> None:
        timeout = self._settings.job_timeout_seconds
        pool.register(WEBHOOK_RECEIVED, self.webhook_received, timeout=30)
        pool.register(ENRICH_ASSETS, self.enrich_assets, timeout=timeout)
        pool.register(SELECT_ASSETS, self.select_assets, timeout=60)
        pool.register(PROVIDER_SWEEP, self.provider_sweep, timeout=timeout)
        pool.register(CLEANUP_CANDIDATES, self.cleanup_candidates, timeout=300)

    async def _load_entity(self, ref: EntityRef) -> MediaEntity:
        async with self._session_factory() as session:
            entity = await session.get(MediaEntity, ref.entity_id)
        if entity is None or entity.entity_type != ref.entity_type:
            raise ValidationFailure(f"Unknown {ref.entity_type} {ref.entity_id}")
        return entity

    def _providers_for(
        self, entity_type: str, only: list[str] | None = None
    ) -> list[AssetProvider]:
        providers = [
            provider
            for provider in self._gateway.providers()
            if entity_type in getattr(provider, "entity_types", ("movie",))
        ]
        if only:
            providers = [p for p in providers if p.provider_id in only]
        return providers

    async def webhook_received(self, context: JobContext) -> dict[str, Any]:
        ref = EntityRef.model_validate(context.payload)
        await self._load_entity(ref)
        payload: dict[str, Any] = {
            "entity_type": ref.entity_type,
            "entity_id": ref.entity_id,
        }
        if ref.asset_types:
            payload["asset_types"] = list(ref.asset_types)
        job_id = await context.queue.enqueue(
            ENRICH_ASSETS,
            JobPriority.CRITICAL,
            payload,
            dedupe_key=enrich_dedupe_key(ref.entity_type, ref.entity_id),
            merge_payload=merge_enrich_payload,
            requeue_if_running=True,
        )
        return {"enrich_job_id": job_id}

    async def enrich_assets(self, context: JobContext) -> dict[str, Any]:
        """Fetch candidates from every provider, cache them, then run selection.

        Cancellation is honoured between providers, so each provider's rows
        are either fully written or not at all.
        """

        ref = EntityRef.model_validate(context.payload)
        entity = await self._load_entity(ref)
        asset_types = tuple(ref.asset_types or self._settings.asset_types)
        only = context.payload.get("providers")
        changed_providers = set(context.payload.get("changed_providers") or ())
        providers = self._providers_for(entity.entity_type, only)
        external_ids = entity.external_ids or {}

        fetched = 0
        succeeded = 0
        transient: list[TransientProviderFailure] = []
        permanent: list[PermanentProviderFailure] = []

        for index, provider in enumerate(providers):
            await context.checkpoint()
            await context.progress(
                index, len(providers), f"Fetching from {provider.provider_id}"
            )
            external_id = external_ids.get(provider.id_key)
            wanted = [t for t in asset_types if t in provider.supported_asset_types]
            if not external_id or not wanted:
                logger.debug(
                    "%s %s has no %s id or no wanted asset types; skipping %s",
                    entity.entity_type,
                    entity.id,
                    provider.id_key,
                    provider.provider_id,
                )
                continue

            try:
                found = await self._gateway.fetch_candidates_for(
                    provider.provider_id,
                    str(external_id),
                    wanted,
                    priority=context.priority,
                )
            except PermanentProviderFailure as exc:
                logger.info("%s: %s", provider.provider_id, exc)
                permanent.append(exc)
                continue
            except TransientProviderFailure as exc:
                logger.warning("%s: %s", provider.provider_id, exc)
                transient.append(exc)
                continue

            # The changes feed listing the entity counts as a modification.
            modified = provider.provider_id in changed_providers
            for asset_type in wanted:
                outcome = await self._candidates.cache_candidates(
                    entity.entity_type, entity.id, asset_type, found.get(asset_type, [])
                )
                modified = modified or outcome.changed
                fetched += outcome.written
            succeeded += 1
            await self._ledger.record_check(
                entity.entity_type, entity.id, provider.provider_id, modified=modified
            )
        await context.progress(len(providers), len(providers), "Selecting")

        if transient and not succeeded and not permanent:
            raise transient[0]
        if permanent and not succeeded and not transient:
            raise permanent[0]

        await context.checkpoint()
        decisions = await self._selector.select_best_assets(
            entity.entity_type, entity.id, asset_types
        )
        if transient:
            # Selected from what we have; the failing provider gets retried.
            raise transient[0]
        return {
            "candidates": fetched,
            "decisions": [decision.model_dump() for decision in decisions],
        }

    async def select_assets(self, context: JobContext) -> dict[str, Any]:
        ref = EntityRef.model_validate(context.payload)
        options = SelectionOptions.model_validate(context.payload.get("options") or {})
        asset_types = tuple(ref.asset_types or self._settings.asset_types)
        decisions = await self._selector.select_best_assets(
            ref.entity_type, ref.entity_id, asset_types, options
        )
        return {"decisions": [decision.model_dump() for decision in decisions]}

    async def provider_sweep(self, context: JobContext) -> dict[str, Any]:
        """Queue enrichment for one chunk of monitored entities, then queue the next chunk."""

        entity_type = str(context.payload.get("entity_type") or "movie")
        offset = int(context.payload.get("offset") or 0)
        chunk_size = int(
            context.payload.get("chunk_size") or self._settings.sweep_chunk_size
        )
        if offset < 0 or chunk_size < 1:
            raise ValidationFailure("offset and chunk_size must be positive")

        async with self._session_factory() as session:
            result = await session.execute(
                select(MediaEntity)
                .where(
                    MediaEntity.entity_type == entity_type,
                    MediaEntity.monitored.is_(True),
                )
                .order_by(MediaEntity.id)
                .offset(offset)
                .limit(chunk_size)
            )
            chunk = list(result.scalars().all())

        due: dict[int, list[str]] = {}
        changed: dict[int, list[str]] = {}
        for provider in self._providers_for(entity_type):
            records = await self._ledger.records_for(
                entity_type, [entity.id for entity in chunk], provider.provider_id
            )
            changed_ids: set[str] | None = None
            if self._settings.use_changes_api and supports_changes(provider) and records:
                since = self._ledger.changes_since(records.values())
                try:
                    changes = await self._gateway.fetch_changes(
                        provider.provider_id, since, priority=context.priority
                    )
                except TransientProviderFailure as exc:
                    logger.warning(
                        "Changes query to %s failed, using ledger age only: %s",
                        provider.provider_id,
                        exc,
                    )
                    changes = None
                changed_ids = set(changes) if changes is not None else None

            for entity in chunk:
                external_id = (entity.external_ids or {}).get(provider.id_key)
                if not external_id:
                    continue
                record = records.get(entity.id)
                if self._ledger.needs_refresh(record, str(external_id), changed_ids):
                    due.setdefault(entity.id, []).append(provider.provider_id)
                    if changed_ids is not None and str(external_id) in changed_ids:
                        changed.setdefault(entity.id, []).append(provider.provider_id)
                elif changed_ids is not None:
                    await self._ledger.record_check(
                        entity_type, entity.id, provider.provider_id, modified=False
                    )

        enqueued = 0
        for index, entity in enumerate(chunk, start=1):
            await context.checkpoint()
            providers = due.get(entity.id)
            if providers:
                payload: dict[str, Any] = {
                    "entity_type": entity_type,
                    "entity_id": entity.id,
                    "providers": providers,
                }
                if entity.id in changed:
                    payload["changed_providers"] = changed[entity.id]
                await context.queue.enqueue(
                    ENRICH_ASSETS,
                    JobPriority.NORMAL,
                    payload,
                    dedupe_key=enrich_dedupe_key(entity_type, entity.id),
                    merge_payload=merge_enrich_payload,
                )
                enqueued += 1
            await context.progress(index, len(chunk), f"Checked {entity_type} {entity.id}")

        next_job_id = None
        if len(chunk) == chunk_size:
            next_offset = offset + chunk_size
            next_job_id = await context.queue.enqueue(
                PROVIDER_SWEEP,
                JobPriority.LOW,
                {"entity_type": entity_type, "offset": next_offset, "chunk_size": chunk_size},
                dedupe_key=sweep_dedupe_key(entity_type, next_offset),
            )
        logger.info(
            "Sweep of %s %s-%s queued %s enrichments",
            entity_type,
            offset,
            offset + len(chunk),
            enqueued,
        )
        return {"checked": len(chunk), "enqueued": enqueued, "next_job_id": next_job_id}

    async def cleanup_candidates(self, context: JobContext) -> dict[str, Any]:
        days = int(
            context.payload.get("retention_days") or self._settings.candidate_retention_days
        )
        cutoff = self._clock() - timedelta(days=days)
        removed = await self._candidates.prune_stale(cutoff)
        return {"removed": removed}
