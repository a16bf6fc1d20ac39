"""Automatic selection of the best candidate per asset type."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import AssetCandidateRecord
from ..models import ExistingAsset, SelectionDecision, SelectionOptions
from ..utils import entity_key, utcnow
from .asset_cache import AssetCache, NullAssetCache
from .candidates import LockStore
from .scoring import CandidateScorer, filter_duplicates

logger = logging.getLogger(__name__)


class AutoSelector:
    """Rank stored candidates and commit the winner, never touching locked types.

    Work on one (entity, asset type) is serialised with an in-process lock and
    every selection swap happens in a single transaction that re-checks the
    lock right before writing.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        preferred_language: str = "en",
        provider_priority: Sequence[str] = (),
        asset_cache: AssetCache | None = None,
    ):
        self._session_factory = session_factory
        self._preferred_language = preferred_language
        self._provider_priority = tuple(provider_priority)
        self._asset_cache = asset_cache or NullAssetCache()
        self._locks: dict[str, asyncio.Lock] = {}

    def _scorer(self, options: SelectionOptions) -> CandidateScorer:
        return CandidateScorer(
            preferred_language=options.preferred_language or self._preferred_language,
            provider_priority=(
                options.provider_priority
                if options.provider_priority is not None
                else self._provider_priority
            ),
        )

    async def select_best_assets(
        self,
        entity_type: str,
        entity_id: int,
        asset_types: Iterable[str],
        options: SelectionOptions | None = None,
    ) -> list[SelectionDecision]:
        options = options or SelectionOptions()
        scorer = self._scorer(options)
        existing = list(options.existing_assets)
        existing.extend(await self._asset_cache.existing_assets(entity_type, entity_id))

        decisions: list[SelectionDecision] = []
        for asset_type in dict.fromkeys(asset_types):
            lock = self._locks.setdefault(
                entity_key(entity_type, entity_id, asset_type), asyncio.Lock()
            )
            async with lock:
                decision = await self._select_one(
                    entity_type,
                    entity_id,
                    asset_type,
                    scorer=scorer,
                    existing=existing,
                    dry_run=options.dry_run,
                )
            decisions.append(decision)
        return decisions

    async def _select_one(
        self,
        entity_type: str,
        entity_id: int,
        asset_type: str,
        *,
        scorer: CandidateScorer,
        existing: Sequence[ExistingAsset],
        dry_run: bool,
    ) -> SelectionDecision:
        async with self._session_factory() as session:
            if await LockStore.is_locked_in(session, entity_type, entity_id, asset_type):
                logger.debug(
                    "Skipping locked %s for %s %s", asset_type, entity_type, entity_id
                )
                return SelectionDecision(asset_type=asset_type, action="locked")

            result = await session.execute(
                select(AssetCandidateRecord)
                .where(
                    AssetCandidateRecord.entity_type == entity_type,
                    AssetCandidateRecord.entity_id == entity_id,
                    AssetCandidateRecord.asset_type == asset_type,
                    AssetCandidateRecord.is_blocked.is_(False),
                )
                .order_by(AssetCandidateRecord.id)
            )
            rows = list(result.scalars().all())
            current = next((row for row in rows if row.is_selected), None)

            pool = self._candidate_pool(rows, current, existing, asset_type)
            if not pool:
                return SelectionDecision(asset_type=asset_type, action="no_candidates")

            ranked = scorer.rank(pool, asset_type)
            best = ranked[0]
            winner: AssetCandidateRecord = best.candidate
            decision = SelectionDecision(
                asset_type=asset_type,
                action="selected",
                candidate_id=winner.id,
                previous_candidate_id=current.id if current is not None else None,
                provider=winner.provider,
                url=winner.url,
                tier=best.tier,
                score=best.score,
                reason=best.reason,
            )
            if current is not None and current.id == winner.id:
                decision.action = "unchanged"
                decision.previous_candidate_id = None
                return decision
            if dry_run:
                return decision

            # The catalog may have locked the type while we were ranking.
            if await LockStore.is_locked_in(session, entity_type, entity_id, asset_type):
                return SelectionDecision(asset_type=asset_type, action="locked")

            now = utcnow()
            if current is not None:
                current.is_selected = False
                current.selected_at = None
                current.selected_by = None
            winner.is_selected = True
            winner.selected_at = now
            winner.selected_by = "auto"
            await session.commit()

        logger.info(
            "Selected %s candidate %s from %s for %s %s (%s)",
            asset_type,
            winner.id,
            winner.provider,
            entity_type,
            entity_id,
            best.reason,
        )
        return decision

    @staticmethod
    def _candidate_pool(
        rows: Sequence[AssetCandidateRecord],
        current: AssetCandidateRecord | None,
        existing: Sequence[ExistingAsset],
        asset_type: str,
    ) -> list[Any]:
        """Drop candidates duplicating an asset in place; the current selection itself stays."""

        in_place: list[Any] = list(existing)
        if current is not None:
            in_place.append(current)
        others = [row for row in rows if row is not current]
        kept = {
            row.id
            for row in filter_duplicates(others, in_place, asset_type=asset_type)
        }
        return [row for row in rows if row is current or row.id in kept]
