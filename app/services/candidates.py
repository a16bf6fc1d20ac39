"""Persistence of provider candidates, manual review actions and asset locks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import AssetCandidateRecord, AssetLock
from ..errors import ValidationFailure
from ..models import RawCandidate
from ..utils import utcnow
from .scoring import CandidateScorer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CacheOutcome:
    written: int = 0
    created: int = 0
    updated: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated)


class LockStore:
    """Read and toggle the per (entity, asset type) locks owned by the catalog."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def is_locked(self, entity_type: str, entity_id: int, field: str) -> bool:
        async with self._session_factory() as session:
            return await self.is_locked_in(session, entity_type, entity_id, field)

    @staticmethod
    async def is_locked_in(
        session: AsyncSession, entity_type: str, entity_id: int, field: str
    ) -> bool:
        lock = await session.get(AssetLock, (entity_type, entity_id, field))
        return lock is not None

    async def locked_types(self, entity_type: str, entity_id: int) -> set[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AssetLock.field).where(
                    AssetLock.entity_type == entity_type,
                    AssetLock.entity_id == entity_id,
                )
            )
            return set(result.scalars().all())

    async def lock(self, entity_type: str, entity_id: int, field: str) -> None:
        async with self._session_factory() as session:
            await session.merge(
                AssetLock(entity_type=entity_type, entity_id=entity_id, field=field)
            )
            await session.commit()

    async def unlock(self, entity_type: str, entity_id: int, field: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(AssetLock).where(
                    AssetLock.entity_type == entity_type,
                    AssetLock.entity_id == entity_id,
                    AssetLock.field == field,
                )
            )
            await session.commit()
            return bool(result.rowcount)


class CandidateStore:
    """Upsert candidates with their score and apply manual review actions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scorer: CandidateScorer,
    ):
        self._session_factory = session_factory
        self._scorer = scorer

    async def cache_candidates(
        self,
        entity_type: str,
        entity_id: int,
        asset_type: str,
        candidates: Sequence[RawCandidate],
    ) -> CacheOutcome:
        """Store the fetched candidates in one transaction.

        Rows the user blocked are left untouched and the selection flags of
        existing rows are never modified by a refresh.
        """

        by_url: dict[str, RawCandidate] = {}
        for candidate in candidates:
            by_url.setdefault(candidate.url, candidate)
        outcome = CacheOutcome()
        if not by_url:
            return outcome

        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(AssetCandidateRecord).where(
                    AssetCandidateRecord.entity_type == entity_type,
                    AssetCandidateRecord.entity_id == entity_id,
                    AssetCandidateRecord.asset_type == asset_type,
                    AssetCandidateRecord.url.in_(list(by_url)),
                )
            )
            existing = {record.url: record for record in result.scalars().all()}

            for url, candidate in by_url.items():
                score = self._scorer.score_candidate(candidate, asset_type).score
                fields = {
                    "provider": candidate.provider,
                    "width": candidate.width,
                    "height": candidate.height,
                    "language": candidate.language,
                    "vote_average": candidate.vote_average,
                    "vote_count": candidate.vote_count,
                    "quality": candidate.quality,
                    "file_size": candidate.file_size,
                    "perceptual_hash": candidate.perceptual_hash,
                    "provider_metadata": dict(candidate.metadata) or None,
                    "score": score,
                }
                record = existing.get(url)
                if record is None:
                    record = AssetCandidateRecord(
                        entity_type=entity_type,
                        entity_id=entity_id,
                        asset_type=asset_type,
                        url=url,
                        created_at=now,
                    )
                    session.add(record)
                    outcome.created += 1
                elif record.is_blocked:
                    continue
                elif any(getattr(record, name) != value for name, value in fields.items()):
                    outcome.updated += 1
                for name, value in fields.items():
                    setattr(record, name, value)
                record.last_refreshed = now
                outcome.written += 1
            await session.commit()

        logger.debug(
            "Cached %s %s candidates (%s new, %s changed) for %s %s",
            outcome.written,
            asset_type,
            outcome.created,
            outcome.updated,
            entity_type,
            entity_id,
        )
        return outcome

    async def list_candidates(
        self,
        entity_type: str,
        entity_id: int,
        asset_type: str,
        *,
        include_blocked: bool = False,
    ) -> list[AssetCandidateRecord]:
        stmt = select(AssetCandidateRecord).where(
            AssetCandidateRecord.entity_type == entity_type,
            AssetCandidateRecord.entity_id == entity_id,
            AssetCandidateRecord.asset_type == asset_type,
        )
        if not include_blocked:
            stmt = stmt.where(AssetCandidateRecord.is_blocked.is_(False))
        stmt = stmt.order_by(
            AssetCandidateRecord.is_selected.desc(),
            AssetCandidateRecord.score.desc(),
            AssetCandidateRecord.created_at.desc(),
            AssetCandidateRecord.id.desc(),
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get(self, candidate_id: int) -> AssetCandidateRecord:
        async with self._session_factory() as session:
            record = await session.get(AssetCandidateRecord, candidate_id)
        if record is None:
            raise KeyError(f"Candidate {candidate_id} not found")
        return record

    async def select_candidate(
        self, candidate_id: int, *, selected_by: str = "manual"
    ) -> AssetCandidateRecord:
        """Make ``candidate_id`` the selection for its asset type.

        A manual choice also locks the asset type so automation leaves it alone.
        """

        now = utcnow()
        async with self._session_factory() as session:
            record = await session.get(AssetCandidateRecord, candidate_id)
            if record is None:
                raise KeyError(f"Candidate {candidate_id} not found")
            if record.is_blocked:
                raise ValidationFailure(
                    f"Candidate {candidate_id} is blocked and cannot be selected"
                )
            await session.execute(
                update(AssetCandidateRecord)
                .where(
                    AssetCandidateRecord.entity_type == record.entity_type,
                    AssetCandidateRecord.entity_id == record.entity_id,
                    AssetCandidateRecord.asset_type == record.asset_type,
                    AssetCandidateRecord.is_selected.is_(True),
                    AssetCandidateRecord.id != record.id,
                )
                .values(is_selected=False, selected_at=None, selected_by=None)
            )
            record.is_selected = True
            record.selected_at = now
            record.selected_by = selected_by
            if selected_by == "manual":
                await session.merge(
                    AssetLock(
                        entity_type=record.entity_type,
                        entity_id=record.entity_id,
                        field=record.asset_type,
                        locked_at=now,
                    )
                )
            await session.commit()

        logger.info(
            "Candidate %s selected (%s) for %s %s %s",
            candidate_id,
            selected_by,
            record.entity_type,
            record.entity_id,
            record.asset_type,
        )
        return record

    async def block_candidate(self, candidate_id: int) -> AssetCandidateRecord:
        async with self._session_factory() as session:
            record = await session.get(AssetCandidateRecord, candidate_id)
            if record is None:
                raise KeyError(f"Candidate {candidate_id} not found")
            record.is_blocked = True
            record.blocked_at = utcnow()
            record.is_selected = False
            record.selected_at = None
            record.selected_by = None
            await session.commit()
        logger.info("Candidate %s blocked", candidate_id)
        return record

    async def unblock_candidate(self, candidate_id: int) -> AssetCandidateRecord:
        async with self._session_factory() as session:
            record = await session.get(AssetCandidateRecord, candidate_id)
            if record is None:
                raise KeyError(f"Candidate {candidate_id} not found")
            record.is_blocked = False
            record.blocked_at = None
            await session.commit()
        logger.info("Candidate %s unblocked", candidate_id)
        return record

    async def reset_selection(
        self, entity_type: str, entity_id: int, asset_type: str
    ) -> int:
        """Clear the selection and the lock so automation may choose again."""

        async with self._session_factory() as session:
            result = await session.execute(
                update(AssetCandidateRecord)
                .where(
                    AssetCandidateRecord.entity_type == entity_type,
                    AssetCandidateRecord.entity_id == entity_id,
                    AssetCandidateRecord.asset_type == asset_type,
                    AssetCandidateRecord.is_selected.is_(True),
                )
                .values(is_selected=False, selected_at=None, selected_by=None)
            )
            await session.execute(
                delete(AssetLock).where(
                    AssetLock.entity_type == entity_type,
                    AssetLock.entity_id == entity_id,
                    AssetLock.field == asset_type,
                )
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def prune_stale(self, older_than: datetime) -> int:
        """Delete candidates not refreshed since ``older_than``, sparing selected and blocked rows."""

        async with self._session_factory() as session:
            result = await session.execute(
                delete(AssetCandidateRecord).where(
                    AssetCandidateRecord.last_refreshed < older_than,
                    AssetCandidateRecord.is_selected.is_(False),
                    AssetCandidateRecord.is_blocked.is_(False),
                )
            )
            await session.commit()
            removed = int(result.rowcount or 0)
        if removed:
            logger.info("Pruned %s stale candidates older than %s", removed, older_than)
        return removed
