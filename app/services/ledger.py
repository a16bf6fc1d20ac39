"""Per (entity, provider) bookkeeping that lets sweeps skip unchanged entities."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import ProviderRefreshRecord
from ..utils import utcnow

logger = logging.getLogger(__name__)

# TMDB only keeps two weeks of change history.
MAX_CHANGES_WINDOW = timedelta(days=14)


class ProviderRefreshLedger:
    """Track when each provider was last checked and last reported a change."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_age: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._max_age = max_age
        self._clock = clock

    async def get(
        self, entity_type: str, entity_id: int, provider: str
    ) -> ProviderRefreshRecord | None:
        async with self._session_factory() as session:
            return await session.get(
                ProviderRefreshRecord, (entity_type, entity_id, provider)
            )

    async def records_for(
        self, entity_type: str, entity_ids: Iterable[int], provider: str
    ) -> dict[int, ProviderRefreshRecord]:
        ids = list(entity_ids)
        if not ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProviderRefreshRecord).where(
                    ProviderRefreshRecord.entity_type == entity_type,
                    ProviderRefreshRecord.provider == provider,
                    ProviderRefreshRecord.entity_id.in_(ids),
                )
            )
            return {record.entity_id: record for record in result.scalars().all()}

    def needs_refresh(
        self,
        record: ProviderRefreshRecord | None,
        external_id: str | None,
        changed_ids: set[str] | None = None,
    ) -> bool:
        """Decide whether a full fetch is due for one (entity, provider).

        ``changed_ids`` is the provider's "changes since" answer, or ``None``
        when the provider cannot tell; then only stale entries are refetched.
        """

        if record is None:
            return True
        if self._clock() - record.last_checked >= self._max_age:
            return True
        if changed_ids is None:
            return False
        return external_id is not None and external_id in changed_ids

    def changes_since(self, records: Iterable[ProviderRefreshRecord]) -> datetime:
        """Start date for a changes query covering every given entry."""

        now = self._clock()
        floor = now - MAX_CHANGES_WINDOW
        checks = [record.last_checked for record in records]
        if not checks:
            return floor
        return max(min(checks), floor)

    async def record_check(
        self,
        entity_type: str,
        entity_id: int,
        provider: str,
        *,
        modified: bool,
    ) -> ProviderRefreshRecord:
        """Advance ``last_checked``; advance ``last_modified`` only on a reported change."""

        now = self._clock()
        async with self._session_factory() as session:
            record = await session.get(
                ProviderRefreshRecord, (entity_type, entity_id, provider)
            )
            if record is None:
                record = ProviderRefreshRecord(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    provider=provider,
                    last_checked=now,
                    last_modified=now if modified else None,
                )
                session.add(record)
            else:
                record.last_checked = now
                if modified:
                    record.last_modified = now
            await session.commit()
        logger.debug(
            "Ledger %s %s/%s checked (modified=%s)", entity_type, entity_id, provider, modified
        )
        return record
