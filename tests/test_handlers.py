"""End-to-end tests for the job handlers over a real SQLite database."""

from __future__ import annotations

import asyncio
from datetime import datetime

from sqlalchemy import select, update

from app.config import Settings
from app.database import Database
from app.db_models import AssetCandidateRecord, MediaEntity
from app.errors import PermanentProviderFailure, TransientProviderFailure
from app.models import JobPriority, RawCandidate
from app.services.container import CuratorServices
from app.services.handlers import (
    CLEANUP_CANDIDATES,
    ENRICH_ASSETS,
    PROVIDER_SWEEP,
    WEBHOOK_RECEIVED,
    enrich_dedupe_key,
    merge_enrich_payload,
)


class FakeProvider:
    """Provider double returning one poster per external id."""

    id_key = "tmdb"
    supported_asset_types = ("poster",)
    entity_types = ("movie",)

    def __init__(self, provider_id: str, *, votes: int = 10) -> None:
        self.provider_id = provider_id
        self.votes = votes
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None

    async def fetch_candidates(self, external_id: str, asset_type: str) -> list[RawCandidate]:
        self.calls.append((external_id, asset_type))
        if self.error is not None:
            raise self.error
        return [
            RawCandidate(
                provider=self.provider_id,
                url=f"https://{self.provider_id}/{external_id}/{asset_type}.jpg",
                asset_type=asset_type,
                language="en",
                vote_count=self.votes,
            )
        ]


class FakeChangesProvider(FakeProvider):
    def __init__(self, provider_id: str, changed: list[str]) -> None:
        super().__init__(provider_id)
        self.changed = changed
        self.since: list[datetime] = []

    async def fetch_changes(self, since: datetime) -> list[str]:
        self.since.append(since)
        return list(self.changed)


class FakeBatchProvider(FakeProvider):
    """Answers every asset type from one call, like the HTTP providers do."""

    supported_asset_types = ("poster", "fanart")

    def __init__(self, provider_id: str) -> None:
        super().__init__(provider_id)
        self.batches: list[tuple[str, tuple[str, ...]]] = []

    async def fetch_candidates_for(
        self, external_id: str, asset_types
    ) -> dict[str, list[RawCandidate]]:
        self.batches.append((external_id, tuple(asset_types)))
        return {
            asset_type: await FakeProvider.fetch_candidates(self, external_id, asset_type)
            for asset_type in asset_types
        }


def build_settings(**overrides) -> Settings:
    values = {"ASSET_TYPES": "poster", "SCHEDULER_ENABLED": False}
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[arg-type]


async def _setup(tmp_path, providers, **overrides) -> CuratorServices:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'handlers.db'}")
    await database.create_all()
    return CuratorServices.build(build_settings(**overrides), database, providers)


async def _add_movies(services: CuratorServices, *external_ids: str) -> list[int]:
    async with services.database.session_factory() as session:
        entities = [
            MediaEntity(entity_type="movie", title=f"Movie {ext}", external_ids={"tmdb": ext})
            for ext in external_ids
        ]
        session.add_all(entities)
        await session.commit()
        return [entity.id for entity in entities]


async def _candidates(services: CuratorServices) -> list[AssetCandidateRecord]:
    async with services.database.session_factory() as session:
        result = await session.execute(
            select(AssetCandidateRecord).order_by(AssetCandidateRecord.id)
        )
        return list(result.scalars().all())


def test_webhook_enqueues_critical_enrichment_that_selects(tmp_path) -> None:
    tmdb = FakeProvider("tmdb", votes=5)
    fanart = FakeProvider("fanart", votes=50)

    async def runner() -> None:
        services = await _setup(tmp_path, [tmdb, fanart])
        [movie_id] = await _add_movies(services, "603")
        webhook_id = await services.queue.enqueue(
            WEBHOOK_RECEIVED, JobPriority.CRITICAL, {"entityId": movie_id}
        )

        assert await services.workers.run_once() is True
        assert (await services.queue.get_status(webhook_id)).status == "completed"
        [enrich] = await services.queue.list_jobs(status="pending")
        assert enrich.type == ENRICH_ASSETS
        assert enrich.priority == JobPriority.CRITICAL

        assert await services.workers.run_once() is True
        assert (await services.queue.get_status(enrich.id)).status == "completed"

        rows = await _candidates(services)
        assert sorted(row.provider for row in rows) == ["fanart", "tmdb"]
        selected = [row for row in rows if row.is_selected]
        assert [(row.provider, row.selected_by) for row in selected] == [("fanart", "auto")]

        tmdb_check = await services.ledger.get("movie", movie_id, "tmdb")
        assert tmdb_check is not None
        assert tmdb_check.last_modified is not None
        await services.database.dispose()

    asyncio.run(runner())

    assert tmdb.calls == [("603", "poster")]


def test_webhook_for_unknown_entity_fails_without_retry(tmp_path) -> None:
    async def runner() -> None:
        services = await _setup(tmp_path, [FakeProvider("tmdb")])
        job_id = await services.queue.enqueue(
            WEBHOOK_RECEIVED, JobPriority.CRITICAL, {"entity_id": 404}
        )

        await services.workers.run_once()

        view = await services.queue.get_status(job_id)
        assert view.status == "failed"
        assert view.retry_count == 0
        await services.database.dispose()

    asyncio.run(runner())


def test_partial_provider_outage_selects_then_retries(tmp_path) -> None:
    tmdb = FakeProvider("tmdb")
    fanart = FakeProvider("fanart")
    fanart.error = TransientProviderFailure("fanart returned 503", resource="fanart")

    async def runner() -> None:
        services = await _setup(tmp_path, [tmdb, fanart])
        [movie_id] = await _add_movies(services, "550")
        job_id = await services.queue.enqueue(
            ENRICH_ASSETS, JobPriority.NORMAL, {"entity_id": movie_id}
        )

        await services.workers.run_once()

        view = await services.queue.get_status(job_id)
        assert view.status == "pending"
        assert view.retry_count == 1
        assert "503" in view.error_message
        selected = [row.provider for row in await _candidates(services) if row.is_selected]
        assert selected == ["tmdb"]
        assert await services.ledger.get("movie", movie_id, "fanart") is None
        await services.database.dispose()

    asyncio.run(runner())


def test_all_providers_rejecting_fails_the_job(tmp_path) -> None:
    tmdb = FakeProvider("tmdb")
    tmdb.error = PermanentProviderFailure("tmdb rejected the request (404)", status_code=404)

    async def runner() -> None:
        services = await _setup(tmp_path, [tmdb])
        [movie_id] = await _add_movies(services, "1")
        job_id = await services.queue.enqueue(
            ENRICH_ASSETS, JobPriority.NORMAL, {"entity_id": movie_id}
        )

        await services.workers.run_once()

        view = await services.queue.get_status(job_id)
        assert view.status == "failed"
        assert view.retry_count == 0
        assert await _candidates(services) == []
        await services.database.dispose()

    asyncio.run(runner())


def test_sweep_uses_changes_and_chains_next_chunk(tmp_path) -> None:
    tmdb = FakeChangesProvider("tmdb", changed=["ext-2"])

    async def runner() -> None:
        services = await _setup(tmp_path, [tmdb], SWEEP_CHUNK_SIZE=2)
        first, second, third = await _add_movies(services, "ext-1", "ext-2", "ext-3")
        await services.ledger.record_check("movie", first, "tmdb", modified=True)
        await services.ledger.record_check("movie", second, "tmdb", modified=True)
        unchanged_before = await services.ledger.get("movie", first, "tmdb")
        sweep_id = await services.queue.enqueue(
            PROVIDER_SWEEP, JobPriority.LOW, {"entity_type": "movie", "offset": 0}
        )

        await services.workers.run_once()

        assert (await services.queue.get_status(sweep_id)).status == "completed"
        pending = await services.queue.list_jobs(status="pending")
        enrich = [job for job in pending if job.type == ENRICH_ASSETS]
        chained = [job for job in pending if job.type == PROVIDER_SWEEP]
        assert [job.payload["entity_id"] for job in enrich] == [second]
        assert enrich[0].payload["providers"] == ["tmdb"]
        assert enrich[0].priority == JobPriority.NORMAL
        assert [job.payload["offset"] for job in chained] == [2]
        assert chained[0].priority == JobPriority.LOW

        unchanged_after = await services.ledger.get("movie", first, "tmdb")
        assert unchanged_after.last_checked >= unchanged_before.last_checked
        assert unchanged_after.last_modified == unchanged_before.last_modified

        # enrichment for the changed movie, then the chained sweep
        await services.workers.run_once()
        await services.workers.run_once()

        pending = await services.queue.list_jobs(status="pending")
        assert [job.payload["entity_id"] for job in pending if job.type == ENRICH_ASSETS] == [
            third
        ]
        assert not [job for job in pending if job.type == PROVIDER_SWEEP]
        await services.database.dispose()

    asyncio.run(runner())

    assert len(tmdb.since) == 1
    assert tmdb.calls == [("ext-2", "poster")]


def test_sweep_without_changes_api_only_refreshes_unknown_entities(tmp_path) -> None:
    tmdb = FakeChangesProvider("tmdb", changed=["ext-1"])

    async def runner() -> None:
        services = await _setup(tmp_path, [tmdb], USE_CHANGES_API=False)
        first, second = await _add_movies(services, "ext-1", "ext-2")
        await services.ledger.record_check("movie", first, "tmdb", modified=True)
        await services.queue.enqueue(PROVIDER_SWEEP, JobPriority.LOW, {"offset": 0})

        await services.workers.run_once()

        pending = await services.queue.list_jobs(status="pending")
        assert [job.payload["entity_id"] for job in pending] == [second]
        await services.database.dispose()

    asyncio.run(runner())

    assert tmdb.since == []


def test_changes_feed_entry_marks_ledger_modified_without_new_rows(tmp_path) -> None:
    tmdb = FakeChangesProvider("tmdb", changed=["ext-1"])

    async def runner() -> None:
        services = await _setup(tmp_path, [tmdb])
        [movie_id] = await _add_movies(services, "ext-1")
        cached = await services.candidates.cache_candidates(
            "movie", movie_id, "poster", await tmdb.fetch_candidates("ext-1", "poster")
        )
        assert cached.created == 1
        await services.ledger.record_check("movie", movie_id, "tmdb", modified=False)
        await services.queue.enqueue(PROVIDER_SWEEP, JobPriority.LOW, {"offset": 0})

        await services.workers.run_once()
        [enrich] = await services.queue.list_jobs(status="pending")
        assert enrich.payload["changed_providers"] == ["tmdb"]
        await services.workers.run_once()

        assert (await services.queue.get_status(enrich.id)).status == "completed"
        assert len(await _candidates(services)) == 1
        check = await services.ledger.get("movie", movie_id, "tmdb")
        assert check.last_modified is not None
        await services.database.dispose()

    asyncio.run(runner())


def test_unchanged_refetch_leaves_last_modified_alone(tmp_path) -> None:
    tmdb = FakeProvider("tmdb")

    async def runner() -> None:
        services = await _setup(tmp_path, [tmdb])
        [movie_id] = await _add_movies(services, "ext-1")
        await services.candidates.cache_candidates(
            "movie", movie_id, "poster", await tmdb.fetch_candidates("ext-1", "poster")
        )
        await services.ledger.record_check("movie", movie_id, "tmdb", modified=False)
        await services.queue.enqueue(ENRICH_ASSETS, JobPriority.NORMAL, {"entity_id": movie_id})

        await services.workers.run_once()

        check = await services.ledger.get("movie", movie_id, "tmdb")
        assert check.last_modified is None
        await services.database.dispose()

    asyncio.run(runner())


def test_webhook_escalates_queued_sweep_enrichment(tmp_path) -> None:
    tmdb = FakeProvider("tmdb")
    fanart = FakeProvider("fanart")

    async def runner() -> None:
        services = await _setup(tmp_path, [tmdb, fanart])
        [movie_id] = await _add_movies(services, "603")
        queued = await services.queue.enqueue(
            ENRICH_ASSETS,
            JobPriority.NORMAL,
            {"entity_type": "movie", "entity_id": movie_id, "providers": ["fanart"]},
            dedupe_key=enrich_dedupe_key("movie", movie_id),
        )
        await services.queue.enqueue(WEBHOOK_RECEIVED, JobPriority.CRITICAL, {"entity_id": movie_id})

        await services.workers.run_once()

        [pending] = await services.queue.list_jobs(status="pending")
        assert pending.id == queued
        assert pending.priority == JobPriority.CRITICAL
        assert "providers" not in pending.payload
        await services.workers.run_once()
        assert (await services.queue.get_status(queued)).status == "completed"
        await services.database.dispose()

    asyncio.run(runner())

    assert tmdb.calls == [("603", "poster")]
    assert fanart.calls == [("603", "poster")]


def test_merge_enrich_payload_widens_restrictions() -> None:
    sweep = {"entity_id": 1, "providers": ["tmdb"], "changed_providers": ["tmdb"]}

    assert merge_enrich_payload(sweep, {"entity_id": 1}) == {
        "entity_id": 1,
        "changed_providers": ["tmdb"],
    }
    assert merge_enrich_payload(
        sweep, {"entity_id": 1, "providers": ["fanart"], "changed_providers": ["fanart"]}
    ) == {
        "entity_id": 1,
        "providers": ["tmdb", "fanart"],
        "changed_providers": ["tmdb", "fanart"],
    }
    assert merge_enrich_payload(
        {"entity_id": 1, "asset_types": ["poster"]}, {"entity_id": 1, "asset_types": ["fanart"]}
    ) == {"entity_id": 1, "asset_types": ["poster", "fanart"]}


def test_enrich_fetches_all_asset_types_in_one_call_per_provider(tmp_path) -> None:
    tmdb = FakeBatchProvider("tmdb")

    async def runner() -> None:
        services = await _setup(tmp_path, [tmdb], ASSET_TYPES="poster,fanart")
        [movie_id] = await _add_movies(services, "603")
        job_id = await services.queue.enqueue(
            ENRICH_ASSETS, JobPriority.NORMAL, {"entity_id": movie_id}
        )

        await services.workers.run_once()

        assert (await services.queue.get_status(job_id)).status == "completed"
        rows = await _candidates(services)
        assert sorted(row.asset_type for row in rows) == ["fanart", "poster"]
        assert services.gateway.limiter("tmdb").stats()["granted"] == 1
        await services.database.dispose()

    asyncio.run(runner())

    assert tmdb.batches == [("603", ("poster", "fanart"))]


def test_cleanup_prunes_stale_candidates(tmp_path) -> None:
    async def runner() -> None:
        services = await _setup(tmp_path, [FakeProvider("tmdb")])
        await services.candidates.cache_candidates(
            "movie",
            1,
            "poster",
            [
                RawCandidate(provider="tmdb", url="https://img/old.jpg", asset_type="poster"),
                RawCandidate(provider="tmdb", url="https://img/new.jpg", asset_type="poster"),
            ],
        )
        async with services.database.session_factory() as session:
            await session.execute(
                update(AssetCandidateRecord)
                .where(AssetCandidateRecord.url == "https://img/old.jpg")
                .values(last_refreshed=datetime(2020, 1, 1))
            )
            await session.commit()
        job_id = await services.queue.enqueue(
            CLEANUP_CANDIDATES, JobPriority.BACKGROUND, {"retention_days": 7}
        )

        await services.workers.run_once()

        assert (await services.queue.get_status(job_id)).status == "completed"
        assert [row.url for row in await _candidates(services)] == ["https://img/new.jpg"]
        await services.database.dispose()

    asyncio.run(runner())


def test_services_status_reports_workers_and_breakers(tmp_path) -> None:
    async def runner() -> None:
        services = await _setup(tmp_path, [FakeProvider("tmdb")])
        await services.start(run_workers=False)
        status = services.status()
        await services.stop()

        assert status["workers"]["running"] is False
        assert ENRICH_ASSETS in status["workers"]["job_types"]
        assert status["providers"]["providers"] == ["tmdb"]
        assert status["database"]["state"] == "closed"
        await services.database.dispose()

    asyncio.run(runner())
