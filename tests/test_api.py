from __future__ import annotations

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import Settings
from app.database import Database
from app.db_models import MediaEntity
from app.main import get_services, register_routes
from app.models import JobPriority, RawCandidate
from app.services.container import CuratorServices
from app.services.handlers import ENRICH_ASSETS, WEBHOOK_RECEIVED


@pytest.fixture
def client(tmp_path):
    """Routes bound to real services over a temporary database, without workers."""

    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    settings = Settings(_env_file=None, ASSET_TYPES="poster,fanart", SCHEDULER_ENABLED=False)
    services = CuratorServices.build(settings, database, [])

    async def setup() -> None:
        await database.create_all()
        async with database.session_factory() as session:
            session.add(MediaEntity(id=1, entity_type="movie", external_ids={"tmdb": "603"}))
            await session.commit()
        await services.candidates.cache_candidates(
            "movie",
            1,
            "poster",
            [
                RawCandidate(
                    provider="tmdb",
                    url="https://img/best.jpg",
                    asset_type="poster",
                    width=2000,
                    height=3000,
                    language="en",
                    vote_count=200,
                ),
                RawCandidate(
                    provider="tmdb", url="https://img/other.jpg", asset_type="poster", vote_count=1
                ),
            ],
        )
        # connections must not outlive this event loop
        await database.dispose()

    asyncio.run(setup())

    app = FastAPI()
    register_routes(app)
    app.state.services = services

    with TestClient(app) as test_client:
        yield test_client


def test_healthz_and_status(client: TestClient) -> None:
    assert client.get("/healthz").json() == {"status": "ok"}

    response = client.get("/api/status")

    assert response.status_code == 200
    payload = response.json()
    assert payload["queue"] == {"running": 0, "queued": 0, "scheduled": 0}
    assert payload["database"]["state"] == "closed"


def test_routes_require_services() -> None:
    app = FastAPI()
    register_routes(app)

    with pytest.raises(RuntimeError):
        get_services(app)


def test_webhook_enqueues_critical_job(client: TestClient) -> None:
    response = client.post("/api/webhooks/radarr", json={"entityType": "movie", "entityId": 1})

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    job = client.get(f"/api/jobs/{job_id}").json()
    assert job["type"] == WEBHOOK_RECEIVED
    assert job["priority"] == JobPriority.CRITICAL
    assert job["payload"] == {"entity_type": "movie", "entity_id": 1, "source": "radarr"}
    assert job["status"] == "pending"

    assert client.post("/api/webhooks/radarr", json={"entityType": "movie"}).status_code == 400


def test_job_lifecycle_endpoints(client: TestClient) -> None:
    rejected = client.post("/api/jobs", json={"type": "publish-everything"})
    assert rejected.status_code == 400
    assert client.post("/api/jobs", json={"type": "select-assets", "priority": 0}).status_code == 400

    created = client.post(
        "/api/jobs", json={"type": "cleanup-candidates", "priority": 10, "maxRetries": 0}
    )
    assert created.status_code == 202
    job_id = created.json()["job_id"]

    listing = client.get("/api/jobs").json()
    assert listing["counts"]["queued"] == 1
    assert [job["id"] for job in listing["queued"]] == [job_id]

    cancelled = client.post(f"/api/jobs/{job_id}/cancel").json()
    assert cancelled["status"] == "cancelled"
    assert client.get("/api/jobs/9999").status_code == 404
    assert client.post("/api/jobs/9999/cancel").status_code == 404


def test_refresh_is_deduplicated(client: TestClient) -> None:
    first = client.post("/api/entities/movie/1/refresh", json={"asset_types": ["poster"]})
    second = client.post("/api/entities/movie/1/refresh")

    assert first.status_code == 202
    assert first.json()["job_id"] == second.json()["job_id"]
    job = client.get(f"/api/jobs/{first.json()['job_id']}").json()
    assert job["type"] == ENRICH_ASSETS
    assert job["priority"] == JobPriority.USER_ENRICHMENT


def test_manual_review_flow(client: TestClient) -> None:
    listing = client.get("/api/entities/movie/1/assets/poster").json()
    assert listing["locked"] is False
    best, other = listing["candidates"]
    assert best["url"] == "https://img/best.jpg"
    assert best["score"] > other["score"]

    selected = client.post(f"/api/candidates/{other['id']}/select")
    assert selected.status_code == 200
    assert selected.json()["selected_by"] == "manual"

    locked = client.get("/api/entities/movie/1/assets/poster").json()
    assert locked["locked"] is True
    assert locked["candidates"][0]["id"] == other["id"]

    decisions = client.post("/api/entities/movie/1/select", json={}).json()["decisions"]
    assert [(d["asset_type"], d["action"]) for d in decisions] == [
        ("poster", "locked"),
        ("fanart", "no_candidates"),
    ]

    assert client.post(f"/api/candidates/{other['id']}/block").json()["is_blocked"] is True
    assert client.post(f"/api/candidates/{other['id']}/select").status_code == 400
    hidden = client.get("/api/entities/movie/1/assets/poster").json()["candidates"]
    assert [c["id"] for c in hidden] == [best["id"]]
    shown = client.get(
        "/api/entities/movie/1/assets/poster", params={"include_blocked": "true"}
    ).json()["candidates"]
    assert len(shown) == 2

    reset = client.post("/api/entities/movie/1/assets/poster/reset").json()
    assert reset == {"cleared": 0}
    assert client.get("/api/entities/movie/1/assets/poster").json()["locked"] is False

    auto = client.post(
        "/api/entities/movie/1/select", json={"asset_types": ["poster"]}
    ).json()["decisions"]
    assert auto[0]["action"] == "selected"
    assert auto[0]["candidate_id"] == best["id"]


def test_candidate_action_errors(client: TestClient) -> None:
    assert client.post("/api/candidates/1/promote").status_code == 404
    assert client.post("/api/candidates/999/select").status_code == 404
