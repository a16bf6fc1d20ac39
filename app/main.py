"""Entry point for the FastAPI-powered artwork curation service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import settings
from .database import Database
from .errors import ValidationFailure
from .models import (
    CandidateView,
    EnqueueRequest,
    EntityRef,
    JobPriority,
    SelectionOptions,
)
from .services.container import CuratorServices
from .services.handlers import (
    ENRICH_ASSETS,
    JOB_TYPES,
    WEBHOOK_RECEIVED,
    enrich_dedupe_key,
    merge_enrich_payload,
)
from .services.providers import FanartProvider, TMDBProvider
from .services.providers.base import AssetProvider

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    timeout = httpx.Timeout(settings.provider_timeout_seconds, connect=10.0)
    providers: list[AssetProvider] = []
    if settings.tmdb_api_key:
        tmdb_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(base_url=str(settings.tmdb_api_url), timeout=timeout)
        )
        providers.append(TMDBProvider(settings, tmdb_client))
    else:
        logger.warning("TMDB_API_KEY not set; TMDB artwork disabled")
    if settings.fanart_api_key:
        fanart_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(base_url=str(settings.fanart_api_url), timeout=timeout)
        )
        providers.append(FanartProvider(settings, fanart_client))
    else:
        logger.warning("FANART_API_KEY not set; fanart.tv artwork disabled")

    database = Database(settings.database_url)
    await database.create_all()

    services = CuratorServices.build(settings, database, providers)
    app.state.services = services
    await services.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await services.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Ranks and selects artwork for catalog entities from external providers",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_services(app: FastAPI) -> CuratorServices:
    services = getattr(app.state, "services", None)
    if not isinstance(services, CuratorServices):
        raise RuntimeError("Curator services not initialised")
    return services


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        payload = {}
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


def _entity_ref(entity_type: str, entity_id: int, payload: dict[str, Any]) -> EntityRef:
    try:
        return EntityRef.model_validate(
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "asset_types": payload.get("asset_types") or payload.get("assetTypes"),
            }
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors()) from exc


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/status")
    async def status_endpoint() -> dict[str, Any]:
        services = get_services(fastapi_app)
        snapshot = await services.queue.snapshot(recent_limit=0)
        payload = services.status()
        payload["queue"] = snapshot.counts()
        return payload

    @fastapi_app.post("/api/jobs", status_code=202)
    async def enqueue_job(request: Request) -> dict[str, Any]:
        services = get_services(fastapi_app)
        payload = await _json_body(request)
        try:
            job = EnqueueRequest.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        if job.type not in JOB_TYPES:
            raise HTTPException(status_code=400, detail=f"Unknown job type {job.type}")
        job_id = await services.queue.enqueue(
            job.type, job.priority, job.payload, max_retries=job.max_retries
        )
        return {"job_id": job_id}

    @fastapi_app.get("/api/jobs")
    async def list_jobs() -> JSONResponse:
        services = get_services(fastapi_app)
        snapshot = await services.queue.snapshot()
        body = snapshot.model_dump(mode="json")
        body["counts"] = snapshot.counts()
        return JSONResponse(body)

    @fastapi_app.get("/api/jobs/{job_id}")
    async def job_status(job_id: int) -> JSONResponse:
        services = get_services(fastapi_app)
        try:
            view = await services.queue.get_status(job_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found") from exc
        return JSONResponse(view.model_dump(mode="json"))

    @fastapi_app.post("/api/jobs/{job_id}/cancel")
    async def cancel_job(job_id: int) -> JSONResponse:
        services = get_services(fastapi_app)
        try:
            view = await services.queue.cancel(job_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found") from exc
        except ValidationFailure as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(view.model_dump(mode="json"))

    @fastapi_app.post("/api/webhooks/{source}", status_code=202)
    async def webhook(source: str, request: Request) -> dict[str, Any]:
        services = get_services(fastapi_app)
        payload = await _json_body(request)
        try:
            ref = EntityRef.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        job_payload = ref.model_dump(mode="json", exclude_none=True)
        job_payload["source"] = source
        job_id = await services.queue.enqueue(
            WEBHOOK_RECEIVED, JobPriority.CRITICAL, job_payload
        )
        return {"job_id": job_id}

    @fastapi_app.get("/api/entities/{entity_type}/{entity_id}/assets/{asset_type}")
    async def list_candidates(
        entity_type: str,
        entity_id: int,
        asset_type: str,
        include_blocked: bool = False,
    ) -> JSONResponse:
        services = get_services(fastapi_app)
        records = await services.candidates.list_candidates(
            entity_type, entity_id, asset_type, include_blocked=include_blocked
        )
        locked = await services.locks.is_locked(entity_type, entity_id, asset_type)
        return JSONResponse(
            {
                "locked": locked,
                "candidates": [
                    CandidateView.model_validate(record).model_dump(mode="json")
                    for record in records
                ],
            }
        )

    @fastapi_app.post("/api/entities/{entity_type}/{entity_id}/assets/{asset_type}/reset")
    async def reset_selection(
        entity_type: str, entity_id: int, asset_type: str
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        cleared = await services.candidates.reset_selection(
            entity_type, entity_id, asset_type
        )
        return {"cleared": cleared}

    @fastapi_app.post("/api/candidates/{candidate_id}/{action}")
    async def candidate_action(candidate_id: int, action: str) -> JSONResponse:
        services = get_services(fastapi_app)
        operations = {
            "select": services.candidates.select_candidate,
            "block": services.candidates.block_candidate,
            "unblock": services.candidates.unblock_candidate,
        }
        operation = operations.get(action)
        if operation is None:
            raise HTTPException(status_code=404, detail=f"Unknown action {action}")
        try:
            record = await operation(candidate_id)
        except KeyError as exc:
            raise HTTPException(
                status_code=404, detail=f"Candidate {candidate_id} not found"
            ) from exc
        except ValidationFailure as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(CandidateView.model_validate(record).model_dump(mode="json"))

    @fastapi_app.post("/api/entities/{entity_type}/{entity_id}/refresh", status_code=202)
    async def refresh_entity(
        entity_type: str, entity_id: int, request: Request
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        ref = _entity_ref(entity_type, entity_id, await _json_body(request))
        job_id = await services.queue.enqueue(
            ENRICH_ASSETS,
            JobPriority.USER_ENRICHMENT,
            ref.model_dump(mode="json", exclude_none=True),
            dedupe_key=enrich_dedupe_key(ref.entity_type, ref.entity_id),
            merge_payload=merge_enrich_payload,
            requeue_if_running=True,
        )
        return {"job_id": job_id}

    @fastapi_app.post("/api/entities/{entity_type}/{entity_id}/select")
    async def select_entity_assets(
        entity_type: str, entity_id: int, request: Request
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        payload = await _json_body(request)
        ref = _entity_ref(entity_type, entity_id, payload)
        try:
            options = SelectionOptions.model_validate(payload.get("options") or {})
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        decisions = await services.selector.select_best_assets(
            ref.entity_type,
            ref.entity_id,
            ref.asset_types or services.settings.asset_types,
            options,
        )
        return {"decisions": [decision.model_dump() for decision in decisions]}


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
