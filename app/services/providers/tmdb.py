"""Artwork candidates from The Movie Database (TMDB)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence

import httpx

from ...config import Settings
from ...models import RawCandidate
from .base import raise_for_provider_status

logger = logging.getLogger(__name__)

IMAGE_BASE_URL = "https://image.tmdb.org/t/p/original"

# asset type -> key of the /images response listing it
IMAGE_COLLECTIONS: dict[str, str] = {
    "poster": "posters",
    "fanart": "backdrops",
    "clearlogo": "logos",
}


class TMDBProvider:
    """Fetch posters, backdrops and logos for movies from TMDB."""

    provider_id = "tmdb"
    id_key = "tmdb"
    supported_asset_types: tuple[str, ...] = tuple(IMAGE_COLLECTIONS)
    entity_types: tuple[str, ...] = ("movie",)

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBProvider")
        self._settings = settings
        self._client = http_client

    async def fetch_candidates(
        self, external_id: str, asset_type: str
    ) -> list[RawCandidate]:
        found = await self.fetch_candidates_for(external_id, (asset_type,))
        return found.get(asset_type, [])

    async def fetch_candidates_for(
        self, external_id: str, asset_types: Sequence[str]
    ) -> dict[str, list[RawCandidate]]:
        """Split one ``/images`` response into candidates per asset type."""

        wanted = [asset_type for asset_type in asset_types if asset_type in IMAGE_COLLECTIONS]
        if not wanted:
            return {}

        response = await self._client.get(
            f"/movie/{external_id}/images",
            params={"api_key": self._settings.tmdb_api_key},
        )
        raise_for_provider_status(self.provider_id, response)
        payload = response.json()

        found: dict[str, list[RawCandidate]] = {}
        for asset_type in wanted:
            candidates: list[RawCandidate] = []
            for image in payload.get(IMAGE_COLLECTIONS[asset_type]) or []:
                candidate = self._build_candidate(image, asset_type)
                if candidate is not None:
                    candidates.append(candidate)
            found[asset_type] = candidates
        logger.debug(
            "TMDB returned %s candidates for %s",
            {asset_type: len(items) for asset_type, items in found.items()},
            external_id,
        )
        return found

    async def fetch_changes(self, since: datetime) -> list[str]:
        """Return ids of movies changed since ``since`` (TMDB keeps 14 days)."""

        changed: list[str] = []
        page = 1
        while True:
            response = await self._client.get(
                "/movie/changes",
                params={
                    "api_key": self._settings.tmdb_api_key,
                    "start_date": since.strftime("%Y-%m-%d"),
                    "page": page,
                },
            )
            raise_for_provider_status(self.provider_id, response)
            payload = response.json()
            for entry in payload.get("results") or []:
                if isinstance(entry, dict) and entry.get("id") is not None:
                    changed.append(str(entry["id"]))
            total_pages = payload.get("total_pages") or 1
            if page >= total_pages:
                break
            page += 1
        return changed

    def _build_candidate(self, image: Any, asset_type: str) -> RawCandidate | None:
        if not isinstance(image, dict):
            return None
        path = image.get("file_path")
        if not path:
            return None
        return RawCandidate(
            provider=self.provider_id,
            url=self._build_image_url(path),
            asset_type=asset_type,
            width=image.get("width"),
            height=image.get("height"),
            language=image.get("iso_639_1"),
            vote_average=image.get("vote_average"),
            vote_count=image.get("vote_count"),
            metadata={"file_path": path},
        )

    @staticmethod
    def _build_image_url(path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{IMAGE_BASE_URL}{path}"
