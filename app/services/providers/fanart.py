"""Artwork candidates from fanart.tv."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx

from ...config import Settings
from ...models import RawCandidate
from .base import raise_for_provider_status

logger = logging.getLogger(__name__)

# asset type -> (response collection, whether fanart.tv labels it HD)
COLLECTIONS: dict[str, tuple[tuple[str, bool], ...]] = {
    "poster": (("movieposter", False),),
    "fanart": (("moviebackground", False),),
    "clearlogo": (("hdmovielogo", True), ("movielogo", False)),
    "clearart": (("hdmovieclearart", True), ("movieart", False)),
    "banner": (("moviebanner", False),),
    "landscape": (("moviethumb", False),),
    "discart": (("moviedisc", False),),
}


class FanartProvider:
    """Fetch community artwork for movies from fanart.tv."""

    provider_id = "fanart"
    id_key = "tmdb"
    supported_asset_types: tuple[str, ...] = tuple(COLLECTIONS)
    entity_types: tuple[str, ...] = ("movie",)

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.fanart_api_key:
            raise ValueError("fanart.tv API key is required when initialising FanartProvider")
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
        wanted = [asset_type for asset_type in asset_types if asset_type in COLLECTIONS]
        if not wanted:
            return {}

        response = await self._client.get(
            f"/movies/{external_id}",
            params={"api_key": self._settings.fanart_api_key},
        )
        if response.status_code == 404:
            # fanart.tv answers 404 for titles nobody has uploaded artwork for.
            return {asset_type: [] for asset_type in wanted}
        raise_for_provider_status(self.provider_id, response)
        payload = response.json()

        found: dict[str, list[RawCandidate]] = {}
        for asset_type in wanted:
            candidates: list[RawCandidate] = []
            for collection, is_hd in COLLECTIONS[asset_type]:
                for image in payload.get(collection) or []:
                    candidate = self._build_candidate(image, asset_type, is_hd)
                    if candidate is not None:
                        candidates.append(candidate)
            found[asset_type] = candidates
        return found

    def _build_candidate(
        self, image: Any, asset_type: str, is_hd: bool
    ) -> RawCandidate | None:
        if not isinstance(image, dict) or not image.get("url"):
            return None
        language = image.get("lang")
        if language == "00":
            language = None
        return RawCandidate(
            provider=self.provider_id,
            url=image["url"],
            asset_type=asset_type,
            language=language,
            vote_count=image.get("likes"),
            quality="hd" if is_hd else None,
            metadata={"fanart_id": image.get("id")},
        )
