"""Contract for the content-addressed store of assets already in place."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..models import ExistingAsset


@runtime_checkable
class AssetCache(Protocol):
    async def existing_assets(
        self, entity_type: str, entity_id: int
    ) -> list[ExistingAsset]:
        ...


class NullAssetCache:
    """Cache that holds nothing, used when no asset store is wired in."""

    async def existing_assets(
        self, entity_type: str, entity_id: int
    ) -> list[ExistingAsset]:
        return []
