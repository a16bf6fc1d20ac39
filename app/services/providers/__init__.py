"""Provider implementations behind the uniform candidate-fetch interface."""

from __future__ import annotations

from .base import AssetProvider, ProviderGateway, supports_changes
from .fanart import FanartProvider
from .tmdb import TMDBProvider

__all__ = [
    "AssetProvider",
    "FanartProvider",
    "ProviderGateway",
    "TMDBProvider",
    "supports_changes",
]
