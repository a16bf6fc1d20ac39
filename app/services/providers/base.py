"""Provider capability interface and the guarded gateway used to call it."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    Mapping,
    Protocol,
    Sequence,
    TypeVar,
    runtime_checkable,
)

import httpx

from ...errors import PermanentProviderFailure, RateLimitedFailure, TransientProviderFailure
from ...models import JobPriority, RawCandidate
from ..circuit_breaker import BreakerRegistry
from ..rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class AssetProvider(Protocol):
    """Uniform "fetch candidates" capability, one implementation per provider."""

    provider_id: str
    id_key: str
    supported_asset_types: tuple[str, ...]
    entity_types: tuple[str, ...]

    async def fetch_candidates(
        self, external_id: str, asset_type: str
    ) -> list[RawCandidate]:
        ...


@runtime_checkable
class BatchProvider(Protocol):
    """Optional capability to fetch several asset types with one request."""

    async def fetch_candidates_for(
        self, external_id: str, asset_types: Sequence[str]
    ) -> dict[str, list[RawCandidate]]:
        ...


@runtime_checkable
class ChangesProvider(Protocol):
    """Optional bulk "changes since" capability."""

    async def fetch_changes(self, since: datetime) -> list[str]:
        ...


def supports_changes(provider: object) -> bool:
    return isinstance(provider, ChangesProvider)


def supports_batch(provider: object) -> bool:
    return isinstance(provider, BatchProvider)


def raise_for_provider_status(provider_id: str, response: httpx.Response) -> None:
    """Translate an HTTP status into the failure taxonomy."""

    status = response.status_code
    if status < 400:
        return
    if status == 429:
        retry_after: float | None
        try:
            retry_after = float(response.headers.get("retry-after", ""))
        except ValueError:
            retry_after = None
        raise RateLimitedFailure(
            f"{provider_id} throttled the request", resource=provider_id, retry_after=retry_after
        )
    if status in (400, 401, 403, 404, 410, 422):
        raise PermanentProviderFailure(
            f"{provider_id} rejected the request ({status})",
            resource=provider_id,
            status_code=status,
        )
    raise TransientProviderFailure(
        f"{provider_id} returned {status}", resource=provider_id, status_code=status
    )


class ProviderGateway:
    """Calls providers through their rate limiter, circuit breaker and a soft timeout."""

    def __init__(
        self,
        providers: Iterable[AssetProvider],
        *,
        limiters: Mapping[str, RateLimiter],
        breakers: BreakerRegistry,
        timeout_seconds: float = 20.0,
    ):
        self._providers: dict[str, AssetProvider] = {
            provider.provider_id: provider for provider in providers
        }
        self._limiters = dict(limiters)
        self._breakers = breakers
        self._timeout_seconds = timeout_seconds

    @property
    def provider_ids(self) -> tuple[str, ...]:
        return tuple(self._providers)

    def get(self, provider_id: str) -> AssetProvider:
        try:
            return self._providers[provider_id]
        except KeyError as exc:
            raise KeyError(f"Unknown provider {provider_id}") from exc

    def providers(self) -> list[AssetProvider]:
        return list(self._providers.values())

    def limiter(self, provider_id: str) -> RateLimiter | None:
        return self._limiters.get(provider_id)

    async def fetch_candidates(
        self,
        provider_id: str,
        external_id: str,
        asset_type: str,
        *,
        priority: int = JobPriority.NORMAL,
    ) -> list[RawCandidate]:
        provider = self.get(provider_id)
        return await self._call(
            provider_id,
            priority,
            lambda: provider.fetch_candidates(external_id, asset_type),
        )

    async def fetch_candidates_for(
        self,
        provider_id: str,
        external_id: str,
        asset_types: Sequence[str],
        *,
        priority: int = JobPriority.NORMAL,
    ) -> dict[str, list[RawCandidate]]:
        """Candidates per asset type, in one guarded call where the provider allows it."""

        provider = self.get(provider_id)
        if supports_batch(provider):
            return await self._call(
                provider_id,
                priority,
                lambda: provider.fetch_candidates_for(  # type: ignore[attr-defined]
                    external_id, tuple(asset_types)
                ),
            )
        found: dict[str, list[RawCandidate]] = {}
        for asset_type in asset_types:
            found[asset_type] = await self.fetch_candidates(
                provider_id, external_id, asset_type, priority=priority
            )
        return found

    async def fetch_changes(
        self,
        provider_id: str,
        since: datetime,
        *,
        priority: int = JobPriority.LOW,
    ) -> list[str] | None:
        """Return changed external ids, or ``None`` when the provider cannot tell."""

        provider = self.get(provider_id)
        if not supports_changes(provider):
            return None
        return await self._call(
            provider_id,
            priority,
            lambda: provider.fetch_changes(since),  # type: ignore[attr-defined]
        )

    async def _call(
        self,
        provider_id: str,
        priority: int,
        factory: Callable[[], Awaitable[T]],
    ) -> T:
        breaker = self._breakers.get(provider_id)
        return await breaker.call(self._limited, provider_id, priority, factory)

    async def _limited(
        self,
        provider_id: str,
        priority: int,
        factory: Callable[[], Awaitable[T]],
    ) -> T:
        limiter = self._limiters.get(provider_id)
        if limiter is not None:
            await limiter.acquire(priority)
        try:
            return await asyncio.wait_for(factory(), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise TransientProviderFailure(
                f"{provider_id} did not answer within {self._timeout_seconds:.0f}s",
                resource=provider_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientProviderFailure(
                f"Transport error talking to {provider_id}: {exc.__class__.__name__}",
                resource=provider_id,
            ) from exc

    def stats(self) -> dict[str, Any]:
        return {
            "providers": list(self._providers),
            "breakers": self._breakers.stats(),
            "limiters": [limiter.stats() for limiter in self._limiters.values()],
        }
