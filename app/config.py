"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_ASSET_TYPES: tuple[str, ...] = ("poster", "fanart", "clearlogo", "banner")
DEFAULT_PROVIDER_PRIORITY: tuple[str, ...] = ("fanart", "tmdb")


def _parse_csv(value: object, *, field_name: str) -> tuple[str, ...] | None:
    """Split comma-separated environment values into a de-duplicated tuple."""

    if value is None:
        return None
    if isinstance(value, str):
        raw_values = [part.strip() for part in value.split(",")]
    elif isinstance(value, Iterable):
        raw_values = [str(part).strip() for part in value]
    else:
        raise TypeError(f"{field_name} must be a string or iterable of strings")

    cleaned: list[str] = []
    for entry in raw_values:
        slug = entry.lower()
        if slug and slug not in cleaned:
            cleaned.append(slug)
    return tuple(cleaned) or None


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Curator", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./curator.db", alias="DATABASE_URL"
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    fanart_api_key: str | None = Field(default=None, alias="FANART_API_KEY")
    fanart_api_url: HttpUrl = Field(
        default="https://webservice.fanart.tv/v3", alias="FANART_API_URL"
    )
    provider_timeout_seconds: float = Field(
        default=20.0, alias="PROVIDER_TIMEOUT_SECONDS", gt=0
    )

    preferred_language: str = Field(default="en", alias="PREFERRED_LANGUAGE")
    provider_priority: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_PROVIDER_PRIORITY, alias="PROVIDER_PRIORITY"
    )
    asset_types: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_ASSET_TYPES, alias="ASSET_TYPES"
    )

    tmdb_rate_limit: int = Field(default=40, alias="TMDB_RATE_LIMIT", ge=1)
    fanart_rate_limit: int = Field(default=10, alias="FANART_RATE_LIMIT", ge=1)
    rate_limit_window_seconds: float = Field(
        default=10.0, alias="RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    rate_limit_reserved: int = Field(default=2, alias="RATE_LIMIT_RESERVED", ge=0)

    breaker_failure_threshold: int = Field(
        default=5, alias="BREAKER_FAILURE_THRESHOLD", ge=1
    )
    breaker_cooldown_seconds: float = Field(
        default=60.0, alias="BREAKER_COOLDOWN_SECONDS", gt=0
    )
    infra_breaker_failure_threshold: int = Field(
        default=5, alias="INFRA_BREAKER_FAILURE_THRESHOLD", ge=1
    )
    infra_breaker_cooldown_seconds: float = Field(
        default=60.0, alias="INFRA_BREAKER_COOLDOWN_SECONDS", gt=0
    )

    job_max_retries: int = Field(default=3, alias="JOB_MAX_RETRIES", ge=0, le=50)
    backoff_cap_seconds: float = Field(
        default=300.0, alias="BACKOFF_CAP_SECONDS", gt=0
    )
    job_timeout_seconds: float = Field(
        default=120.0, alias="JOB_TIMEOUT_SECONDS", gt=0
    )
    worker_count: int = Field(default=1, alias="WORKER_COUNT", ge=1, le=32)
    worker_poll_interval: float = Field(
        default=1.0, alias="WORKER_POLL_INTERVAL", gt=0
    )

    candidate_retention_days: int = Field(
        default=30, alias="CANDIDATE_RETENTION_DAYS", ge=1
    )
    use_changes_api: bool = Field(default=True, alias="USE_CHANGES_API")
    ledger_max_age_days: int = Field(default=7, alias="LEDGER_MAX_AGE_DAYS", ge=1)
    sweep_interval_seconds: int = Field(
        default=43_200, alias="SWEEP_INTERVAL_SECONDS", ge=60
    )
    sweep_chunk_size: int = Field(default=50, alias="SWEEP_CHUNK_SIZE", ge=1, le=1_000)
    cleanup_interval_seconds: int = Field(
        default=86_400, alias="CLEANUP_INTERVAL_SECONDS", ge=60
    )
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("provider_priority", mode="before")
    @classmethod
    def _parse_provider_priority(cls, value: object) -> tuple[str, ...]:
        """Normalise provider ordering from environment values."""

        return _parse_csv(value, field_name="PROVIDER_PRIORITY") or DEFAULT_PROVIDER_PRIORITY

    @field_validator("asset_types", mode="before")
    @classmethod
    def _parse_asset_types(cls, value: object) -> tuple[str, ...]:
        return _parse_csv(value, field_name="ASSET_TYPES") or DEFAULT_ASSET_TYPES

    @field_validator("preferred_language", mode="before")
    @classmethod
    def _normalise_language(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or "en"
        return value

    @model_validator(mode="after")
    def _check_reserved_capacity(self) -> "Settings":
        """Reserved headroom must leave room for normal-priority callers."""

        smallest = min(self.tmdb_rate_limit, self.fanart_rate_limit)
        if self.rate_limit_reserved >= smallest:
            raise ValueError(
                "RATE_LIMIT_RESERVED must be smaller than every provider rate limit"
            )
        return self

    def rate_limit_for(self, provider_id: str) -> int:
        """Return the per-window request budget for a provider."""

        limits = {
            "tmdb": self.tmdb_rate_limit,
            "fanart": self.fanart_rate_limit,
        }
        return limits.get(provider_id, min(limits.values()))

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
