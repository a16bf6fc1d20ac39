"""Pydantic models describing candidates, selections and jobs."""

from __future__ import annotations

from datetime import datetime
from enum import IntEnum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import coerce_float, coerce_int, normalise_language

SelectedBy = Literal["auto", "manual"]
JobStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
SelectionAction = Literal["selected", "unchanged", "locked", "no_candidates"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "processing"})


class JobPriority(IntEnum):
    """Priority classes, lower number is more urgent."""

    CRITICAL = 1  # webhook-triggered work
    USER_ACTION = 2  # synchronous user actions
    USER_ENRICHMENT = 3  # user-initiated enrichment
    NORMAL = 5  # background enrichment and selection
    LOW = 8  # bulk scans
    BACKGROUND = 10  # garbage collection

    @classmethod
    def is_urgent(cls, priority: int) -> bool:
        """Return whether callers at this priority may use reserved capacity."""

        return int(priority) <= cls.USER_ENRICHMENT


class RawCandidate(BaseModel):
    """Asset offered by a provider, before it is stored or ranked."""

    model_config = ConfigDict(populate_by_name=True)

    provider: str
    url: str
    asset_type: str
    width: int | None = None
    height: int | None = None
    language: str | None = Field(
        default=None, validation_alias=AliasChoices("language", "lang", "iso_639_1")
    )
    vote_average: float | None = None
    vote_count: int | None = Field(
        default=None, validation_alias=AliasChoices("vote_count", "votes", "likes")
    )
    quality: str | None = None
    file_size: int | None = None
    perceptual_hash: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("language", mode="before")
    @classmethod
    def _normalise_language(cls, value: object) -> str | None:
        return normalise_language(value)

    @field_validator("width", "height", "vote_count", "file_size", mode="before")
    @classmethod
    def _coerce_int(cls, value: object) -> int | None:
        return coerce_int(value)

    @field_validator("vote_average", mode="before")
    @classmethod
    def _coerce_float(cls, value: object) -> float | None:
        return coerce_float(value)

    @field_validator("quality", mode="before")
    @classmethod
    def _normalise_quality(cls, value: object) -> str | None:
        if value is None:
            return None
        return str(value).strip().lower() or None


class ExistingAsset(BaseModel):
    """Asset already in place for an entity, used for duplicate suppression."""

    asset_type: str
    provider: str | None = None
    url: str | None = None
    width: int | None = None
    height: int | None = None
    file_size: int | None = None
    perceptual_hash: str | None = None


class SelectionOptions(BaseModel):
    """Knobs for one ``select_best_assets`` run."""

    preferred_language: str | None = None
    provider_priority: tuple[str, ...] | None = None
    existing_assets: list[ExistingAsset] = Field(default_factory=list)
    dry_run: bool = False


class SelectionDecision(BaseModel):
    """Outcome of auto-selection for one asset type."""

    asset_type: str
    action: SelectionAction
    candidate_id: int | None = None
    previous_candidate_id: int | None = None
    provider: str | None = None
    url: str | None = None
    tier: int | None = None
    score: float | None = None
    reason: str | None = None


class CandidateView(BaseModel):
    """Serialised candidate row for the manual review API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: str
    entity_id: int
    asset_type: str
    provider: str
    url: str
    width: int | None = None
    height: int | None = None
    language: str | None = None
    vote_average: float | None = None
    vote_count: int | None = None
    score: float
    is_selected: bool
    is_blocked: bool
    selected_at: datetime | None = None
    selected_by: str | None = None
    last_refreshed: datetime


class JobProgress(BaseModel):
    current: int = 0
    total: int = 0
    message: str | None = None

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(min(self.current / self.total, 1.0) * 100, 1)


class JobView(BaseModel):
    """Queryable state of a job, including its last error."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    priority: int
    payload: dict[str, Any]
    status: JobStatus
    progress: JobProgress = Field(default_factory=JobProgress)
    retry_count: int
    max_retries: int
    next_retry_at: datetime | None = None
    is_cancellable: bool = True
    cancel_requested: bool = False
    error_message: str | None = None
    error_stack: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Any) -> "JobView":
        view = cls.model_validate(record)
        view.progress = JobProgress(
            current=record.progress_current or 0,
            total=record.progress_total or 0,
            message=record.progress_message,
        )
        return view


class QueueSnapshot(BaseModel):
    """Running, queued and scheduled-for-retry jobs for the admin UI."""

    running: list[JobView] = Field(default_factory=list)
    queued: list[JobView] = Field(default_factory=list)
    scheduled: list[JobView] = Field(default_factory=list)
    recent: list[JobView] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "running": len(self.running),
            "queued": len(self.queued),
            "scheduled": len(self.scheduled),
        }


class EnqueueRequest(BaseModel):
    """Body of a manual enqueue call."""

    type: str = Field(validation_alias=AliasChoices("type", "jobType", "job_type"))
    priority: int = Field(default=JobPriority.NORMAL, ge=1, le=10)
    payload: dict[str, Any] = Field(default_factory=dict)
    max_retries: int | None = Field(
        default=None, ge=0, le=50, validation_alias=AliasChoices("maxRetries", "max_retries")
    )


class EntityRef(BaseModel):
    """Reference to a catalog entity carried in job payloads."""

    model_config = ConfigDict(populate_by_name=True)

    entity_type: str = Field(
        default="movie", validation_alias=AliasChoices("entity_type", "entityType")
    )
    entity_id: int = Field(validation_alias=AliasChoices("entity_id", "entityId"))
    asset_types: tuple[str, ...] | None = Field(
        default=None, validation_alias=AliasChoices("asset_types", "assetTypes")
    )

    @field_validator("entity_type", mode="before")
    @classmethod
    def _normalise_type(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value
