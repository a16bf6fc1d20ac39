"""Deterministic ranking of asset candidates for one (entity, asset type).

Candidates are bucketed into four tiers by language and quality:

* Tier 1: preferred (or language-neutral) language and HD
* Tier 2: preferred (or language-neutral) language only
* Tier 3: HD only
* Tier 4: everything else

Within a tier the first decisive rule wins: a significant vote difference,
then a significant resolution difference, then the caller's provider
priority. Anything still tied keeps its input order.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, Generic, Iterable, Mapping, Sequence, TypeVar

from ..utils import coerce_int, normalise_language

logger = logging.getLogger(__name__)

T = TypeVar("T")

HD_MIN_EDGE = 1920
HD_QUALITY_TAGS = frozenset({"hd", "4k"})
HD_METADATA_HINTS = frozenset({"hd", "bluray", "4k", "uhd", "1080p", "2160p"})
VOTE_SIGNIFICANCE = 0.5
RESOLUTION_SIGNIFICANCE = 0.1

EXPECTED_ASPECT_RATIOS: dict[str, float] = {
    "poster": 0.675,
    "fanart": 1.778,
    "banner": 5.4,
    "clearlogo": 1.0,
    "clearart": 1.0,
    "landscape": 1.778,
    "thumb": 1.778,
    "discart": 1.0,
    "characterart": 0.675,
    "keyart": 0.675,
}

# (minimum pixel count, score) from best to worst.
RESOLUTION_CURVE: tuple[tuple[int, float], ...] = (
    (7680 * 4320, 1.0),
    (3840 * 2160, 0.95),
    (2560 * 1440, 0.85),
    (1920 * 1080, 0.75),
    (1280 * 720, 0.6),
    (854 * 480, 0.4),
    (640 * 360, 0.2),
)

# (maximum relative deviation, score) from best to worst.
ASPECT_CURVE: tuple[tuple[float, float], ...] = (
    (0.02, 1.0),
    (0.05, 0.9),
    (0.10, 0.7),
    (0.20, 0.4),
)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


@dataclass(slots=True)
class ScoredCandidate(Generic[T]):
    """A candidate together with the ranking facts derived from it."""

    candidate: T
    tier: int
    resolution: int | None
    votes: int | None
    provider_rank: int
    score: float
    reason: str

    @property
    def provider(self) -> str | None:
        return _field(self.candidate, "provider")


def _field(candidate: Any, name: str) -> Any:
    if isinstance(candidate, Mapping):
        return candidate.get(name)
    return getattr(candidate, name, None)


def _dimensions(candidate: Any) -> tuple[int | None, int | None]:
    width = coerce_int(_field(candidate, "width"))
    height = coerce_int(_field(candidate, "height"))
    return (width if width and width > 0 else None, height if height and height > 0 else None)


def _metadata_tokens(value: Any) -> set[str]:
    tokens: set[str] = set()
    if value is None:
        return tokens
    if isinstance(value, Mapping):
        for item in value.values():
            tokens |= _metadata_tokens(item)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            tokens |= _metadata_tokens(item)
    elif isinstance(value, (str, int, float)) and not isinstance(value, bool):
        tokens.update(_TOKEN_RE.findall(str(value).lower()))
    return tokens


def resolution_score(width: int, height: int) -> float:
    """Monotonic 0-1 curve over pixel count."""

    pixels = width * height
    for threshold, score in RESOLUTION_CURVE:
        if pixels >= threshold:
            return score
    lowest = RESOLUTION_CURVE[-1][0]
    return max(0.1, pixels / lowest * 0.2)


def aspect_ratio_score(width: int, height: int, expected_ratio: float) -> float:
    """0-1 score that falls off with deviation from the expected aspect ratio."""

    if not width or not height or expected_ratio <= 0:
        return 0.0
    deviation = abs(width / height - expected_ratio) / expected_ratio
    for limit, score in ASPECT_CURVE:
        if deviation <= limit:
            return score
    return 0.0


def is_same_asset(candidate: Any, other: Any) -> bool:
    """Return whether two candidates (or a candidate and an existing asset) are the same image."""

    url = _field(candidate, "url")
    other_url = _field(other, "url")
    if url and other_url and url == other_url:
        provider = _field(candidate, "provider")
        other_provider = _field(other, "provider")
        if provider is None or other_provider is None or provider == other_provider:
            return True

    width, height = _dimensions(candidate)
    other_width, other_height = _dimensions(other)
    file_size = coerce_int(_field(candidate, "file_size"))
    other_size = coerce_int(_field(other, "file_size"))
    if (
        width is not None
        and height is not None
        and file_size
        and (width, height, file_size) == (other_width, other_height, other_size)
    ):
        return True

    phash = _field(candidate, "perceptual_hash")
    other_phash = _field(other, "perceptual_hash")
    return bool(phash and other_phash and phash == other_phash)


def filter_duplicates(
    candidates: Iterable[T],
    existing_assets: Sequence[Any],
    *,
    asset_type: str | None = None,
) -> list[T]:
    """Drop candidates matching an asset that is already in place for the entity.

    Each candidate is judged only against ``existing_assets``, so the surviving
    set does not depend on the order of the input.
    """

    relevant = [
        existing
        for existing in existing_assets
        if asset_type is None
        or _field(existing, "asset_type") in (None, asset_type)
    ]
    if not relevant:
        return list(candidates)

    kept: list[T] = []
    for candidate in candidates:
        if any(is_same_asset(candidate, existing) for existing in relevant):
            logger.debug(
                "Dropping duplicate %s candidate %s", asset_type or "asset", _field(candidate, "url")
            )
            continue
        kept.append(candidate)
    return kept


class CandidateScorer:
    """Pure ranking function over the candidates of one asset type."""

    def __init__(
        self,
        preferred_language: str = "en",
        provider_priority: Sequence[str] = (),
    ):
        self._preferred_language = normalise_language(preferred_language) or "en"
        self._provider_order = {
            provider: index for index, provider in enumerate(provider_priority)
        }

    @property
    def preferred_language(self) -> str:
        return self._preferred_language

    def language_match(self, candidate: Any) -> str:
        """Classify a candidate's language as ``match``, ``neutral`` or ``mismatch``."""

        language = normalise_language(_field(candidate, "language"))
        if language is None:
            return "neutral"
        if language == self._preferred_language:
            return "match"
        return "mismatch"

    def is_hd(self, candidate: Any) -> bool:
        width, height = _dimensions(candidate)
        if max(width or 0, height or 0) >= HD_MIN_EDGE:
            return True
        quality = _field(candidate, "quality")
        if isinstance(quality, str) and quality.strip().lower() in HD_QUALITY_TAGS:
            return True
        tokens: set[str] = set()
        for name in ("metadata", "provider_metadata"):
            metadata = _field(candidate, name)
            # ORM rows expose SQLAlchemy's MetaData under ``metadata``.
            if isinstance(metadata, Mapping):
                tokens |= _metadata_tokens(metadata)
        return bool(tokens & HD_METADATA_HINTS)

    def tier(self, candidate: Any) -> int:
        preferred = self.language_match(candidate) != "mismatch"
        hd = self.is_hd(candidate)
        if preferred and hd:
            return 1
        if preferred:
            return 2
        if hd:
            return 3
        return 4

    def provider_rank(self, provider: str | None) -> int:
        if provider is None:
            return len(self._provider_order)
        return self._provider_order.get(provider, len(self._provider_order))

    def score_candidate(self, candidate: T, asset_type: str) -> ScoredCandidate[T]:
        tier = self.tier(candidate)
        width, height = _dimensions(candidate)
        resolution = width * height if width and height else None
        votes = coerce_int(_field(candidate, "vote_count"))
        if votes is not None and votes < 0:
            votes = None

        score = (5 - tier) / 4
        if width and height:
            score += 0.2 * resolution_score(width, height)
            expected = EXPECTED_ASPECT_RATIOS.get(asset_type, 1.0)
            score += 0.1 * aspect_ratio_score(width, height, expected)
        if votes is not None:
            score += 0.15 * min(votes / 100, 1.0)

        return ScoredCandidate(
            candidate=candidate,
            tier=tier,
            resolution=resolution,
            votes=votes,
            provider_rank=self.provider_rank(_field(candidate, "provider")),
            score=round(min(score, 1.0), 4),
            reason=_describe(tier, votes, resolution),
        )

    @staticmethod
    def compare(a: ScoredCandidate[Any], b: ScoredCandidate[Any]) -> int:
        """Negative when ``a`` ranks first, positive when ``b`` does, 0 when tied."""

        if a.tier != b.tier:
            return a.tier - b.tier

        if a.votes is not None and b.votes is not None:
            if abs(a.votes - b.votes) > VOTE_SIGNIFICANCE * min(a.votes, b.votes):
                return -1 if a.votes > b.votes else 1

        if a.resolution is not None and b.resolution is not None:
            if abs(a.resolution - b.resolution) > RESOLUTION_SIGNIFICANCE * min(
                a.resolution, b.resolution
            ):
                return -1 if a.resolution > b.resolution else 1

        return a.provider_rank - b.provider_rank

    def rank(
        self,
        candidates: Iterable[T],
        asset_type: str,
        *,
        existing_assets: Sequence[Any] = (),
    ) -> list[ScoredCandidate[T]]:
        """Return the candidates best first, after dropping already-present assets."""

        pool = filter_duplicates(candidates, existing_assets, asset_type=asset_type)
        scored = [self.score_candidate(candidate, asset_type) for candidate in pool]
        # sorted() is stable, so residual ties keep their input order.
        return sorted(scored, key=cmp_to_key(self.compare))


def _describe(tier: int, votes: int | None, resolution: int | None) -> str:
    reasons: list[str] = []
    if tier == 1:
        reasons.append("Best quality in preferred language")
    elif tier == 2:
        reasons.append("Preferred language")
    elif tier == 3:
        reasons.append("High quality (HD)")

    if votes is not None and votes > 50:
        reasons.append(f"High community votes ({votes})")
    elif votes is not None and votes > 10:
        reasons.append(f"Community votes ({votes})")

    if resolution is not None:
        if resolution >= 7680 * 4320:
            reasons.append("8K resolution")
        elif resolution >= 3840 * 2160:
            reasons.append("4K resolution")
        elif resolution >= 1920 * 1080:
            reasons.append("1080p resolution")

    return ", ".join(reasons) if reasons else "Selected by ranking"
