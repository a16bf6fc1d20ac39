"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from app.config import DEFAULT_ASSET_TYPES, DEFAULT_PROVIDER_PRIORITY, Settings


def test_provider_priority_parses_csv() -> None:
    """Provider priority should be parsed case-insensitively without duplicates."""

    settings = Settings(_env_file=None, PROVIDER_PRIORITY="TMDB, fanart,tmdb")

    assert settings.provider_priority == ("tmdb", "fanart")


def test_asset_types_accept_lists_and_blank_defaults() -> None:
    """Asset types accept iterables and fall back to the default set when blank."""

    listed = Settings(_env_file=None, ASSET_TYPES=["Poster", "clearart"])
    blank = Settings(_env_file=None, ASSET_TYPES="")

    assert listed.asset_types == ("poster", "clearart")
    assert blank.asset_types == DEFAULT_ASSET_TYPES
    assert blank.provider_priority == DEFAULT_PROVIDER_PRIORITY


def test_reserved_capacity_must_fit_every_provider() -> None:
    """Reserved headroom must stay below the smallest provider budget."""

    with pytest.raises(ValueError, match="RATE_LIMIT_RESERVED"):
        Settings(_env_file=None, FANART_RATE_LIMIT=3, RATE_LIMIT_RESERVED=3)


def test_rate_limit_for_known_and_unknown_providers() -> None:
    settings = Settings(_env_file=None, TMDB_RATE_LIMIT=40, FANART_RATE_LIMIT=10)

    assert settings.rate_limit_for("tmdb") == 40
    assert settings.rate_limit_for("fanart") == 10
    assert settings.rate_limit_for("omdb") == 10


def test_preferred_language_is_normalised() -> None:
    assert Settings(_env_file=None, PREFERRED_LANGUAGE=" DE ").preferred_language == "de"
    assert Settings(_env_file=None, PREFERRED_LANGUAGE="").preferred_language == "en"
