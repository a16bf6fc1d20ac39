from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect

from app.database import Database


def test_create_all_creates_every_table(tmp_path) -> None:
    database_path = tmp_path / "curator.db"
    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        columns = {column["name"] for column in inspector.get_columns("asset_candidates")}
    finally:
        engine.dispose()

    assert tables == {
        "media_entities",
        "asset_candidates",
        "asset_locks",
        "jobs",
        "provider_refresh_ledger",
    }
    assert {"quality", "perceptual_hash", "provider_metadata", "score", "blocked_at"} <= columns


def test_create_all_is_idempotent(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}")

    async def runner() -> None:
        await database.create_all()
        await database.create_all()
        await database.dispose()

    asyncio.run(runner())
