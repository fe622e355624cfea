from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect

from moviedeck.database import Database


def test_create_all_creates_watchlist_table(tmp_path) -> None:
    """Schema creation should register the watchlist document table."""

    database_path = tmp_path / "nested" / "moviedeck.db"
    database = Database(f"sqlite+aiosqlite:///{database_path}")

    async def runner() -> list[str]:
        await database.create_all()
        names = await database.table_names()
        await database.dispose()
        return names

    names = asyncio.run(runner())

    assert "watchlist_documents" in names
    assert database_path.exists()

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        columns = {column["name"] for column in inspect(inspector_engine).get_columns("watchlist_documents")}
    finally:
        inspector_engine.dispose()

    assert {"id", "entries", "entry_count", "collections", "schema_version", "updated_at"} <= columns
