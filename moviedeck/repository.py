"""Durable storage for the watchlist document."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol, Sequence

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import WatchlistDocument
from .genres import SmartCollection
from .models import WatchlistEntry

logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT_ID = "default"
SCHEMA_VERSION = 2


class WatchlistRepository(Protocol):
    async def load(self) -> list[WatchlistEntry]: ...

    async def load_collections(self) -> list[SmartCollection] | None: ...

    async def save(
        self,
        entries: Sequence[WatchlistEntry],
        collections: Sequence[SmartCollection] | None = None,
    ) -> None: ...


class SqlWatchlistRepository:
    """Reads and replaces the single watchlist row in one transaction."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        document_id: str = DEFAULT_DOCUMENT_ID,
    ) -> None:
        self._session_factory = session_factory
        self._document_id = document_id

    async def load(self) -> list[WatchlistEntry]:
        async with self._session_factory() as session:
            document = await session.get(WatchlistDocument, self._document_id)
            if document is None:
                return []
            raw_entries = list(document.entries or [])

        entries: list[WatchlistEntry] = []
        seen: set[int] = set()
        for raw in raw_entries:
            try:
                entry = WatchlistEntry.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping unreadable watchlist entry: %s", exc.error_count())
                continue
            if entry.id in seen:
                continue
            seen.add(entry.id)
            entries.append(entry)
        return entries

    async def load_collections(self) -> list[SmartCollection] | None:
        """Stored collections, or ``None`` when none were ever saved."""

        async with self._session_factory() as session:
            document = await session.get(WatchlistDocument, self._document_id)
            if document is None or document.collections is None:
                return None
            raw_collections = list(document.collections)

        collections: list[SmartCollection] = []
        seen: set[str] = set()
        for raw in raw_collections:
            try:
                collection = SmartCollection.from_payload(raw)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable collection: %s", exc)
                continue
            if collection.key in seen:
                continue
            seen.add(collection.key)
            collections.append(collection)
        return collections

    async def save(
        self,
        entries: Sequence[WatchlistEntry],
        collections: Sequence[SmartCollection] | None = None,
    ) -> None:
        payload = [entry.model_dump(mode="json") for entry in entries]
        async with self._session_factory() as session:
            document = await session.get(WatchlistDocument, self._document_id)
            if document is None:
                document = WatchlistDocument(id=self._document_id)
                session.add(document)
            document.entries = payload
            document.entry_count = len(payload)
            if collections is not None:
                document.collections = [collection.to_payload() for collection in collections]
            document.schema_version = SCHEMA_VERSION
            document.updated_at = datetime.utcnow()
            await session.commit()
