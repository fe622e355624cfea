"""Debounced interactive search where the latest request for a field wins."""

from __future__ import annotations

import asyncio
import logging

from ..errors import ClassifiedError
from ..models import CatalogPage
from .catalog import CatalogService

logger = logging.getLogger(__name__)

SearchOutcome = CatalogPage | ClassifiedError


class SearchCoordinator:
    """Runs searches per logical input field.

    Starting a search cancels the pending one for the same field; the
    superseded caller receives ``None`` instead of a stale result.
    """

    def __init__(self, catalog: CatalogService, *, debounce_seconds: float = 0.3) -> None:
        self._catalog = catalog
        self._debounce = debounce_seconds
        self._tasks: dict[str, asyncio.Task[SearchOutcome]] = {}
        self._generations: dict[str, int] = {}

    async def search(self, field: str, query: str, page: int = 1) -> SearchOutcome | None:
        generation = self._generations.get(field, 0) + 1
        self._generations[field] = generation
        self.cancel(field)
        if not query.strip():
            return CatalogPage.empty()

        task = asyncio.create_task(self._run(query, page))
        self._tasks[field] = task
        try:
            result = await task
        except asyncio.CancelledError:
            if task.cancelled() and self._generations.get(field) != generation:
                logger.debug("Search on %s for %r superseded", field, query)
                return None
            raise
        finally:
            if self._tasks.get(field) is task and task.done():
                del self._tasks[field]
        # A newer request may arrive after the task finished but before this caller resumed.
        if self._generations.get(field) != generation:
            logger.debug("Discarding finished search on %s for %r", field, query)
            return None
        return result

    def cancel(self, field: str) -> None:
        task = self._tasks.pop(field, None)
        if task is not None and not task.done():
            task.cancel()

    def cancel_all(self) -> None:
        for field in list(self._tasks):
            self.cancel(field)

    def is_searching(self, field: str) -> bool:
        task = self._tasks.get(field)
        return task is not None and not task.done()

    async def _run(self, query: str, page: int) -> SearchOutcome:
        if self._debounce > 0:
            await asyncio.sleep(self._debounce)
        return await self._catalog.search_movies(query, page)
