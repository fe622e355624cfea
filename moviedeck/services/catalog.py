"""Typed catalog operations composed from endpoints, the HTTP client and the cache."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable, Literal, TypeVar

from pydantic import BaseModel, ValidationError

from .. import endpoints
from ..endpoints import Endpoint
from ..errors import ClassifiedError
from ..models import (
    CatalogItem,
    CatalogPage,
    DetailSections,
    GenreList,
    MovieDetails,
    VideoList,
    WatchProviderInfo,
    WatchProvidersResponse,
)
from .cache import CacheSize, ResponseCache
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

Category = Literal["trending", "popular", "top-rated", "now-playing", "upcoming"]


class CatalogService:
    """Single entry point for catalog data.

    Primary content (listings, search, details, genres) returns either the typed
    payload or a :class:`ClassifiedError`. Auxiliary content (videos, similar,
    recommended, watch providers) never fails: errors are logged and an empty
    value is returned so one missing section never blocks the others.
    """

    def __init__(
        self,
        client: TMDBClient,
        cache: ResponseCache,
        *,
        watch_region: str = "US",
    ) -> None:
        self._client = client
        self._cache = cache
        self._watch_region = watch_region
        self._inflight: dict[str, asyncio.Task[bytes | ClassifiedError]] = {}
        self._online = True

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> bool:
        """Record the host's connectivity; returns whether the state changed.

        While offline, cached responses are still served and every cache miss
        fails fast as a transport error instead of going through the retry loop.
        """

        if online == self._online:
            return False
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        return True

    # Primary content

    async def fetch_category(
        self, category: Category | str, page: int = 1
    ) -> CatalogPage | ClassifiedError:
        factory = endpoints.CATEGORY_ENDPOINTS.get(category)
        if factory is None:
            return ClassifiedError.invalid_request(f"unknown category {category!r}")
        return await self._load(factory(page), CatalogPage)

    async def fetch_trending(self, page: int = 1) -> CatalogPage | ClassifiedError:
        return await self._load(endpoints.trending(page), CatalogPage)

    async def fetch_popular(self, page: int = 1) -> CatalogPage | ClassifiedError:
        return await self._load(endpoints.popular(page), CatalogPage)

    async def fetch_top_rated(self, page: int = 1) -> CatalogPage | ClassifiedError:
        return await self._load(endpoints.top_rated(page), CatalogPage)

    async def fetch_now_playing(self, page: int = 1) -> CatalogPage | ClassifiedError:
        return await self._load(endpoints.now_playing(page), CatalogPage)

    async def fetch_upcoming(self, page: int = 1) -> CatalogPage | ClassifiedError:
        return await self._load(endpoints.upcoming(page), CatalogPage)

    async def search_movies(self, query: str, page: int = 1) -> CatalogPage | ClassifiedError:
        """Search by title; a blank query returns an empty page without any request."""

        endpoint = endpoints.search(query, page)
        if endpoint.is_noop:
            return CatalogPage.empty()
        return await self._load(endpoint, CatalogPage)

    async def fetch_details(self, movie_id: int) -> MovieDetails | ClassifiedError:
        return await self._load(endpoints.details(movie_id), MovieDetails)

    async def fetch_genres(self) -> GenreList | ClassifiedError:
        return await self._load(endpoints.genre_list(), GenreList)

    async def discover(
        self, genre_ids: Iterable[int] = (), page: int = 1
    ) -> CatalogPage | ClassifiedError:
        return await self._load(endpoints.discover(genre_ids, page), CatalogPage)

    async def fetch_pages(
        self,
        category: Category | str,
        pages: Iterable[int],
        *,
        max_concurrent: int = 3,
    ) -> list[CatalogItem] | ClassifiedError:
        """Fetch several listing pages concurrently, de-duplicated by id in page order."""

        semaphore = asyncio.Semaphore(max(1, max_concurrent))
        page_numbers = list(pages)

        async def _fetch(page: int) -> CatalogPage | ClassifiedError:
            async with semaphore:
                return await self.fetch_category(category, page)

        results = await asyncio.gather(*(_fetch(page) for page in page_numbers))
        items: list[CatalogItem] = []
        seen: set[int] = set()
        for result in results:
            if isinstance(result, ClassifiedError):
                return result
            for item in result.results:
                if item.id in seen:
                    continue
                seen.add(item.id)
                items.append(item)
        return items

    # Auxiliary content

    async def fetch_videos(self, movie_id: int) -> VideoList:
        return await self._load_optional(endpoints.videos(movie_id), VideoList, VideoList.empty)

    async def fetch_similar(self, movie_id: int, page: int = 1) -> CatalogPage:
        return await self._load_optional(
            endpoints.similar(movie_id, page), CatalogPage, CatalogPage.empty
        )

    async def fetch_recommended(self, movie_id: int, page: int = 1) -> CatalogPage:
        return await self._load_optional(
            endpoints.recommendations(movie_id, page), CatalogPage, CatalogPage.empty
        )

    async def fetch_watch_providers(
        self, movie_id: int, region: str | None = None
    ) -> WatchProviderInfo:
        resolved_region = (region or self._watch_region).upper()
        response = await self._load_optional(
            endpoints.watch_providers(movie_id),
            WatchProvidersResponse,
            WatchProvidersResponse,
        )
        return WatchProviderInfo.from_response(response, resolved_region)

    async def fetch_detail_sections(
        self, movie_id: int, region: str | None = None
    ) -> DetailSections:
        """Load every optional section concurrently; a failed section comes back empty."""

        results = await asyncio.gather(
            self.fetch_videos(movie_id),
            self.fetch_similar(movie_id),
            self.fetch_recommended(movie_id),
            self.fetch_watch_providers(movie_id, region),
            return_exceptions=True,
        )
        videos, similar, recommended, providers = results
        for name, result in zip(("videos", "similar", "recommended", "providers"), results):
            if isinstance(result, BaseException):
                logger.warning("Detail section %s for movie %s failed: %s", name, movie_id, result)
        return DetailSections(
            videos=videos if isinstance(videos, VideoList) else VideoList.empty(),
            similar=similar if isinstance(similar, CatalogPage) else CatalogPage.empty(),
            recommended=(
                recommended if isinstance(recommended, CatalogPage) else CatalogPage.empty()
            ),
            providers=(
                providers
                if isinstance(providers, WatchProviderInfo)
                else WatchProviderInfo.empty((region or self._watch_region).upper())
            ),
        )

    # Cache management

    async def invalidate(self, endpoint: Endpoint) -> None:
        await self._cache.invalidate(endpoint.cache_key)

    async def clear_cache(self) -> None:
        await self._cache.clear()

    async def cache_size(self) -> CacheSize:
        return await self._cache.size()

    async def sweep_expired(self) -> int:
        """Drop expired disk entries; called when the app becomes active."""

        return await self._cache.on_app_active()

    # Internals

    async def _load(self, endpoint: Endpoint, model: type[ModelT]) -> ModelT | ClassifiedError:
        if endpoint.is_noop:
            return model.model_validate({})
        invalid = endpoint.validate()
        if invalid is not None:
            return invalid

        key = endpoint.cache_key
        cached = await self._cache.get(key)
        if cached is not None:
            try:
                return model.model_validate_json(cached)
            except ValidationError:
                logger.warning("Discarding unreadable cache entry for %s", endpoint)
                await self._cache.invalidate(key)

        if not self._online:
            return ClassifiedError.transport("offline")
        body = await self._fetch_shared(endpoint)
        if isinstance(body, ClassifiedError):
            return body
        try:
            value = model.model_validate_json(body)
        except ValidationError as exc:
            logger.warning(
                "TMDB payload for %s did not match %s: %s",
                endpoint,
                model.__name__,
                exc.error_count(),
            )
            return ClassifiedError.decode_failure(f"{exc.error_count()} validation error(s)")
        await self._cache.set(key, body)
        return value

    async def _load_optional(
        self,
        endpoint: Endpoint,
        model: type[ModelT],
        empty: Callable[[], ModelT],
    ) -> ModelT:
        try:
            result = await self._load(endpoint, model)
        except Exception:  # pragma: no cover - unexpected failure
            logger.exception("Optional %s request failed unexpectedly", endpoint)
            return empty()
        if isinstance(result, ClassifiedError):
            logger.info("Optional %s unavailable: %s", endpoint, result)
            return empty()
        return result

    async def _fetch_shared(self, endpoint: Endpoint) -> bytes | ClassifiedError:
        """Join an identical in-flight request instead of issuing a second one."""

        key = endpoint.cache_key
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._client.fetch(endpoint))
            self._inflight[key] = task

            def _forget(done: asyncio.Task[bytes | ClassifiedError]) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_forget)
        return await asyncio.shield(task)
