"""Entry point for the FastAPI-powered local movie catalog service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import replace
from typing import Any, Literal

import httpx
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import endpoints
from .config import Settings, get_settings
from .database import Database
from .errors import ClassifiedError, ErrorKind
from .genres import GENRES, SmartCollection
from .models import CatalogItem, WatchlistEntry
from .repository import SqlWatchlistRepository
from .services.cache import DiskCache, MemoryCache, ResponseCache
from .services.catalog import CatalogService
from .services.credentials import ApiKeyProvider, ConfigurationError, MemorySecureStore
from .services.recommendations import Recommendation, RecommendationEngine
from .services.search import SearchCoordinator
from .services.tmdb import TMDBClient
from .services.watchlist import WatchlistSortOption, WatchlistStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

LifecycleEvent = Literal["active", "background", "terminate"]


class ApiKeyPayload(BaseModel):
    api_key: str = Field(min_length=1)


class ImportPayload(BaseModel):
    entries: list[dict[str, Any]]
    version: int | None = None


class ConnectivityPayload(BaseModel):
    online: bool


class CollectionPayload(BaseModel):
    name: str = Field(min_length=1)
    genre_ids: list[int] = Field(default_factory=list)
    min_rating: float | None = Field(default=None, ge=0.0, le=10.0)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    settings = get_app_settings(fastapi_app)
    exit_stack = AsyncExitStack()
    http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(endpoints.LISTING_TIMEOUT_SECONDS, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    credentials = ApiKeyProvider(MemorySecureStore(), settings.tmdb_api_key)
    client = TMDBClient.from_settings(settings, http_client, credentials)
    cache = ResponseCache(
        MemoryCache(settings.memory_cache_bytes),
        DiskCache(
            settings.cache_directory,
            size_limit=settings.disk_cache_bytes,
            max_age_seconds=settings.disk_cache_max_age_seconds,
        ),
        sweep_interval_seconds=settings.cache_sweep_interval_seconds,
    )
    await cache.start()

    watchlist = WatchlistStore(
        SqlWatchlistRepository(database.session_factory),
        save_debounce_seconds=settings.watchlist_save_debounce_seconds,
    )
    await watchlist.load()

    catalog_service = CatalogService(client, cache, watch_region=settings.watch_region)
    search = SearchCoordinator(catalog_service, debounce_seconds=settings.search_debounce_seconds)
    engine = RecommendationEngine(
        catalog_service,
        watchlist,
        limit=settings.recommendation_limit,
        top_genre_limit=settings.recommendation_top_genres,
    )

    fastapi_app.state.database = database
    fastapi_app.state.credentials = credentials
    fastapi_app.state.response_cache = cache
    fastapi_app.state.catalog_service = catalog_service
    fastapi_app.state.watchlist = watchlist
    fastapi_app.state.search = search
    fastapi_app.state.recommendations = engine

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        search.cancel_all()
        engine.close()
        await watchlist.force_save()
        await cache.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app(settings: Settings | None = None) -> FastAPI:
    resolved = settings or get_settings()
    fastapi_app = FastAPI(
        title=resolved.app_name,
        description="Movie catalog browsing with a persisted watchlist and recommendations",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    fastapi_app.state.settings = resolved
    register_routes(fastapi_app)
    return fastapi_app


def get_app_settings(app: FastAPI) -> Settings:
    settings = getattr(app.state, "settings", None)
    if not isinstance(settings, Settings):
        return get_settings()
    return settings


def get_catalog_service(app: FastAPI) -> CatalogService:
    service = getattr(app.state, "catalog_service", None)
    if not isinstance(service, CatalogService):
        raise RuntimeError("Catalog service not initialised")
    return service


def get_watchlist(app: FastAPI) -> WatchlistStore:
    store = getattr(app.state, "watchlist", None)
    if not isinstance(store, WatchlistStore):
        raise RuntimeError("Watchlist store not initialised")
    return store


def get_search(app: FastAPI) -> SearchCoordinator:
    search = getattr(app.state, "search", None)
    if not isinstance(search, SearchCoordinator):
        raise RuntimeError("Search coordinator not initialised")
    return search


def get_recommendation_engine(app: FastAPI) -> RecommendationEngine:
    engine = getattr(app.state, "recommendations", None)
    if not isinstance(engine, RecommendationEngine):
        raise RuntimeError("Recommendation engine not initialised")
    return engine


def get_credentials(app: FastAPI) -> ApiKeyProvider:
    provider = getattr(app.state, "credentials", None)
    if not isinstance(provider, ApiKeyProvider):
        raise RuntimeError("Credential provider not initialised")
    return provider


def error_status(error: ClassifiedError) -> int:
    match error.kind:
        case ErrorKind.INVALID_REQUEST:
            return 400
        case ErrorKind.UNAUTHORIZED:
            return 401
        case ErrorKind.RATE_LIMITED:
            return 429
        case ErrorKind.TRANSPORT:
            return 503
        case ErrorKind.HTTP_ERROR:
            if error.status_code == 404:
                return 404
            return 502
        case ErrorKind.EMPTY_RESPONSE:
            return 404
        case ErrorKind.SERVER_ERROR | ErrorKind.DECODE_FAILURE:
            return 502
        case ErrorKind.UNKNOWN:
            return 500


def raise_for_error(error: ClassifiedError) -> None:
    raise HTTPException(
        status_code=error_status(error),
        detail={
            "error": error.kind.value,
            "message": error.user_message,
            "retryable": error.retryable,
            "requiresUserAction": error.requires_user_action,
        },
    )


def _recommendation_payload(recommendation: Recommendation) -> dict[str, Any]:
    return {
        "item": recommendation.item.model_dump(mode="json"),
        "matchPercentage": recommendation.match_percentage,
        "reason": recommendation.reason,
        "sharedGenreIds": list(recommendation.shared_genre_ids),
    }


def _entries_payload(entries: list[WatchlistEntry]) -> list[dict[str, Any]]:
    return [entry.model_dump(mode="json") for entry in entries]


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    # Catalog

    @fastapi_app.get("/catalog/{category}")
    async def category_listing(category: str, page: int = Query(default=1)):
        result = await get_catalog_service(fastapi_app).fetch_category(category, page)
        if isinstance(result, ClassifiedError):
            raise_for_error(result)
        return result

    @fastapi_app.get("/search")
    async def search_movies(
        query: str = Query(default=""),
        page: int = Query(default=1),
        field: str = Query(default="default"),
    ):
        result = await get_search(fastapi_app).search(field, query, page)
        if result is None:
            raise HTTPException(status_code=409, detail="Search superseded by a newer query")
        if isinstance(result, ClassifiedError):
            raise_for_error(result)
        return result

    @fastapi_app.get("/discover")
    async def discover(
        genre: list[int] = Query(default=[]),
        page: int = Query(default=1),
    ):
        result = await get_catalog_service(fastapi_app).discover(genre, page)
        if isinstance(result, ClassifiedError):
            raise_for_error(result)
        return result

    @fastapi_app.get("/genres")
    async def genres():
        result = await get_catalog_service(fastapi_app).fetch_genres()
        if isinstance(result, ClassifiedError):
            logger.info("Serving built-in genre table: %s", result)
            return {"genres": [{"id": genre.id, "name": genre.name} for genre in GENRES]}
        return result

    @fastapi_app.get("/movie/{movie_id}")
    async def movie_details(movie_id: int):
        result = await get_catalog_service(fastapi_app).fetch_details(movie_id)
        if isinstance(result, ClassifiedError):
            raise_for_error(result)
        return result

    @fastapi_app.get("/movie/{movie_id}/sections")
    async def movie_sections(movie_id: int, region: str | None = Query(default=None)):
        return await get_catalog_service(fastapi_app).fetch_detail_sections(movie_id, region)

    # Watchlist

    @fastapi_app.get("/watchlist")
    async def watchlist_entries(sort: WatchlistSortOption = Query(default=WatchlistSortOption.DATE_ADDED)):
        store = get_watchlist(fastapi_app)
        return {"count": store.count, "entries": _entries_payload(store.sorted(sort))}

    @fastapi_app.post("/watchlist")
    async def watchlist_add(item: CatalogItem) -> dict[str, Any]:
        store = get_watchlist(fastapi_app)
        added = store.add(item)
        return {"added": added, "count": store.count}

    @fastapi_app.post("/watchlist/toggle")
    async def watchlist_toggle(item: CatalogItem) -> dict[str, Any]:
        store = get_watchlist(fastapi_app)
        present = store.toggle(item)
        return {"inWatchlist": present, "count": store.count}

    @fastapi_app.delete("/watchlist")
    async def watchlist_clear() -> dict[str, Any]:
        store = get_watchlist(fastapi_app)
        cleared = store.clear_all()
        return {"cleared": cleared, "count": store.count}

    @fastapi_app.get("/watchlist/stats")
    async def watchlist_stats(limit: int = Query(default=3, ge=0, le=19)) -> dict[str, Any]:
        store = get_watchlist(fastapi_app)
        frequency = store.genre_frequency()
        return {
            "count": store.count,
            "watched": len(store.watched_items()),
            "genreFrequency": {str(genre_id): count for genre_id, count in frequency.items()},
            "topGenres": store.top_genres(limit),
        }

    @fastapi_app.get("/watchlist/export")
    async def watchlist_export() -> dict[str, Any]:
        return get_watchlist(fastapi_app).export_data()

    @fastapi_app.post("/watchlist/import")
    async def watchlist_import(
        payload: ImportPayload, merge: bool = Query(default=True)
    ) -> dict[str, Any]:
        store = get_watchlist(fastapi_app)
        try:
            imported = store.import_data(payload.model_dump(), merge=merge)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"imported": imported, "count": store.count}

    @fastapi_app.get("/watchlist/collections")
    async def watchlist_collections() -> list[dict[str, Any]]:
        store = get_watchlist(fastapi_app)
        return [
            {**collection.to_payload(), "count": len(store.items_in_collection(collection))}
            for collection in store.collections
        ]

    @fastapi_app.post("/watchlist/collections", status_code=201)
    async def watchlist_collection_create(payload: CollectionPayload) -> dict[str, Any]:
        try:
            collection = SmartCollection.create(
                payload.name, payload.genre_ids, payload.min_rating
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        get_watchlist(fastapi_app).add_collection(collection)
        return collection.to_payload()

    @fastapi_app.get("/watchlist/collections/{key}")
    async def watchlist_collection(key: str) -> dict[str, Any]:
        store = get_watchlist(fastapi_app)
        try:
            entries = store.items_in_collection(key)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown collection") from exc
        return {"key": key, "entries": _entries_payload(entries)}

    @fastapi_app.put("/watchlist/collections/{key}")
    async def watchlist_collection_update(key: str, payload: CollectionPayload) -> dict[str, Any]:
        store = get_watchlist(fastapi_app)
        existing = store.collection(key)
        if existing is None:
            raise HTTPException(status_code=404, detail="Unknown collection")
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Collection name must not be blank")
        updated = replace(
            existing,
            name=name,
            genre_ids=tuple(dict.fromkeys(payload.genre_ids)),
            min_rating=payload.min_rating,
        )
        changed = store.update_collection(updated)
        return {**updated.to_payload(), "changed": changed}

    @fastapi_app.delete("/watchlist/collections/{key}")
    async def watchlist_collection_remove(key: str) -> dict[str, Any]:
        removed = get_watchlist(fastapi_app).remove_collection(key)
        if not removed:
            raise HTTPException(status_code=404, detail="Unknown collection")
        return {"removed": True}

    @fastapi_app.get("/watchlist/genres/{genre_id}")
    async def watchlist_genre(genre_id: int) -> dict[str, Any]:
        entries = get_watchlist(fastapi_app).items_for_genre(genre_id)
        return {"genreId": genre_id, "entries": _entries_payload(entries)}

    @fastapi_app.get("/watchlist/{movie_id}")
    async def watchlist_contains(movie_id: int) -> dict[str, Any]:
        return {"inWatchlist": get_watchlist(fastapi_app).contains(movie_id)}

    @fastapi_app.delete("/watchlist/{movie_id}")
    async def watchlist_remove(movie_id: int) -> dict[str, Any]:
        store = get_watchlist(fastapi_app)
        removed = store.remove(movie_id)
        return {"removed": removed, "count": store.count}

    @fastapi_app.post("/watchlist/{movie_id}/watched")
    async def watchlist_toggle_watched(movie_id: int) -> dict[str, Any]:
        watched = get_watchlist(fastapi_app).toggle_watched(movie_id)
        if watched is None:
            raise HTTPException(status_code=404, detail="Movie is not in the watchlist")
        return {"isWatched": watched}

    # Recommendations

    @fastapi_app.get("/recommendations")
    async def recommendations(refresh: bool = Query(default=False)) -> dict[str, Any]:
        engine = get_recommendation_engine(fastapi_app)
        result = await (engine.refresh() if refresh else engine.recommendations())
        payload: dict[str, Any] = {
            "state": result.state.value,
            "basedOnGenreIds": list(result.based_on_genre_ids),
            "recommendations": [_recommendation_payload(rec) for rec in result.recommendations],
        }
        if result.error is not None:
            payload["error"] = {
                "error": result.error.kind.value,
                "message": result.error.user_message,
            }
        return payload

    # Cache diagnostics

    @fastapi_app.get("/cache")
    async def cache_size() -> dict[str, int]:
        size = await get_catalog_service(fastapi_app).cache_size()
        return size.to_payload()

    @fastapi_app.delete("/cache")
    async def cache_clear() -> dict[str, int]:
        service = get_catalog_service(fastapi_app)
        await service.clear_cache()
        size = await service.cache_size()
        return size.to_payload()

    # Credentials

    @fastapi_app.get("/credentials")
    async def credentials_status() -> dict[str, bool]:
        return {"configured": await get_credentials(fastapi_app).is_configured()}

    @fastapi_app.put("/credentials")
    async def credentials_update(payload: ApiKeyPayload) -> dict[str, bool]:
        provider = get_credentials(fastapi_app)
        try:
            await provider.set_api_key(payload.api_key)
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        await get_catalog_service(fastapi_app).clear_cache()
        return {"configured": True}

    @fastapi_app.delete("/credentials")
    async def credentials_clear() -> dict[str, bool]:
        provider = get_credentials(fastapi_app)
        await provider.clear_api_key()
        return {"configured": await provider.is_configured()}

    # Lifecycle signals from the host shell

    @fastapi_app.post("/lifecycle/connectivity")
    async def connectivity(payload: ConnectivityPayload) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        changed = service.set_online(payload.online)
        return {"event": "connectivity", "online": payload.online, "changed": changed}

    @fastapi_app.post("/lifecycle/{event}")
    async def lifecycle(event: LifecycleEvent) -> dict[str, Any]:
        if event == "active":
            removed = await get_catalog_service(fastapi_app).sweep_expired()
            return {"event": event, "expiredRemoved": removed}
        saved = await get_watchlist(fastapi_app).force_save()
        return {"event": event, "saved": saved}


app = create_app()
