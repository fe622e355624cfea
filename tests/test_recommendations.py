"""Recommendation scoring, ranking and request state."""

from __future__ import annotations

import asyncio
from typing import Iterable, Sequence

import pytest

from moviedeck.errors import ClassifiedError, ErrorKind
from moviedeck.genres import SmartCollection
from moviedeck.models import CatalogItem, CatalogPage
from moviedeck.services.catalog import CatalogService
from moviedeck.services.recommendations import (
    RecommendationEngine,
    RecommendationState,
    match_percentage,
)
from moviedeck.services.watchlist import WatchlistStore


def item(movie_id: int, *, rating: float = 7.0, genres: Sequence[int] = (), popularity: float = 1.0) -> CatalogItem:
    return CatalogItem(
        id=movie_id,
        title=f"Movie {movie_id}",
        vote_average=rating,
        genre_ids=list(genres),
        popularity=popularity,
    )


def listing(*items: CatalogItem) -> CatalogPage:
    return CatalogPage(page=1, results=list(items), total_pages=1, total_results=len(items))


class FakeCatalogService(CatalogService):
    """Catalog stub serving canned listings."""

    def __init__(
        self,
        *,
        trending: CatalogPage | ClassifiedError | None = None,
        popular: CatalogPage | ClassifiedError | None = None,
        by_genre: dict[int, CatalogPage | ClassifiedError] | None = None,
        delays: Iterable[float] = (),
    ) -> None:  # pragma: no cover - nothing to initialise
        # Deliberately skip super().__init__ to avoid touching external systems.
        self.trending = trending or CatalogPage.empty()
        self.popular = popular or CatalogPage.empty()
        self.by_genre = by_genre or {}
        self.delays = list(delays)
        self.calls: list[str] = []

    async def fetch_trending(self, page: int = 1):  # type: ignore[override]
        self.calls.append("trending")
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        return self.trending

    async def fetch_popular(self, page: int = 1):  # type: ignore[override]
        self.calls.append("popular")
        return self.popular

    async def discover(self, genre_ids=(), page: int = 1):  # type: ignore[override]
        genre_ids = tuple(genre_ids)
        self.calls.append(f"discover:{genre_ids}")
        return self.by_genre.get(genre_ids[0], CatalogPage.empty())


def test_match_percentage_without_preferences_uses_rating() -> None:
    assert match_percentage([28], 7.5, {}) == 75
    assert match_percentage([], 10.0, {}) == 100
    assert match_percentage([], 0.0, {}) == 0


def test_match_percentage_weights_genre_overlap() -> None:
    preferences = {28: 2, 12: 1, 35: 1}

    assert match_percentage([28, 12, 35], 8.0, preferences) == 94
    assert match_percentage([12], 8.4, preferences) == 43
    assert 0 <= match_percentage([99], 12.0, preferences) <= 100


@pytest.mark.anyio("asyncio")
async def test_empty_watchlist_falls_back_to_trending_and_popular() -> None:
    catalog = FakeCatalogService(
        trending=listing(item(1, rating=8.0), item(2, rating=6.0)),
        popular=listing(item(2, rating=6.0), item(3, rating=9.0)),
    )
    engine = RecommendationEngine(catalog, WatchlistStore())

    result = await engine.refresh()

    assert result.state is RecommendationState.SUCCESS
    assert [rec.item.id for rec in result.recommendations] == [3, 1, 2]
    assert [rec.match_percentage for rec in result.recommendations] == [90, 80, 60]
    assert [rec.reason for rec in result.recommendations] == [
        "Popular right now",
        "Trending right now",
        "Trending right now",
    ]
    assert engine.state is RecommendationState.SUCCESS


@pytest.mark.anyio("asyncio")
async def test_genre_recommendations_exclude_watchlist_and_explain_match() -> None:
    watchlist = WatchlistStore()
    watchlist.add(item(1, genres=[28, 12]))
    watchlist.add(item(2, genres=[28, 35]))
    catalog = FakeCatalogService(
        by_genre={
            28: listing(item(10, rating=8.0, genres=[28, 35, 12]), item(1, genres=[28])),
            12: listing(item(11, rating=8.4, genres=[12])),
            35: listing(item(10, rating=8.0, genres=[28, 35, 12])),
        }
    )
    engine = RecommendationEngine(catalog, watchlist, limit=12, top_genre_limit=3)

    result = await engine.refresh()

    assert catalog.calls == ["discover:(28,)", "discover:(12,)", "discover:(35,)"]
    assert [rec.item.id for rec in result.recommendations] == [10, 11]
    assert [rec.match_percentage for rec in result.recommendations] == [94, 43]
    assert result.recommendations[0].reason == "Because you liked Action movies"
    assert result.recommendations[1].reason == "Because you liked Adventure movies"
    assert result.based_on_genre_ids == (28, 12, 35)


@pytest.mark.anyio("asyncio")
async def test_ranking_breaks_ties_and_respects_limit() -> None:
    catalog = FakeCatalogService(
        trending=listing(
            item(5, rating=7.0, popularity=1.0),
            item(4, rating=7.0, popularity=5.0),
            item(6, rating=7.0, popularity=5.0),
        ),
    )
    engine = RecommendationEngine(catalog, WatchlistStore(), limit=2)

    result = await engine.refresh()

    assert [rec.item.id for rec in result.recommendations] == [4, 6]


@pytest.mark.anyio("asyncio")
async def test_partial_failures_are_tolerated() -> None:
    catalog = FakeCatalogService(
        trending=ClassifiedError(ErrorKind.SERVER_ERROR, status_code=503),
        popular=listing(item(3, rating=9.0)),
    )
    engine = RecommendationEngine(catalog, WatchlistStore())

    result = await engine.refresh()

    assert result.state is RecommendationState.SUCCESS
    assert [rec.item.id for rec in result.recommendations] == [3]


@pytest.mark.anyio("asyncio")
async def test_all_failures_produce_error_state() -> None:
    unauthorized = ClassifiedError.unauthorized()
    catalog = FakeCatalogService(
        trending=unauthorized,
        popular=ClassifiedError.transport("offline"),
    )
    engine = RecommendationEngine(catalog, WatchlistStore())

    result = await engine.refresh()

    assert result.state is RecommendationState.ERROR
    assert result.error == unauthorized
    assert engine.state is RecommendationState.ERROR


@pytest.mark.anyio("asyncio")
async def test_no_candidates_is_empty_state() -> None:
    engine = RecommendationEngine(FakeCatalogService(), WatchlistStore())

    result = await engine.refresh()

    assert result.state is RecommendationState.EMPTY
    assert result.recommendations == ()


@pytest.mark.anyio("asyncio")
async def test_cached_result_is_reused_until_watchlist_changes() -> None:
    watchlist = WatchlistStore()
    catalog = FakeCatalogService(trending=listing(item(1, rating=8.0)))
    engine = RecommendationEngine(catalog, watchlist)

    first = await engine.recommendations()
    second = await engine.recommendations()
    assert second is first
    assert catalog.calls.count("trending") == 1

    watchlist.add(item(1, genres=[28]))
    assert engine.is_stale
    third = await engine.recommendations()

    assert third is not first
    assert "discover:(28,)" in catalog.calls
    assert third.recommendations == ()


@pytest.mark.anyio("asyncio")
async def test_refresh_supersedes_in_flight_request() -> None:
    catalog = FakeCatalogService(trending=listing(item(1, rating=8.0)), delays=[0.2, 0.0])
    engine = RecommendationEngine(catalog, WatchlistStore())

    older = asyncio.create_task(engine.refresh())
    await asyncio.sleep(0.05)
    assert engine.state is RecommendationState.LOADING
    newer = await engine.refresh()

    assert await older is newer
    assert newer.generation == 2
    assert engine.last_result is newer


@pytest.mark.anyio("asyncio")
async def test_waiting_without_a_request_raises() -> None:
    engine = RecommendationEngine(FakeCatalogService(), WatchlistStore())

    with pytest.raises(RuntimeError):
        await engine._latest_result()


@pytest.mark.anyio("asyncio")
async def test_collection_edits_do_not_invalidate_recommendations() -> None:
    watchlist = WatchlistStore()
    engine = RecommendationEngine(FakeCatalogService(trending=listing(item(1))), watchlist)

    await engine.recommendations()
    watchlist.add_collection(SmartCollection.create("Westerns", [37]))

    assert not engine.is_stale
