"""Genre-weighted recommendations derived from the watchlist."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Mapping, Sequence

from ..errors import ClassifiedError, ErrorKind
from ..genres import genre_name
from ..models import CatalogItem, CatalogPage
from .catalog import CatalogService
from .watchlist import WatchlistChange, WatchlistStore

logger = logging.getLogger(__name__)

GENRE_WEIGHT = 0.7
RATING_WEIGHT = 0.3
TRENDING_REASON = "Trending right now"
POPULAR_REASON = "Popular right now"


class RecommendationState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    EMPTY = "empty"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Recommendation:
    item: CatalogItem
    match_percentage: int
    reason: str
    shared_genre_ids: tuple[int, ...] = ()


@dataclass(frozen=True, slots=True)
class RecommendationResult:
    state: RecommendationState
    recommendations: tuple[Recommendation, ...] = ()
    error: ClassifiedError | None = None
    generation: int = 0
    based_on_genre_ids: tuple[int, ...] = field(default_factory=tuple)

    @classmethod
    def idle(cls) -> "RecommendationResult":
        return cls(RecommendationState.IDLE)


def _clamp_percentage(value: float) -> int:
    return max(0, min(100, round(value)))


def match_percentage(
    candidate_genre_ids: Sequence[int],
    rating: float,
    preferences: Mapping[int, int],
) -> int:
    """Blend the weighted genre overlap with the candidate's own rating.

    ``preferences`` maps each of the user's top genres to how often it appears
    in the watchlist. Without preferences only the rating counts.
    """

    rating_share = max(0.0, min(rating, 10.0)) / 10
    total_weight = sum(preferences.values())
    if total_weight <= 0:
        return _clamp_percentage(100 * rating_share)
    shared_weight = sum(
        weight for genre_id, weight in preferences.items() if genre_id in candidate_genre_ids
    )
    overlap = shared_weight / total_weight
    return _clamp_percentage(100 * (GENRE_WEIGHT * overlap + RATING_WEIGHT * rating_share))


def dominant_genre(shared_genre_ids: Sequence[int], preferences: Mapping[int, int]) -> int | None:
    if not shared_genre_ids:
        return None
    return min(shared_genre_ids, key=lambda genre_id: (-preferences.get(genre_id, 0), genre_id))


def _reason_for(genre_id: int | None, fallback: str) -> str:
    if genre_id is None:
        return fallback
    name = genre_name(genre_id)
    if name is None:
        return fallback
    return f"Because you liked {name} movies"


def rank(recommendations: Sequence[Recommendation], limit: int) -> list[Recommendation]:
    ordered = sorted(
        recommendations,
        key=lambda rec: (
            -rec.match_percentage,
            -rec.item.vote_average,
            -rec.item.popularity,
            rec.item.id,
        ),
    )
    return ordered[: max(0, limit)]


class RecommendationEngine:
    """Builds recommendations and tracks their request state.

    A :meth:`refresh` that starts while another is in flight cancels it; the
    earlier caller then waits for and receives the newer result. Watchlist
    changes mark the cached result stale.
    """

    def __init__(
        self,
        catalog: CatalogService,
        watchlist: WatchlistStore,
        *,
        limit: int = 12,
        top_genre_limit: int = 3,
    ) -> None:
        self._catalog = catalog
        self._watchlist = watchlist
        self._limit = limit
        self._top_genre_limit = top_genre_limit
        self._result = RecommendationResult.idle()
        self._state = RecommendationState.IDLE
        self._stale = True
        self._generation = 0
        self._task: asyncio.Task[RecommendationResult] | None = None
        self._unsubscribe = watchlist.subscribe(self._on_watchlist_change)

    @property
    def state(self) -> RecommendationState:
        return self._state

    @property
    def last_result(self) -> RecommendationResult:
        return self._result

    @property
    def is_stale(self) -> bool:
        return self._stale

    async def recommendations(self) -> RecommendationResult:
        """Return the cached result, recomputing it when the watchlist changed."""

        if self._task is not None and not self._task.done():
            return await self._latest_result()
        if not self._stale and self._result.state in (
            RecommendationState.SUCCESS,
            RecommendationState.EMPTY,
        ):
            return self._result
        return await self.refresh()

    async def refresh(self) -> RecommendationResult:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._generation += 1
        self._state = RecommendationState.LOADING
        self._task = asyncio.create_task(self._compute(self._generation))
        return await self._latest_result()

    def close(self) -> None:
        self._unsubscribe()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _on_watchlist_change(self, change: WatchlistChange) -> None:
        if change.collection_key is None:
            self._stale = True

    async def _latest_result(self) -> RecommendationResult:
        while True:
            task = self._task
            if task is None:
                raise RuntimeError("No recommendation request has been started")
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.cancelled() and self._task is not task:
                    continue
                raise

    async def _compute(self, generation: int) -> RecommendationResult:
        self._stale = False
        top_genres = self._watchlist.top_genres(self._top_genre_limit)
        frequency = self._watchlist.genre_frequency()
        preferences = {genre_id: frequency.get(genre_id, 0) for genre_id in top_genres}
        excluded = set(self._watchlist.ids)

        sources: list[tuple[str, Awaitable[CatalogPage | ClassifiedError]]]
        if top_genres:
            sources = [
                (POPULAR_REASON, self._catalog.discover((genre_id,))) for genre_id in top_genres
            ]
        else:
            sources = [
                (TRENDING_REASON, self._catalog.fetch_trending()),
                (POPULAR_REASON, self._catalog.fetch_popular()),
            ]

        outcomes = await asyncio.gather(
            *(request for _, request in sources), return_exceptions=True
        )

        errors: list[ClassifiedError] = []
        candidates: list[Recommendation] = []
        seen: set[int] = set()
        succeeded = 0
        for (fallback_reason, _), outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Recommendation query failed unexpectedly: %s", outcome)
                errors.append(ClassifiedError(ErrorKind.UNKNOWN, cause=str(outcome)))
                continue
            if isinstance(outcome, ClassifiedError):
                logger.info("Recommendation query failed: %s", outcome)
                errors.append(outcome)
                continue
            succeeded += 1
            for item in outcome.results:
                if item.id in excluded or item.id in seen:
                    continue
                seen.add(item.id)
                shared = tuple(genre_id for genre_id in top_genres if genre_id in item.genre_ids)
                candidates.append(
                    Recommendation(
                        item=item,
                        match_percentage=match_percentage(
                            item.genre_ids, item.vote_average, preferences
                        ),
                        reason=_reason_for(dominant_genre(shared, preferences), fallback_reason),
                        shared_genre_ids=shared,
                    )
                )

        if succeeded == 0 and errors:
            result = RecommendationResult(
                RecommendationState.ERROR,
                error=errors[0],
                generation=generation,
                based_on_genre_ids=tuple(top_genres),
            )
        else:
            ranked = rank(candidates, self._limit)
            result = RecommendationResult(
                RecommendationState.SUCCESS if ranked else RecommendationState.EMPTY,
                recommendations=tuple(ranked),
                generation=generation,
                based_on_genre_ids=tuple(top_genres),
            )

        if generation == self._generation:
            self._result = result
            self._state = result.state
            logger.info(
                "Recommendations refreshed: state=%s count=%s",
                result.state.value,
                len(result.recommendations),
            )
        return result
