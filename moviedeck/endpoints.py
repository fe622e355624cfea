"""Request descriptors for every TMDB operation the client performs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable
from urllib.parse import quote, urlencode

from .errors import ClassifiedError

SEARCH_TIMEOUT_SECONDS = 10.0
LISTING_TIMEOUT_SECONDS = 30.0

MIN_PAGE = 1
MAX_PAGE = 500

QueryValue = str | int


@dataclass(frozen=True, slots=True)
class Endpoint:
    """A single GET request against the TMDB API, described as a value."""

    name: str
    path: str
    params: tuple[tuple[str, QueryValue], ...] = ()
    required: tuple[str, ...] = ()
    timeout: float = LISTING_TIMEOUT_SECONDS
    resource_id: int | None = field(default=None, compare=False)

    @property
    def query(self) -> dict[str, QueryValue]:
        return dict(self.params)

    @property
    def page(self) -> int | None:
        value = self.query.get("page")
        return int(value) if value is not None else None

    @property
    def is_noop(self) -> bool:
        """True when a required parameter is blank; such requests are never sent."""

        query = self.query
        for name in self.required:
            value = query.get(name)
            if value is None or not str(value).strip():
                return True
        return False

    def validate(self) -> ClassifiedError | None:
        """Return ``invalid_request`` for malformed descriptors."""

        page = self.page
        if page is not None and not MIN_PAGE <= page <= MAX_PAGE:
            return ClassifiedError.invalid_request(
                f"page must be between {MIN_PAGE} and {MAX_PAGE}, got {page}"
            )
        if self.resource_id is not None and self.resource_id <= 0:
            return ClassifiedError.invalid_request(
                f"movie id must be positive, got {self.resource_id}"
            )
        return None

    def query_string(self, api_key: str | None = None) -> str:
        """Encode parameters with ``%20`` for spaces, API key first when given."""

        pairs: list[tuple[str, QueryValue]] = []
        if api_key:
            pairs.append(("api_key", api_key))
        pairs.extend(self.params)
        return urlencode(pairs, quote_via=quote)

    def url(self, api_key: str | None = None) -> str:
        query = self.query_string(api_key)
        return f"{self.path}?{query}" if query else self.path

    @property
    def cache_key(self) -> str:
        """Request signature: path plus sorted parameters, never the credential."""

        query = urlencode(sorted(self.params), quote_via=quote)
        return f"{self.path}?{query}" if query else self.path

    def __str__(self) -> str:
        return f"{self.name} {self.cache_key}"


def _listing(name: str, path: str, page: int) -> Endpoint:
    return Endpoint(name=name, path=path, params=(("page", page),))


def trending(page: int = 1) -> Endpoint:
    return _listing("trending", "/trending/movie/day", page)


def popular(page: int = 1) -> Endpoint:
    return _listing("popular", "/movie/popular", page)


def top_rated(page: int = 1) -> Endpoint:
    return _listing("top_rated", "/movie/top_rated", page)


def now_playing(page: int = 1) -> Endpoint:
    return _listing("now_playing", "/movie/now_playing", page)


def upcoming(page: int = 1) -> Endpoint:
    return _listing("upcoming", "/movie/upcoming", page)


def search(query: str, page: int = 1) -> Endpoint:
    """Interactive search; a blank query yields a no-op descriptor."""

    return Endpoint(
        name="search",
        path="/search/movie",
        params=(
            ("query", (query or "").strip()),
            ("page", page),
            ("include_adult", "false"),
        ),
        required=("query",),
        timeout=SEARCH_TIMEOUT_SECONDS,
    )


def details(movie_id: int) -> Endpoint:
    return Endpoint(name="details", path=f"/movie/{movie_id}", resource_id=movie_id)


def videos(movie_id: int) -> Endpoint:
    return Endpoint(name="videos", path=f"/movie/{movie_id}/videos", resource_id=movie_id)


def similar(movie_id: int, page: int = 1) -> Endpoint:
    return Endpoint(
        name="similar",
        path=f"/movie/{movie_id}/similar",
        params=(("page", page),),
        resource_id=movie_id,
    )


def recommendations(movie_id: int, page: int = 1) -> Endpoint:
    return Endpoint(
        name="recommendations",
        path=f"/movie/{movie_id}/recommendations",
        params=(("page", page),),
        resource_id=movie_id,
    )


def watch_providers(movie_id: int) -> Endpoint:
    return Endpoint(
        name="watch_providers",
        path=f"/movie/{movie_id}/watch/providers",
        resource_id=movie_id,
    )


def genre_list() -> Endpoint:
    return Endpoint(name="genre_list", path="/genre/movie/list")


def discover(
    genre_ids: Iterable[int] = (),
    page: int = 1,
    *,
    min_votes: int = 50,
    released_within_days: int | None = None,
    today: date | None = None,
) -> Endpoint:
    """Popularity-sorted listing, optionally narrowed to genres or a release window.

    Genres are OR-ed (``|``) so a candidate needs to carry only one of them.
    """

    params: list[tuple[str, QueryValue]] = [
        ("page", page),
        ("sort_by", "popularity.desc"),
        ("include_adult", "false"),
        ("vote_count.gte", min_votes),
    ]
    cleaned = sorted({int(genre_id) for genre_id in genre_ids})
    if cleaned:
        params.append(("with_genres", "|".join(str(genre_id) for genre_id in cleaned)))
    if released_within_days is not None:
        end = today or date.today()
        start = end - timedelta(days=released_within_days)
        params.append(("primary_release_date.gte", start.isoformat()))
        params.append(("primary_release_date.lte", end.isoformat()))
    return Endpoint(name="discover", path="/discover/movie", params=tuple(params))


CATEGORY_ENDPOINTS = {
    "trending": trending,
    "popular": popular,
    "top-rated": top_rated,
    "now-playing": now_playing,
    "upcoming": upcoming,
}
