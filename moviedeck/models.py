"""Pydantic models describing TMDB payloads and watchlist entries."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .genres import genre_names

POSTER_BASE_URL = "https://image.tmdb.org/t/p/w500"
BACKDROP_BASE_URL = "https://image.tmdb.org/t/p/original"
LOGO_BASE_URL = "https://image.tmdb.org/t/p/w92"


def build_image_url(path: str | None, base_url: str) -> str | None:
    if not path:
        return None
    if path.startswith("http"):
        return path
    return f"{base_url}{path}"


def _clean_genre_ids(value: object) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError("genre_ids must be a list of integers")
    cleaned: list[int] = []
    for entry in value:
        genre_id = int(entry)
        if genre_id not in cleaned:
            cleaned.append(genre_id)
    return cleaned


def _blank_to_none(value: object) -> object:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class CatalogItem(BaseModel):
    """A single movie as returned by TMDB listings and searches."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    title: str
    overview: str = ""
    poster_path: str | None = None
    backdrop_path: str | None = None
    release_date: str | None = None
    vote_average: float = Field(default=0.0, ge=0.0, le=10.0)
    vote_count: int = 0
    popularity: float = 0.0
    genre_ids: list[int] = Field(default_factory=list)
    original_language: str = ""
    original_title: str | None = None
    adult: bool = False
    video: bool = False

    @field_validator("genre_ids", mode="before")
    @classmethod
    def _dedupe_genres(cls, value: object) -> list[int]:
        return _clean_genre_ids(value)

    @field_validator("release_date", "poster_path", "backdrop_path", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        return _blank_to_none(value)

    @field_validator("overview", mode="before")
    @classmethod
    def _none_overview(cls, value: object) -> object:
        return value or ""

    @model_validator(mode="before")
    @classmethod
    def _default_original_title(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("original_title") and data.get("title"):
            data = {**data, "original_title": data["title"]}
        return data

    @property
    def poster_url(self) -> str | None:
        return build_image_url(self.poster_path, POSTER_BASE_URL)

    @property
    def backdrop_url(self) -> str | None:
        return build_image_url(self.backdrop_path, BACKDROP_BASE_URL)

    @property
    def release_year(self) -> int | None:
        if not self.release_date or len(self.release_date) < 4:
            return None
        try:
            return int(self.release_date[:4])
        except ValueError:
            return None

    @property
    def genre_names(self) -> list[str]:
        return genre_names(self.genre_ids)


class Genre(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str


class GenreList(BaseModel):
    genres: list[Genre] = Field(default_factory=list)


class MovieDetails(CatalogItem):
    """Full record for a single movie; ``genres`` is folded into ``genre_ids``."""

    runtime: int | None = None
    tagline: str | None = None
    status: str | None = None
    genres: list[Genre] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _fold_genres(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("genre_ids") and data.get("genres"):
            data = {**data}
            data["genre_ids"] = [
                genre["id"] for genre in data["genres"] if isinstance(genre, dict) and "id" in genre
            ]
        return data


class CatalogPage(BaseModel):
    """One page of a paginated TMDB listing."""

    page: int = 1
    results: list[CatalogItem] = Field(default_factory=list)
    total_pages: int = 0
    total_results: int = 0

    @classmethod
    def empty(cls) -> "CatalogPage":
        return cls(page=1, results=[], total_pages=0, total_results=0)

    @property
    def has_more_pages(self) -> bool:
        return self.page < self.total_pages

    @property
    def is_empty(self) -> bool:
        return not self.results


class Video(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    key: str
    name: str = ""
    site: str = ""
    type: str = ""
    official: bool = False
    published_at: str | None = None

    @property
    def is_youtube(self) -> bool:
        return self.site.casefold() == "youtube"

    @property
    def is_trailer(self) -> bool:
        return self.type.casefold() == "trailer"

    @property
    def youtube_url(self) -> str | None:
        if not self.is_youtube:
            return None
        return f"https://www.youtube.com/watch?v={self.key}"


class VideoList(BaseModel):
    id: int = 0
    results: list[Video] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "VideoList":
        return cls()

    @property
    def official_trailers(self) -> list[Video]:
        return [video for video in self.results if video.official and video.is_trailer and video.is_youtube]

    @property
    def primary_trailer(self) -> Video | None:
        trailers = self.official_trailers
        if trailers:
            return trailers[0]
        for video in self.results:
            if video.is_youtube and video.is_trailer:
                return video
        return None


class WatchProvider(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    provider_id: int
    provider_name: str
    logo_path: str | None = None
    display_priority: int = 0

    @property
    def logo_url(self) -> str | None:
        return build_image_url(self.logo_path, LOGO_BASE_URL)


class WatchProviderRegion(BaseModel):
    link: str | None = None
    flatrate: list[WatchProvider] = Field(default_factory=list)
    rent: list[WatchProvider] = Field(default_factory=list)
    buy: list[WatchProvider] = Field(default_factory=list)
    ads: list[WatchProvider] = Field(default_factory=list)
    free: list[WatchProvider] = Field(default_factory=list)

    @field_validator("flatrate", "rent", "buy", "ads", "free", mode="before")
    @classmethod
    def _none_to_list(cls, value: object) -> object:
        return value or []


class WatchProvidersResponse(BaseModel):
    id: int = 0
    results: dict[str, WatchProviderRegion] = Field(default_factory=dict)


class WatchProviderInfo(BaseModel):
    """Providers for one region, grouped by how the movie can be watched."""

    region: str = "US"
    link: str | None = None
    streaming: list[WatchProvider] = Field(default_factory=list)
    rent: list[WatchProvider] = Field(default_factory=list)
    buy: list[WatchProvider] = Field(default_factory=list)
    free: list[WatchProvider] = Field(default_factory=list)

    @classmethod
    def empty(cls, region: str = "US") -> "WatchProviderInfo":
        return cls(region=region)

    @classmethod
    def from_response(cls, response: WatchProvidersResponse, region: str) -> "WatchProviderInfo":
        entry = response.results.get(region)
        if entry is None:
            return cls.empty(region)
        return cls(
            region=region,
            link=entry.link,
            streaming=entry.flatrate,
            rent=entry.rent,
            buy=entry.buy,
            free=[*entry.free, *entry.ads],
        )

    @property
    def is_empty(self) -> bool:
        return not (self.streaming or self.rent or self.buy or self.free)

    @property
    def all_providers(self) -> list[WatchProvider]:
        seen: set[int] = set()
        providers: list[WatchProvider] = []
        for provider in [*self.streaming, *self.rent, *self.buy, *self.free]:
            if provider.provider_id in seen:
                continue
            seen.add(provider.provider_id)
            providers.append(provider)
        return sorted(providers, key=lambda provider: provider.display_priority)


class DetailSections(BaseModel):
    """Optional sections shown next to a movie's details."""

    videos: VideoList = Field(default_factory=VideoList)
    similar: CatalogPage = Field(default_factory=CatalogPage.empty)
    recommended: CatalogPage = Field(default_factory=CatalogPage.empty)
    providers: WatchProviderInfo = Field(default_factory=WatchProviderInfo)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatchlistEntry(BaseModel):
    """Snapshot of a bookmarked movie; older documents may lack the optional fields."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    title: str
    overview: str = ""
    poster_path: str | None = None
    backdrop_path: str | None = None
    release_date: str | None = None
    vote_average: float = 0.0
    vote_count: int = 0
    popularity: float = 0.0
    genre_ids: list[int] = Field(default_factory=list)
    original_language: str = "en"
    original_title: str | None = None
    added_at: datetime = Field(default_factory=_utcnow)
    is_watched: bool = False

    @field_validator("genre_ids", mode="before")
    @classmethod
    def _dedupe_genres(cls, value: object) -> list[int]:
        return _clean_genre_ids(value)

    @field_validator("release_date", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        return _blank_to_none(value)

    @classmethod
    def from_item(cls, item: CatalogItem, *, added_at: datetime | None = None) -> "WatchlistEntry":
        return cls(
            id=item.id,
            title=item.title,
            overview=item.overview,
            poster_path=item.poster_path,
            backdrop_path=item.backdrop_path,
            release_date=item.release_date,
            vote_average=item.vote_average,
            vote_count=item.vote_count,
            popularity=item.popularity,
            genre_ids=list(item.genre_ids),
            original_language=item.original_language or "en",
            original_title=item.original_title,
            added_at=added_at or _utcnow(),
        )

    def to_item(self) -> CatalogItem:
        return CatalogItem(
            id=self.id,
            title=self.title,
            overview=self.overview,
            poster_path=self.poster_path,
            backdrop_path=self.backdrop_path,
            release_date=self.release_date,
            vote_average=self.vote_average,
            vote_count=self.vote_count,
            popularity=self.popularity,
            genre_ids=list(self.genre_ids),
            original_language=self.original_language,
            original_title=self.original_title or self.title,
        )

    @property
    def poster_url(self) -> str | None:
        return build_image_url(self.poster_path, POSTER_BASE_URL)
