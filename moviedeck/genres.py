"""TMDB movie genre table used for display names and smart collections."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping
from uuid import uuid4


@dataclass(frozen=True)
class GenreDefinition:
    """A TMDB movie genre."""

    id: int
    name: str


GENRES: tuple[GenreDefinition, ...] = (
    GenreDefinition(28, "Action"),
    GenreDefinition(12, "Adventure"),
    GenreDefinition(16, "Animation"),
    GenreDefinition(35, "Comedy"),
    GenreDefinition(80, "Crime"),
    GenreDefinition(99, "Documentary"),
    GenreDefinition(18, "Drama"),
    GenreDefinition(10751, "Family"),
    GenreDefinition(14, "Fantasy"),
    GenreDefinition(36, "History"),
    GenreDefinition(27, "Horror"),
    GenreDefinition(10402, "Music"),
    GenreDefinition(9648, "Mystery"),
    GenreDefinition(10749, "Romance"),
    GenreDefinition(878, "Science Fiction"),
    GenreDefinition(10770, "TV Movie"),
    GenreDefinition(53, "Thriller"),
    GenreDefinition(10752, "War"),
    GenreDefinition(37, "Western"),
)

_GENRE_NAMES = {genre.id: genre.name for genre in GENRES}


def genre_name(genre_id: int) -> str | None:
    return _GENRE_NAMES.get(genre_id)


def genre_names(genre_ids: Iterable[int]) -> list[str]:
    """Names for the known ids, unknown ids skipped, order preserved."""

    return [name for name in (genre_name(genre_id) for genre_id in genre_ids) if name]


@dataclass(frozen=True)
class SmartCollection:
    """Watchlist grouping by genre and minimum rating."""

    key: str
    name: str
    genre_ids: tuple[int, ...] = ()
    min_rating: float | None = None
    is_builtin: bool = False

    @classmethod
    def create(
        cls, name: str, genre_ids: Iterable[int] = (), min_rating: float | None = None
    ) -> "SmartCollection":
        """A user collection with a freshly generated key."""

        if not name.strip():
            raise ValueError("Collection name must not be blank")
        return cls(
            key=f"custom-{uuid4().hex[:12]}",
            name=name.strip(),
            genre_ids=tuple(dict.fromkeys(genre_ids)),
            min_rating=min_rating,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SmartCollection":
        key = payload.get("key")
        name = payload.get("name")
        if not isinstance(key, str) or not key or not isinstance(name, str) or not name.strip():
            raise ValueError("Collection needs a key and a name")
        min_rating = payload.get("min_rating")
        return cls(
            key=key,
            name=name.strip(),
            genre_ids=tuple(int(genre_id) for genre_id in payload.get("genre_ids") or ()),
            min_rating=None if min_rating is None else float(min_rating),
            is_builtin=bool(payload.get("is_builtin", False)),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "genre_ids": list(self.genre_ids),
            "min_rating": self.min_rating,
            "is_builtin": self.is_builtin,
        }

    def matches(self, genre_ids: Iterable[int], rating: float) -> bool:
        if self.genre_ids and set(self.genre_ids).isdisjoint(genre_ids):
            return False
        if self.min_rating is not None and rating < self.min_rating:
            return False
        return True


SMART_COLLECTIONS: tuple[SmartCollection, ...] = (
    SmartCollection("date-night", "Date Night", (10749, 35, 18), min_rating=6.5, is_builtin=True),
    SmartCollection("family-fun", "Family Fun", (10751, 16, 12, 14), is_builtin=True),
    SmartCollection("action-packed", "Action Packed", (28, 53, 878), is_builtin=True),
    SmartCollection("scary-night", "Scary Night", (27, 53, 9648), is_builtin=True),
)
