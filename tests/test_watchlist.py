"""Watchlist store contracts, notifications and persistence."""

from __future__ import annotations

import asyncio
from typing import Sequence

import pytest

from moviedeck.genres import SMART_COLLECTIONS, SmartCollection
from moviedeck.models import CatalogItem, WatchlistEntry
from moviedeck.services.watchlist import WatchlistChange, WatchlistSortOption, WatchlistStore


def item(
    movie_id: int,
    title: str | None = None,
    *,
    rating: float = 7.0,
    release_date: str | None = "2020-01-01",
    genres: Sequence[int] = (),
) -> CatalogItem:
    return CatalogItem(
        id=movie_id,
        title=title or f"Movie {movie_id}",
        vote_average=rating,
        release_date=release_date,
        genre_ids=list(genres),
    )


class RecordingRepository:
    """In-memory repository that records every save."""

    def __init__(
        self,
        initial: Sequence[WatchlistEntry] = (),
        *,
        collections: Sequence[SmartCollection] | None = None,
        fail: bool = False,
    ) -> None:
        self.stored = list(initial)
        self.stored_collections = None if collections is None else list(collections)
        self.saves: list[list[int]] = []
        self.fail = fail

    async def load(self) -> list[WatchlistEntry]:
        return list(self.stored)

    async def load_collections(self) -> list[SmartCollection] | None:
        return None if self.stored_collections is None else list(self.stored_collections)

    async def save(
        self,
        entries: Sequence[WatchlistEntry],
        collections: Sequence[SmartCollection] | None = None,
    ) -> None:
        if self.fail:
            raise OSError("disk full")
        self.stored = list(entries)
        if collections is not None:
            self.stored_collections = list(collections)
        self.saves.append([entry.id for entry in entries])


def test_double_toggle_restores_membership() -> None:
    store = WatchlistStore()
    store.add(item(1))
    movie = item(2)

    assert store.toggle(movie) is True
    assert store.toggle(movie) is False
    assert store.ids == [1]
    assert store.count == 1


def test_add_is_idempotent() -> None:
    store = WatchlistStore()
    movie = item(1)

    assert store.add(movie) is True
    assert store.add(movie) is False
    assert store.count == 1


def test_remove_absent_is_a_noop() -> None:
    store = WatchlistStore()
    store.add(item(1))
    version = store.version

    assert store.remove(42) is False
    assert store.count == 1
    assert store.version == version


def test_remove_accepts_id_or_item() -> None:
    store = WatchlistStore()
    store.add(item(1))
    store.add(item(2))

    assert store.remove(item(1))
    assert store.remove(2)
    assert store.count == 0


def test_contains_and_clear_all() -> None:
    store = WatchlistStore()
    store.add(item(1))

    assert store.contains(1)
    assert store.contains(item(1))
    assert item(1) in store
    assert store.clear_all() is True
    assert store.clear_all() is False
    assert not store.contains(1)


def test_sort_by_rating_descending() -> None:
    store = WatchlistStore()
    store.add(item(1, rating=5.0))
    store.add(item(2, rating=9.0))
    store.add(item(3, rating=5.0))

    assert [entry.id for entry in store.sorted(WatchlistSortOption.RATING)] == [2, 1, 3]


def test_sort_by_title_ascending() -> None:
    store = WatchlistStore()
    store.add(item(1, "Zebra"))
    store.add(item(2, "Alpha"))
    store.add(item(3, "beta"))

    assert [entry.title for entry in store.sorted("title")] == ["Alpha", "beta", "Zebra"]


def test_sort_by_release_date_descending_with_undated_last() -> None:
    store = WatchlistStore()
    store.add(item(1, release_date="1990-01-01"))
    store.add(item(2, release_date=None))
    store.add(item(3, release_date="2024-01-01"))

    assert [entry.id for entry in store.sorted(WatchlistSortOption.RELEASE_DATE)] == [3, 1, 2]


def test_default_sort_is_insertion_order() -> None:
    store = WatchlistStore()
    for movie_id in (3, 1, 2):
        store.add(item(movie_id))

    assert [entry.id for entry in store.sorted()] == [3, 1, 2]


def test_genre_frequency_and_top_genres() -> None:
    store = WatchlistStore()
    store.add(item(1, genres=[28, 12]))
    store.add(item(2, genres=[28, 35]))

    frequency = store.genre_frequency()

    assert frequency[28] == 2
    assert frequency[12] == 1
    assert frequency[35] == 1
    assert store.top_genres(1) == [28]
    assert store.top_genres(3) == [28, 12, 35]
    assert store.top_genres(0) == []
    assert [entry.id for entry in store.items_for_genre(35)] == [2]


def test_watched_flag_and_collections() -> None:
    store = WatchlistStore()
    store.add(item(1, genres=[10749], rating=7.5))
    store.add(item(2, genres=[10749], rating=5.0))
    store.add(item(3, genres=[27]))

    assert store.toggle_watched(1) is True
    assert store.toggle_watched(99) is None
    assert [entry.id for entry in store.watched_items()] == [1]
    assert [entry.id for entry in store.to_watch_items()] == [2, 3]
    assert [entry.id for entry in store.items_in_collection("date-night")] == [1]
    assert [entry.id for entry in store.items_in_collection("scary-night")] == [3]
    with pytest.raises(KeyError):
        store.items_in_collection("unknown")


def test_export_and_import_round_trip() -> None:
    source = WatchlistStore()
    source.add(item(1))
    source.add(item(2))
    source.mark_watched(2)

    target = WatchlistStore()
    target.add(item(2))
    imported = target.import_data(source.export_data())

    assert imported == 1
    assert target.ids == [2, 1]

    replaced = WatchlistStore()
    replaced.add(item(5))
    assert replaced.import_data(source.export_data(), merge=False) == 2
    assert replaced.ids == [1, 2]
    assert replaced.get(2).is_watched

    with pytest.raises(ValueError):
        replaced.import_data({"entries": [{"title": "missing id"}]})


def test_mutations_notify_subscribers() -> None:
    store = WatchlistStore()
    changes: list[WatchlistChange] = []
    unsubscribe = store.subscribe(changes.append)

    store.add(item(1))
    store.add(item(1))
    store.remove(1)
    unsubscribe()
    store.add(item(2))

    assert [change.kind for change in changes] == ["added", "removed"]
    assert changes[0].movie_ids == (1,)
    assert changes[0].count == 1
    assert changes[1].count == 0


def test_failing_listener_does_not_break_mutation() -> None:
    store = WatchlistStore()
    received: list[WatchlistChange] = []

    def broken(change: WatchlistChange) -> None:
        raise RuntimeError("listener bug")

    store.subscribe(broken)
    store.subscribe(received.append)

    assert store.add(item(1)) is True
    assert store.count == 1
    assert len(received) == 1


@pytest.mark.anyio("asyncio")
async def test_debounced_save_coalesces_mutations() -> None:
    repository = RecordingRepository()
    store = WatchlistStore(repository, save_debounce_seconds=0.05)

    store.add(item(1))
    store.add(item(2))
    store.remove(1)
    assert repository.saves == []

    await asyncio.sleep(0.2)

    assert repository.saves == [[2]]
    assert not store.has_unsaved_changes


@pytest.mark.anyio("asyncio")
async def test_force_save_writes_pending_changes_immediately() -> None:
    repository = RecordingRepository()
    store = WatchlistStore(repository, save_debounce_seconds=10.0)

    store.add(item(1))
    assert await store.force_save() is True

    assert repository.stored[0].id == 1
    assert repository.saves == [[1]]
    # Nothing pending: a second barrier does not write again.
    assert await store.force_save() is True
    assert repository.saves == [[1]]


@pytest.mark.anyio("asyncio")
async def test_save_failures_keep_memory_authoritative() -> None:
    repository = RecordingRepository(fail=True)
    store = WatchlistStore(repository, save_debounce_seconds=10.0)

    store.add(item(1))

    assert await store.force_save() is False
    assert store.ids == [1]
    assert store.has_unsaved_changes

    repository.fail = False
    assert await store.force_save() is True
    assert repository.saves == [[1]]


@pytest.mark.anyio("asyncio")
async def test_load_replaces_entries_and_marks_clean() -> None:
    existing = [WatchlistEntry.from_item(item(7)), WatchlistEntry.from_item(item(8))]
    store = WatchlistStore(RecordingRepository(existing))

    loaded = await store.load()

    assert loaded == 2
    assert store.ids == [7, 8]
    assert not store.has_unsaved_changes


def test_replacing_import_reports_dropped_ids() -> None:
    source = WatchlistStore()
    source.add(item(1))
    source.add(item(2))

    store = WatchlistStore()
    store.add(item(2))
    store.add(item(5))
    changes: list[WatchlistChange] = []
    store.subscribe(changes.append)

    assert store.import_data(source.export_data(), merge=False) == 2

    assert [change.kind for change in changes] == ["cleared", "imported"]
    assert changes[0].movie_ids == (2, 5)
    assert changes[0].count == 0
    assert changes[1].movie_ids == (1, 2)
    assert changes[1].count == 2


def test_builtin_collections_are_available_by_default() -> None:
    store = WatchlistStore()

    assert [collection.key for collection in store.collections] == [
        collection.key for collection in SMART_COLLECTIONS
    ]
    assert all(collection.is_builtin for collection in store.collections)


def test_user_collections_can_be_added_updated_and_removed() -> None:
    store = WatchlistStore()
    store.add(item(1, genres=[37], rating=8.0))
    store.add(item(2, genres=[37], rating=5.0))
    changes: list[WatchlistChange] = []
    store.subscribe(changes.append)

    westerns = SmartCollection.create("  Westerns ", [37, 37])
    assert westerns.key.startswith("custom-")
    assert westerns.name == "Westerns"
    assert westerns.genre_ids == (37,)
    assert not westerns.is_builtin

    assert store.add_collection(westerns) is True
    assert store.add_collection(westerns) is False
    assert [entry.id for entry in store.items_in_collection(westerns.key)] == [1, 2]

    stricter = SmartCollection(westerns.key, "Great Westerns", (37,), min_rating=7.0)
    assert store.update_collection(stricter) is True
    assert store.update_collection(stricter) is False
    assert store.collection(westerns.key).name == "Great Westerns"
    assert [entry.id for entry in store.items_in_collection(westerns.key)] == [1]
    assert store.update_collection(SmartCollection("missing", "Missing")) is False

    assert store.remove_collection(westerns.key) is True
    assert store.remove_collection(westerns.key) is False
    with pytest.raises(KeyError):
        store.items_in_collection(westerns.key)

    assert [change.kind for change in changes] == [
        "collection_added",
        "collection_updated",
        "collection_removed",
    ]
    assert all(change.collection_key == westerns.key for change in changes)
    assert store.count == 2


def test_blank_collection_name_is_rejected() -> None:
    with pytest.raises(ValueError):
        SmartCollection.create("   ")


@pytest.mark.anyio("asyncio")
async def test_collections_are_persisted_and_restored() -> None:
    repository = RecordingRepository()
    store = WatchlistStore(repository, save_debounce_seconds=10.0)
    favourites = SmartCollection("favourites", "Favourites", min_rating=8.0)

    store.add_collection(favourites)
    store.remove_collection("scary-night")
    assert await store.force_save() is True

    restored = WatchlistStore(repository)
    await restored.load()

    keys = [collection.key for collection in restored.collections]
    assert keys == ["date-night", "family-fun", "action-packed", "favourites"]
    assert restored.collection("favourites") == favourites


@pytest.mark.anyio("asyncio")
async def test_load_without_saved_collections_keeps_builtins() -> None:
    store = WatchlistStore(RecordingRepository([WatchlistEntry.from_item(item(3))]))

    await store.load()

    assert store.collections == list(SMART_COLLECTIONS)
