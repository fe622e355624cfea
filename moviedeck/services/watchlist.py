"""In-memory watchlist with observable mutations and debounced persistence."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from ..genres import SMART_COLLECTIONS, SmartCollection
from ..models import CatalogItem, WatchlistEntry
from ..repository import WatchlistRepository

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1


class WatchlistSortOption(str, Enum):
    DATE_ADDED = "date_added"
    RATING = "rating"
    TITLE = "title"
    RELEASE_DATE = "release_date"


@dataclass(frozen=True, slots=True)
class WatchlistChange:
    """Notification emitted after every successful mutation."""

    kind: str
    movie_ids: tuple[int, ...]
    count: int
    version: int
    collection_key: str | None = None


WatchlistListener = Callable[[WatchlistChange], None]
Target = int | CatalogItem | WatchlistEntry


def _target_id(target: Target) -> int:
    if isinstance(target, int):
        return target
    return target.id


class WatchlistStore:
    """Ordered, id-unique collection of bookmarked movies.

    Mutations are synchronous and applied under a lock so readers never see a
    half-applied change. Each mutation bumps ``version`` and schedules a
    debounced background write; :meth:`force_save` flushes immediately.
    """

    def __init__(
        self,
        repository: WatchlistRepository | None = None,
        *,
        save_debounce_seconds: float = 0.5,
    ) -> None:
        self._repository = repository
        self._debounce = max(0.0, save_debounce_seconds)
        self._entries: dict[int, WatchlistEntry] = {}
        self._collections: list[SmartCollection] = list(SMART_COLLECTIONS)
        self._lock = threading.RLock()
        self._listeners: list[WatchlistListener] = []
        self._version = 0
        self._saved_version = 0
        self._write_lock = asyncio.Lock()
        self._save_handle: asyncio.TimerHandle | None = None
        self._flush_tasks: set[asyncio.Task[bool]] = set()

    # Reads

    @property
    def version(self) -> int:
        return self._version

    @property
    def count(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def ids(self) -> list[int]:
        with self._lock:
            return list(self._entries)

    @property
    def entries(self) -> list[WatchlistEntry]:
        with self._lock:
            return list(self._entries.values())

    @property
    def has_unsaved_changes(self) -> bool:
        return self._saved_version < self._version

    def contains(self, target: Target) -> bool:
        return _target_id(target) in self._entries

    def __contains__(self, target: object) -> bool:
        if not isinstance(target, (int, CatalogItem, WatchlistEntry)):
            return False
        return self.contains(target)

    def get(self, movie_id: int) -> WatchlistEntry | None:
        return self._entries.get(movie_id)

    def sorted(
        self, by: WatchlistSortOption | str = WatchlistSortOption.DATE_ADDED
    ) -> list[WatchlistEntry]:
        option = WatchlistSortOption(by)
        entries = self.entries
        if option is WatchlistSortOption.RATING:
            return sorted(entries, key=lambda entry: entry.vote_average, reverse=True)
        if option is WatchlistSortOption.TITLE:
            return sorted(entries, key=lambda entry: entry.title.casefold())
        if option is WatchlistSortOption.RELEASE_DATE:
            dated = [entry for entry in entries if entry.release_date]
            undated = [entry for entry in entries if not entry.release_date]
            return sorted(dated, key=lambda entry: entry.release_date or "", reverse=True) + undated
        return entries

    def genre_frequency(self) -> dict[int, int]:
        counts: Counter[int] = Counter()
        for entry in self.entries:
            counts.update(set(entry.genre_ids))
        return dict(counts)

    def top_genres(self, limit: int = 3) -> list[int]:
        """Most frequent genre ids; equal counts are ordered by ascending id."""

        if limit <= 0:
            return []
        ranked = sorted(self.genre_frequency().items(), key=lambda pair: (-pair[1], pair[0]))
        return [genre_id for genre_id, _ in ranked[:limit]]

    def items_for_genre(self, genre_id: int) -> list[WatchlistEntry]:
        return [entry for entry in self.entries if genre_id in entry.genre_ids]

    def watched_items(self) -> list[WatchlistEntry]:
        return [entry for entry in self.entries if entry.is_watched]

    def to_watch_items(self) -> list[WatchlistEntry]:
        return [entry for entry in self.entries if not entry.is_watched]

    @property
    def collections(self) -> list[SmartCollection]:
        with self._lock:
            return list(self._collections)

    def collection(self, key: str) -> SmartCollection | None:
        with self._lock:
            return next((c for c in self._collections if c.key == key), None)

    def items_in_collection(self, collection: SmartCollection | str) -> list[WatchlistEntry]:
        if isinstance(collection, str):
            resolved = self.collection(collection)
            if resolved is None:
                raise KeyError(collection)
            collection = resolved
        return [
            entry
            for entry in self.entries
            if collection.matches(entry.genre_ids, entry.vote_average)
        ]

    # Mutations

    def add(self, item: CatalogItem | WatchlistEntry) -> bool:
        """Insert ``item`` unless its id is already present."""

        entry = item if isinstance(item, WatchlistEntry) else WatchlistEntry.from_item(item)
        with self._lock:
            if entry.id in self._entries:
                return False
            self._entries[entry.id] = entry
            change = self._record("added", (entry.id,))
        self._after_mutation(change)
        return True

    def remove(self, target: Target) -> bool:
        movie_id = _target_id(target)
        with self._lock:
            if self._entries.pop(movie_id, None) is None:
                return False
            change = self._record("removed", (movie_id,))
        self._after_mutation(change)
        return True

    def toggle(self, item: CatalogItem | WatchlistEntry) -> bool:
        """Flip membership and return whether the item is now in the watchlist."""

        with self._lock:
            if item.id in self._entries:
                self.remove(item)
                return False
            self.add(item)
            return True

    def clear_all(self) -> bool:
        with self._lock:
            if not self._entries:
                return False
            removed = tuple(self._entries)
            self._entries.clear()
            change = self._record("cleared", removed)
        self._after_mutation(change)
        return True

    def mark_watched(self, movie_id: int, watched: bool = True) -> bool:
        """Set the watched flag; returns ``False`` when nothing changed."""

        with self._lock:
            entry = self._entries.get(movie_id)
            if entry is None or entry.is_watched == watched:
                return False
            self._entries[movie_id] = entry.model_copy(update={"is_watched": watched})
            change = self._record("watched" if watched else "unwatched", (movie_id,))
        self._after_mutation(change)
        return True

    def toggle_watched(self, movie_id: int) -> bool | None:
        with self._lock:
            entry = self._entries.get(movie_id)
            if entry is None:
                return None
            self.mark_watched(movie_id, not entry.is_watched)
            return not entry.is_watched

    # Collections

    def add_collection(self, collection: SmartCollection) -> bool:
        """Append ``collection`` unless one with the same key exists."""

        with self._lock:
            if any(existing.key == collection.key for existing in self._collections):
                return False
            self._collections.append(collection)
            change = self._record("collection_added", (), collection_key=collection.key)
        self._after_mutation(change)
        return True

    def remove_collection(self, key: str) -> bool:
        with self._lock:
            remaining = [existing for existing in self._collections if existing.key != key]
            if len(remaining) == len(self._collections):
                return False
            self._collections = remaining
            change = self._record("collection_removed", (), collection_key=key)
        self._after_mutation(change)
        return True

    def update_collection(self, collection: SmartCollection) -> bool:
        """Replace the collection sharing ``collection.key``, keeping its position."""

        with self._lock:
            for index, existing in enumerate(self._collections):
                if existing.key == collection.key:
                    break
            else:
                return False
            if existing == collection:
                return False
            self._collections[index] = collection
            change = self._record("collection_updated", (), collection_key=collection.key)
        self._after_mutation(change)
        return True

    # Import / export

    def export_data(self) -> dict[str, Any]:
        return {
            "version": EXPORT_FORMAT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "entries": [entry.model_dump(mode="json") for entry in self.entries],
        }

    def import_data(self, data: Mapping[str, Any], *, merge: bool = True) -> int:
        """Load entries from :meth:`export_data` output; returns how many were added.

        With ``merge`` the existing entries are kept and already-present ids are
        skipped; otherwise the watchlist is replaced.
        """

        raw_entries = data.get("entries")
        if not isinstance(raw_entries, list):
            raise ValueError("Import data must contain an 'entries' list")

        parsed: list[WatchlistEntry] = []
        for raw in raw_entries:
            try:
                parsed.append(WatchlistEntry.model_validate(raw))
            except ValidationError as exc:
                raise ValueError(f"Invalid watchlist entry in import: {exc}") from exc

        changes: list[WatchlistChange] = []
        with self._lock:
            if not merge and self._entries:
                removed = tuple(self._entries)
                self._entries.clear()
                changes.append(self._record("cleared", removed))
            added: list[int] = []
            for entry in parsed:
                if entry.id in self._entries:
                    continue
                self._entries[entry.id] = entry
                added.append(entry.id)
            if added:
                changes.append(self._record("imported", tuple(added)))
        for change in changes:
            self._notify(change)
        if changes:
            self._schedule_save()
        return len(added)

    # Observation

    def subscribe(self, listener: WatchlistListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _record(
        self, kind: str, movie_ids: tuple[int, ...], *, collection_key: str | None = None
    ) -> WatchlistChange:
        self._version += 1
        return WatchlistChange(
            kind=kind,
            movie_ids=movie_ids,
            count=len(self._entries),
            version=self._version,
            collection_key=collection_key,
        )

    def _after_mutation(self, change: WatchlistChange) -> None:
        self._notify(change)
        self._schedule_save()

    def _notify(self, change: WatchlistChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:  # pragma: no cover - background safety net
                logger.exception("Watchlist listener failed for %s change", change.kind)

    # Persistence

    async def load(self) -> int:
        """Replace the in-memory entries with the persisted document."""

        if self._repository is None:
            return 0
        try:
            loaded = await self._repository.load()
            collections = await self._repository.load_collections()
        except Exception:
            logger.exception("Failed to load the persisted watchlist; starting empty")
            return 0
        with self._lock:
            self._entries = {entry.id: entry for entry in loaded}
            if collections is not None:
                self._collections = list(collections)
            change = self._record("loaded", tuple(self._entries))
            self._saved_version = self._version
        self._notify(change)
        logger.info("Loaded %s watchlist entries", change.count)
        return change.count

    async def force_save(self) -> bool:
        """Write every pending mutation before returning."""

        self._cancel_scheduled_save()
        pending = [task for task in self._flush_tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return await self._flush()

    def _schedule_save(self) -> None:
        if self._repository is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Without a loop the change stays pending until force_save().
            return
        self._cancel_scheduled_save()
        self._save_handle = loop.call_later(self._debounce, self._start_flush)

    def _cancel_scheduled_save(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None

    def _start_flush(self) -> None:
        self._save_handle = None
        task = asyncio.create_task(self._flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _flush(self) -> bool:
        if self._repository is None:
            return True
        async with self._write_lock:
            if not self.has_unsaved_changes:
                return True
            with self._lock:
                version = self._version
                snapshot = list(self._entries.values())
                collections = list(self._collections)
            try:
                await self._repository.save(snapshot, collections)
            except Exception:
                logger.exception("Failed to persist watchlist version %s", version)
                return False
            self._saved_version = max(self._saved_version, version)
            logger.debug("Persisted watchlist version %s (%s entries)", version, len(snapshot))
            return True
