"""Local bookmark store: the on-device source of truth the user sees."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Protocol

from pydantic import ValidationError

from .config import BOOKMARKS_STORAGE_KEY
from .models import Bookmark, BookmarkListModel

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable
    from uuid import UUID

    from .storage import KeyValueStorage

LOGGER = logging.getLogger(__name__)


class LocalBookmarkStore(Protocol):
    """Interface the sync core consumes; persistence is the implementer's concern."""

    def get(self, bookmark_id: UUID) -> Bookmark | None: ...

    def upsert(self, bookmark: Bookmark) -> None: ...

    def delete(self, bookmark_id: UUID) -> None: ...

    def list_all(self) -> list[Bookmark]: ...


class InMemoryBookmarkStore:
    """Dictionary-backed store, newest bookmark first in ``list_all``."""

    def __init__(self, bookmarks: Iterable[Bookmark] = ()) -> None:
        self._lock = threading.RLock()
        self._items: dict[UUID, Bookmark] = {b.id: b for b in bookmarks}

    def get(self, bookmark_id: UUID) -> Bookmark | None:
        with self._lock:
            return self._items.get(bookmark_id)

    def upsert(self, bookmark: Bookmark) -> None:
        with self._lock:
            self._items[bookmark.id] = bookmark
            self._changed()

    def delete(self, bookmark_id: UUID) -> None:
        with self._lock:
            if self._items.pop(bookmark_id, None) is not None:
                self._changed()

    def list_all(self) -> list[Bookmark]:
        with self._lock:
            return sorted(self._items.values(), key=lambda b: b.created_at, reverse=True)

    def _changed(self) -> None:
        """Hook for subclasses that persist on change."""


class PersistentBookmarkStore(InMemoryBookmarkStore):
    """In-memory store mirrored to key/value storage after every change."""

    def __init__(self, storage: KeyValueStorage, key: str = BOOKMARKS_STORAGE_KEY) -> None:
        self._storage = storage
        self._key = key
        super().__init__(self._load())

    def _load(self) -> list[Bookmark]:
        raw = self._storage.get(self._key)
        if raw is None:
            return []
        try:
            return BookmarkListModel.model_validate(raw).to_bookmarks()
        except (ValidationError, ValueError) as exc:
            LOGGER.warning("Stored bookmarks under %r are unreadable; starting empty: %s", self._key, exc)
            return []

    def _changed(self) -> None:
        payload = [b.to_model().model_dump(mode="json") for b in self._items.values()]
        self._storage.set(self._key, payload)
