"""Local-first mutation flow: apply locally, deliver remotely or queue for later."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from attrs import Factory, define, field

from .config import MAX_DRAIN_FAILURES, SAVED_URLS_KEY, SHARED_BOOKMARKS_KEY
from .models import Bookmark, PendingOperation
from .pending_queue import DrainReport, replay_operation
from .remote import RemoteSyncError
from .urls import dedupe_key, find_duplicate, suggest_category

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterable
    from uuid import UUID

    from .pending_queue import PendingOperationQueue
    from .remote import RemoteSyncClient
    from .storage import KeyValueStorage
    from .store import LocalBookmarkStore

LOGGER = logging.getLogger(__name__)

QUEUED_ADVISORY = "Saved locally, will sync later"


class SyncOutcome(str, Enum):
    """What happened to the remote half of a mutation."""

    SYNCED = "synced"
    QUEUED_NO_SESSION = "queued-no-session"
    QUEUED_AFTER_FAILURE = "queued-after-failure"
    QUEUED_BEHIND_PENDING = "queued-behind-pending"

    @property
    def queued(self) -> bool:
        return self is not SyncOutcome.SYNCED


class DuplicateBookmarkError(ValueError):
    """Raised when a link with the same dedupe key is already saved."""

    def __init__(self, existing: Bookmark) -> None:
        super().__init__(f"Already saved as {existing.title or existing.url!r}")
        self.existing = existing


@define(slots=True)
class SyncStatus:
    """Observable sync state; listeners are called after every change."""

    pending_count: int = 0
    last_sync_error: str | None = None
    last_synced_at: datetime | None = None
    failing_operations: int = 0
    _listeners: list[Callable[[SyncStatus], None]] = field(
        default=Factory(list), init=False, repr=False, eq=False,
    )

    @property
    def sync_failed(self) -> bool:
        return self.failing_operations > 0

    def subscribe(self, listener: Callable[[SyncStatus], None]) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update(self, **changes: object) -> None:
        for name, value in changes.items():
            setattr(self, name, value)
        for listener in list(self._listeners):
            listener(self)

    def dismiss_error(self) -> None:
        self.update(last_sync_error=None)


class SyncOrchestrator:
    """Drives local-first bookmark mutations and queue replay.

    Every mutation is applied to the local store first and always succeeds from
    the caller's point of view. Remote delivery is attempted immediately when a
    session exists; otherwise, or on failure, the operation is queued.
    """

    def __init__(
        self,
        store: LocalBookmarkStore,
        client: RemoteSyncClient,
        queue: PendingOperationQueue,
        status: SyncStatus | None = None,
        max_drain_failures: int = MAX_DRAIN_FAILURES,
    ) -> None:
        self._store = store
        self._client = client
        self._queue = queue
        self.status = status or SyncStatus()
        self._max_drain_failures = max(1, max_drain_failures)
        self._refresh_status()

    # Mutations ---------------------------------------------------------------------------

    def create_bookmark(self, bookmark: Bookmark) -> SyncOutcome:
        self._store.upsert(bookmark)
        return self._deliver(PendingOperation.create(bookmark))

    def add_link(
        self,
        url: str,
        title: str = "",
        notes: str = "",
        category: str | None = None,
        tags: Iterable[str] = (),
    ) -> tuple[Bookmark, SyncOutcome]:
        """Save a new link unless an equivalent one is already saved."""
        existing = find_duplicate(self._store.list_all(), url)
        if existing is not None:
            raise DuplicateBookmarkError(existing)
        bookmark = Bookmark(
            title=title,
            url=url,
            notes=notes,
            category=category or suggest_category(url) or "general",
            tags=list(tags),
        )
        return bookmark, self.create_bookmark(bookmark)

    def update_bookmark(self, bookmark: Bookmark) -> SyncOutcome:
        self._store.upsert(bookmark)
        return self._deliver(PendingOperation.update(bookmark))

    def toggle_read(self, bookmark_id: UUID) -> SyncOutcome:
        bookmark = self._require(bookmark_id)
        bookmark.is_read = not bookmark.is_read
        return self.update_bookmark(bookmark)

    def toggle_favorite(self, bookmark_id: UUID) -> SyncOutcome:
        bookmark = self._require(bookmark_id)
        bookmark.is_favorite = not bookmark.is_favorite
        return self.update_bookmark(bookmark)

    def delete_bookmark(self, bookmark_id: UUID) -> SyncOutcome:
        self._store.delete(bookmark_id)
        return self._deliver(PendingOperation.delete(bookmark_id))

    def _require(self, bookmark_id: UUID) -> Bookmark:
        bookmark = self._store.get(bookmark_id)
        if bookmark is None:
            msg = f"Unknown bookmark {bookmark_id}"
            raise KeyError(msg)
        return bookmark

    def _deliver(self, op: PendingOperation) -> SyncOutcome:
        if not self._client.has_active_session():
            LOGGER.debug("No session; queuing %s for %s", op.type.value, op.bookmark_id)
            self._queue.enqueue(op)
            self._refresh_status()
            return SyncOutcome.QUEUED_NO_SESSION

        if self._queue.pending_for(op.bookmark_id):
            # An earlier change for this bookmark is still queued; keep order.
            self._queue.enqueue(op)
            self._refresh_status()
            return SyncOutcome.QUEUED_BEHIND_PENDING

        try:
            replay_operation(self._client, op)
        except RemoteSyncError as exc:
            LOGGER.warning(
                "Remote %s for bookmark %s failed; queued for later: %s",
                op.type.value,
                op.bookmark_id,
                exc,
            )
            self._queue.enqueue(op)
            self._refresh_status(last_sync_error=QUEUED_ADVISORY)
            return SyncOutcome.QUEUED_AFTER_FAILURE

        self._refresh_status(last_synced_at=datetime.now(timezone.utc))
        return SyncOutcome.SYNCED

    # Session events ----------------------------------------------------------------------

    def sync_pending(self) -> DrainReport:
        """Replay the queue if a session is available."""
        if not self._client.has_active_session():
            LOGGER.debug("No session; leaving %d operations queued", len(self._queue))
            return DrainReport(remaining=self._queue.operations)
        report = self._queue.drain(self._client)
        changes: dict[str, object] = {}
        if report.succeeded:
            changes["last_synced_at"] = datetime.now(timezone.utc)
        if report.failed:
            changes["last_sync_error"] = (
                f"{report.failed} change(s) could not be synced; will retry"
            )
        elif not report.remaining:
            changes["last_sync_error"] = None
        self._refresh_status(**changes)
        return report

    def on_sign_in(self) -> DrainReport:
        return self.sync_pending()

    def on_foreground(self) -> DrainReport:
        return self.sync_pending()

    def sign_out(self) -> None:
        """Forget undelivered mutations so they never reach another account.

        The queue is cleared before the session ends, so a drain running
        concurrently stops replaying at its next operation.
        """
        self._queue.clear_all()
        self._client.sign_out()
        self.status.update(
            pending_count=0,
            last_sync_error=None,
            last_synced_at=None,
            failing_operations=0,
        )

    def _refresh_status(self, **changes: object) -> None:
        operations = self._queue.operations
        failing = sum(1 for op in operations if op.attempts >= self._max_drain_failures)
        if failing and "last_sync_error" in changes:
            changes["last_sync_error"] = f"Sync failed for {failing} change(s)"
        self.status.update(pending_count=len(operations), failing_operations=failing, **changes)

    # Reconciliation ----------------------------------------------------------------------

    def refresh_from_remote(self, user_id: str) -> int:
        """Insert remote bookmarks that are missing locally.

        Local bookmarks are never overwritten and bookmarks with a queued delete
        are not brought back. Returns the number inserted.
        """
        if not self._client.has_active_session():
            LOGGER.debug("No session; skipping remote refresh")
            return 0
        try:
            remote = self._client.list_bookmarks(user_id)
        except RemoteSyncError as exc:
            LOGGER.warning("Failed to load bookmarks from the backend: %s", exc)
            self._refresh_status(last_sync_error="Could not load bookmarks from the server")
            return 0
        inserted = 0
        for bookmark in remote:
            if self._store.get(bookmark.id) is not None:
                continue
            if self._queue.has_pending_delete(bookmark.id):
                continue
            self._store.upsert(bookmark)
            inserted += 1
        LOGGER.info("Fetched %d remote bookmarks, %d new locally", len(remote), inserted)
        return inserted

    def import_shared_bookmarks(self, storage: KeyValueStorage) -> list[Bookmark]:
        """Import links saved by the share extension while the app was closed."""
        raw = storage.get(SHARED_BOOKMARKS_KEY)
        if not raw:
            return []
        entries = raw if isinstance(raw, list) else []
        imported: list[Bookmark] = []
        for entry in entries:
            bookmark = self._shared_entry_to_bookmark(entry)
            if bookmark is None:
                continue
            if find_duplicate(self._store.list_all(), bookmark.url) is not None:
                LOGGER.debug("Skipping shared duplicate %s", bookmark.url)
                continue
            self.create_bookmark(bookmark)
            imported.append(bookmark)
        storage.remove(SHARED_BOOKMARKS_KEY)
        LOGGER.info("Imported %d of %d shared bookmarks", len(imported), len(entries))
        self.publish_saved_urls(storage)
        return imported

    @staticmethod
    def _shared_entry_to_bookmark(entry: object) -> Bookmark | None:
        if not isinstance(entry, dict):
            return None
        title, url, category = entry.get("title"), entry.get("url"), entry.get("category")
        if not all(isinstance(value, str) for value in (title, url, category)):
            LOGGER.debug("Skipping malformed shared entry %r", entry)
            return None
        thumbnail = entry.get("thumbnailURL")
        try:
            return Bookmark(
                title=title,
                url=url,
                category=category,
                thumbnail_url=thumbnail if isinstance(thumbnail, str) and thumbnail else None,
            )
        except ValueError as exc:
            LOGGER.debug("Skipping invalid shared entry %r: %s", entry, exc)
            return None

    def publish_saved_urls(self, storage: KeyValueStorage) -> None:
        """Publish ``{dedupe_key: saved epoch seconds}`` for out-of-process duplicate checks."""
        url_map = {dedupe_key(b.url): b.created_at.timestamp() for b in self._store.list_all()}
        storage.set(SAVED_URLS_KEY, url_map)
