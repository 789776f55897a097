"""Shared pytest fixtures for bookmark sync tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from bookmark_sync.orchestrator import SyncOrchestrator
from bookmark_sync.pending_queue import PendingOperationQueue
from bookmark_sync.remote import (
    RemoteConflictError,
    RemoteNotFoundError,
    RemoteSyncError,
    TransientRemoteError,
)
from bookmark_sync.storage import MemoryStorage
from bookmark_sync.store import InMemoryBookmarkStore

if TYPE_CHECKING:
    from uuid import UUID

    from bookmark_sync.models import Bookmark


class FakeRemoteClient:
    """In-memory remote store that records every call in order."""

    def __init__(self, *, session: bool = True) -> None:
        self.session = session
        self.signed_out = False
        self.calls: list[tuple[str, UUID]] = []
        self.rows: dict[UUID, Bookmark] = {}
        self._failures: dict[tuple[str, UUID], list[RemoteSyncError]] = {}

    def fail(
        self,
        action: str,
        bookmark_id: UUID,
        error: RemoteSyncError | None = None,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` calls of ``action`` for ``bookmark_id`` raise."""
        exc = error or TransientRemoteError(f"{action} unavailable")
        self._failures.setdefault((action, bookmark_id), []).extend([exc] * times)

    def _maybe_fail(self, action: str, bookmark_id: UUID) -> None:
        self.calls.append((action, bookmark_id))
        pending = self._failures.get((action, bookmark_id))
        if pending:
            raise pending.pop(0)

    def has_active_session(self) -> bool:
        return self.session

    def sign_out(self) -> None:
        self.session = False
        self.signed_out = True

    def create_bookmark(self, bookmark: Bookmark) -> None:
        self._maybe_fail("create", bookmark.id)
        if bookmark.id in self.rows:
            msg = "duplicate key"
            raise RemoteConflictError(msg)
        self.rows[bookmark.id] = bookmark.snapshot()

    def update_bookmark(self, bookmark_id: UUID, bookmark: Bookmark) -> None:
        self._maybe_fail("update", bookmark_id)
        if bookmark_id not in self.rows:
            msg = "no row"
            raise RemoteNotFoundError(msg)
        self.rows[bookmark_id] = bookmark.snapshot()

    def delete_bookmark(self, bookmark_id: UUID) -> None:
        self._maybe_fail("delete", bookmark_id)
        if self.rows.pop(bookmark_id, None) is None:
            msg = "no row"
            raise RemoteNotFoundError(msg)

    def list_bookmarks(self, user_id: str) -> list[Bookmark]:  # noqa: ARG002
        return [b.snapshot() for b in self.rows.values()]


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def store() -> InMemoryBookmarkStore:
    return InMemoryBookmarkStore()


@pytest.fixture
def remote() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest.fixture
def queue(storage: MemoryStorage) -> PendingOperationQueue:
    return PendingOperationQueue(storage)


@pytest.fixture
def orchestrator(
    store: InMemoryBookmarkStore,
    remote: FakeRemoteClient,
    queue: PendingOperationQueue,
) -> SyncOrchestrator:
    return SyncOrchestrator(store, remote, queue, max_drain_failures=3)
