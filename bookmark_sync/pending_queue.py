"""Durable, ordered queue of mutations the remote store has not acknowledged."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from attrs import Factory, define
from pydantic import ValidationError

from .config import QUEUE_STORAGE_KEY
from .models import OperationType, PendingOperation, PendingOperationListModel
from .remote import RemoteConflictError, RemoteNotFoundError, RemoteSyncError

if TYPE_CHECKING:  # pragma: no cover
    from uuid import UUID

    from .remote import RemoteSyncClient
    from .storage import KeyValueStorage

LOGGER = logging.getLogger(__name__)


@define(slots=True)
class DrainReport:
    """Outcome of one drain pass."""

    attempted: int = 0
    succeeded: int = 0
    remaining: list[PendingOperation] = Factory(list)
    errors: list[str] = Factory(list)

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded


class PendingOperationQueue:
    """Ordered side-log of undelivered create/update/delete operations.

    Every mutation is coalesced and persisted inside one critical section, so
    concurrent ``enqueue`` calls cannot interleave. Draining replays a snapshot
    in FIFO order and removes each operation only after its remote call
    succeeds; an interrupted pass leaves the rest queued.
    """

    def __init__(self, storage: KeyValueStorage, key: str = QUEUE_STORAGE_KEY) -> None:
        self._storage = storage
        self._key = key
        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()
        self._operations: list[PendingOperation] = self._load()

    # Persistence -------------------------------------------------------------------------

    def _load(self) -> list[PendingOperation]:
        raw = self._storage.get(self._key)
        if raw is None:
            return []
        try:
            operations = PendingOperationListModel.model_validate(raw).to_operations()
        except (ValidationError, ValueError, TypeError) as exc:
            LOGGER.warning(
                "Persisted queue under %r is unreadable; treating it as empty: %s",
                self._key,
                exc,
            )
            return []
        LOGGER.debug("Loaded %d pending operations", len(operations))
        return operations

    def _persist(self) -> None:
        model = PendingOperationListModel.from_operations(self._operations)
        self._storage.set(self._key, model.model_dump(mode="json", by_alias=True))

    # Queries -----------------------------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)

    @property
    def operations(self) -> list[PendingOperation]:
        """Snapshot of the queued operations in replay order."""
        with self._lock:
            return list(self._operations)

    def pending_for(self, bookmark_id: UUID) -> list[PendingOperation]:
        with self._lock:
            return [op for op in self._operations if op.bookmark_id == bookmark_id]

    def has_pending_delete(self, bookmark_id: UUID) -> bool:
        return any(op.type is OperationType.DELETE for op in self.pending_for(bookmark_id))

    # Mutations ---------------------------------------------------------------------------

    def enqueue(self, op: PendingOperation) -> None:
        """Add an operation, coalescing with what is already queued for its bookmark.

        A delete supersedes every queued operation for the id. An update replaces
        a queued update but keeps a queued create ahead of it. A second create
        replaces the first in place.
        """
        with self._lock:
            if op.type is OperationType.DELETE:
                self._operations = [
                    queued for queued in self._operations if queued.bookmark_id != op.bookmark_id
                ]
                self._operations.append(op)
            elif op.type is OperationType.UPDATE:
                self._operations = [
                    queued
                    for queued in self._operations
                    if not (
                        queued.bookmark_id == op.bookmark_id
                        and queued.type is OperationType.UPDATE
                    )
                ]
                self._operations.append(op)
            else:
                self._replace_or_append_create(op)
            self._persist()
        LOGGER.debug("Queued %s for bookmark %s", op.type.value, op.bookmark_id)

    def _replace_or_append_create(self, op: PendingOperation) -> None:
        for index, queued in enumerate(self._operations):
            if queued.bookmark_id == op.bookmark_id and queued.type is OperationType.CREATE:
                LOGGER.debug("Replacing queued create for bookmark %s", op.bookmark_id)
                self._operations[index] = op
                return
        self._operations.append(op)

    def clear_all(self) -> None:
        """Discard every pending operation (used on sign-out)."""
        with self._lock:
            dropped = len(self._operations)
            self._operations = []
            self._storage.remove(self._key)
        if dropped:
            LOGGER.info("Discarded %d pending operations", dropped)

    def _is_queued(self, op: PendingOperation) -> bool:
        with self._lock:
            return any(queued is op for queued in self._operations)

    def _remove(self, op: PendingOperation) -> None:
        with self._lock:
            # Identity check: a newer coalesced operation for the same id stays queued.
            remaining = [queued for queued in self._operations if queued is not op]
            if len(remaining) != len(self._operations):
                self._operations = remaining
                self._persist()

    def _record_failure(self, op: PendingOperation) -> None:
        with self._lock:
            if self._is_queued(op):
                op.attempts += 1
                self._persist()

    # Draining ----------------------------------------------------------------------------

    def drain(self, client: RemoteSyncClient) -> DrainReport:
        """Replay queued operations against ``client`` in enqueue order.

        Failures stay queued for the next pass. Once an operation for a bookmark
        fails, later operations for that bookmark are skipped in this pass so
        they never overtake it.
        """
        with self._drain_lock:
            report = DrainReport()
            blocked: set[UUID] = set()
            for op in self.operations:
                if op.bookmark_id in blocked or not self._is_queued(op):
                    # Blocked behind a failure, or discarded mid-pass by clear_all.
                    continue
                report.attempted += 1
                try:
                    replay_operation(client, op)
                except RemoteSyncError as exc:
                    blocked.add(op.bookmark_id)
                    self._record_failure(op)
                    report.errors.append(str(exc))
                    LOGGER.warning(
                        "Replay of %s for bookmark %s failed (attempt %d): %s",
                        op.type.value,
                        op.bookmark_id,
                        op.attempts,
                        exc,
                    )
                    continue
                self._remove(op)
                report.succeeded += 1
            report.remaining = self.operations
        LOGGER.info(
            "Drain finished: %d/%d delivered, %d still queued",
            report.succeeded,
            report.attempted,
            len(report.remaining),
        )
        return report


def replay_operation(client: RemoteSyncClient, op: PendingOperation) -> None:
    """Deliver one operation; already-achieved end states count as success."""
    if op.type is OperationType.DELETE:
        try:
            client.delete_bookmark(op.bookmark_id)
        except RemoteNotFoundError:
            LOGGER.debug("Bookmark %s already gone remotely", op.bookmark_id)
        return

    payload = op.payload
    if payload is None:  # pragma: no cover - guarded by PendingOperation
        msg = f"{op.type.value} operation without payload"
        raise ValueError(msg)

    if op.type is OperationType.CREATE:
        try:
            client.create_bookmark(payload)
        except RemoteConflictError:
            LOGGER.debug("Bookmark %s already exists remotely", op.bookmark_id)
        return

    try:
        client.update_bookmark(op.bookmark_id, payload)
    except RemoteNotFoundError:
        LOGGER.debug("Bookmark %s missing remotely; replaying update as create", op.bookmark_id)
        client.create_bookmark(payload)
