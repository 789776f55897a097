"""Tests for the durable pending operation queue and its drain pass."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import pytest

from bookmark_sync.config import QUEUE_STORAGE_KEY
from bookmark_sync.models import Bookmark, OperationType, PendingOperation
from bookmark_sync.pending_queue import PendingOperationQueue, replay_operation
from bookmark_sync.remote import PermanentRemoteError, RemoteNotFoundError

if TYPE_CHECKING:
    from bookmark_sync.storage import MemoryStorage
    from tests.conftest import FakeRemoteClient


def _bookmark(name: str) -> Bookmark:
    return Bookmark(title=name, url=f"https://example.com/{name}")


def _shape(queue: PendingOperationQueue) -> list[tuple[OperationType, str]]:
    return [(op.type, op.payload.title if op.payload else "-") for op in queue.operations]


def test_update_coalesces_behind_create(queue: PendingOperationQueue) -> None:
    bm = _bookmark("a")
    queue.enqueue(PendingOperation.create(bm))
    bm.title = "a2"
    queue.enqueue(PendingOperation.update(bm))
    bm.title = "a3"
    queue.enqueue(PendingOperation.update(bm))
    if _shape(queue) != [(OperationType.CREATE, "a"), (OperationType.UPDATE, "a3")]:
        raise AssertionError(f"Unexpected queue {_shape(queue)}")


def test_delete_supersedes_everything_for_the_id(queue: PendingOperationQueue) -> None:
    a, b = _bookmark("a"), _bookmark("b")
    queue.enqueue(PendingOperation.create(a))
    queue.enqueue(PendingOperation.create(b))
    queue.enqueue(PendingOperation.update(a))
    queue.enqueue(PendingOperation.delete(a.id))
    ops = queue.operations
    if [(op.type, op.bookmark_id) for op in ops] != [
        (OperationType.CREATE, b.id),
        (OperationType.DELETE, a.id),
    ]:
        raise AssertionError("Delete should drop every earlier operation for the id")
    if not queue.has_pending_delete(a.id) or queue.has_pending_delete(b.id):
        raise AssertionError("has_pending_delete reports the wrong ids")


def test_second_create_replaces_first_in_place(queue: PendingOperationQueue) -> None:
    a, b = _bookmark("a"), _bookmark("b")
    queue.enqueue(PendingOperation.create(a))
    queue.enqueue(PendingOperation.create(b))
    a.title = "a-new"
    queue.enqueue(PendingOperation.create(a))
    if _shape(queue) != [(OperationType.CREATE, "a-new"), (OperationType.CREATE, "b")]:
        raise AssertionError(f"Unexpected queue {_shape(queue)}")


def test_queued_payload_is_a_snapshot(queue: PendingOperationQueue) -> None:
    bm = _bookmark("a")
    queue.enqueue(PendingOperation.create(bm))
    bm.title = "edited after queuing"
    if queue.operations[0].payload.title != "a":  # type: ignore[union-attr]
        raise AssertionError("Queued payload should not follow local edits")


def test_queue_persists_and_reloads(storage: MemoryStorage) -> None:
    first = PendingOperationQueue(storage)
    a, b = _bookmark("a"), _bookmark("b")
    first.enqueue(PendingOperation.create(a))
    first.enqueue(PendingOperation.delete(b.id))

    raw = storage.get(QUEUE_STORAGE_KEY)
    if not isinstance(raw, list) or raw[0]["operationId"] != str(a.id):
        raise AssertionError("Queue should persist under its fixed key with camelCase fields")

    reloaded = PendingOperationQueue(storage)
    if [(op.type, op.bookmark_id) for op in reloaded.operations] != [
        (OperationType.CREATE, a.id),
        (OperationType.DELETE, b.id),
    ]:
        raise AssertionError("Reloaded queue lost operations or order")
    if reloaded.operations[0].payload != a:
        raise AssertionError("Reloaded payload differs from the queued snapshot")


def test_corrupt_queue_loads_empty(storage: MemoryStorage) -> None:
    storage.set(QUEUE_STORAGE_KEY, {"not": "a list"})
    if len(PendingOperationQueue(storage)) != 0:
        raise AssertionError("Non-list queue should load as empty")
    storage.set(QUEUE_STORAGE_KEY, [{"operationId": "nope", "type": "create"}])
    queue = PendingOperationQueue(storage)
    if len(queue) != 0:
        raise AssertionError("Invalid records should load as empty")
    queue.enqueue(PendingOperation.delete(_bookmark("a").id))
    if len(PendingOperationQueue(storage)) != 1:
        raise AssertionError("Queue should recover and persist new operations")


def test_clear_all_removes_persisted_queue(storage: MemoryStorage) -> None:
    queue = PendingOperationQueue(storage)
    queue.enqueue(PendingOperation.create(_bookmark("a")))
    queue.clear_all()
    if len(queue) != 0 or storage.get(QUEUE_STORAGE_KEY) is not None:
        raise AssertionError("clear_all should empty memory and storage")


def test_drain_replays_in_fifo_order(
    queue: PendingOperationQueue, remote: FakeRemoteClient,
) -> None:
    a, b = _bookmark("a"), _bookmark("b")
    remote.rows[b.id] = b.snapshot()
    queue.enqueue(PendingOperation.create(a))
    queue.enqueue(PendingOperation.update(b))
    queue.enqueue(PendingOperation.delete(b.id))
    queue.enqueue(PendingOperation.update(a))

    report = queue.drain(remote)
    if remote.calls != [("create", a.id), ("delete", b.id), ("update", a.id)]:
        raise AssertionError(f"Unexpected replay order {remote.calls}")
    if report.succeeded != 3 or report.remaining or len(queue) != 0:
        raise AssertionError(f"Unexpected report {report}")
    if b.id in remote.rows or a.id not in remote.rows:
        raise AssertionError("Remote end state does not match the local intent")


def test_partial_failure_keeps_failed_and_blocks_later_ops_for_same_id(
    queue: PendingOperationQueue, remote: FakeRemoteClient, storage: MemoryStorage,
) -> None:
    a, b = _bookmark("a"), _bookmark("b")
    queue.enqueue(PendingOperation.create(a))
    queue.enqueue(PendingOperation.create(b))
    queue.enqueue(PendingOperation.update(a))
    remote.fail("create", a.id)

    report = queue.drain(remote)
    if report.attempted != 2 or report.succeeded != 1 or report.failed != 1:
        raise AssertionError(f"Unexpected counts {report}")
    if ("update", a.id) in remote.calls:
        raise AssertionError("Update must not overtake the failed create")
    if [op.type for op in report.remaining] != [OperationType.CREATE, OperationType.UPDATE]:
        raise AssertionError("Failed operation and its follower should stay queued in order")
    if report.remaining[0].attempts != 1 or len(report.errors) != 1:
        raise AssertionError("Failure should be counted and reported")
    if storage.get(QUEUE_STORAGE_KEY)[0]["attempts"] != 1:
        raise AssertionError("Attempt counter should be persisted")

    second = queue.drain(remote)
    if second.succeeded != 2 or len(queue) != 0:
        raise AssertionError("Next drain should deliver the remaining operations")


def test_permanent_errors_stay_queued(
    queue: PendingOperationQueue, remote: FakeRemoteClient,
) -> None:
    a = _bookmark("a")
    queue.enqueue(PendingOperation.create(a))
    remote.fail("create", a.id, PermanentRemoteError("HTTP 400"), times=2)
    queue.drain(remote)
    queue.drain(remote)
    if len(queue) != 1 or queue.operations[0].attempts != 2:
        raise AssertionError("Operations are never dropped for failing")


def test_replay_is_idempotent_for_already_achieved_states(remote: FakeRemoteClient) -> None:
    a = _bookmark("a")
    remote.rows[a.id] = a.snapshot()
    replay_operation(remote, PendingOperation.create(a))

    gone = _bookmark("gone")
    replay_operation(remote, PendingOperation.delete(gone.id))

    fresh = _bookmark("fresh")
    replay_operation(remote, PendingOperation.update(fresh))
    if fresh.id not in remote.rows:
        raise AssertionError("Update of a missing row should be replayed as a create")
    if remote.calls[-2:] != [("update", fresh.id), ("create", fresh.id)]:
        raise AssertionError(f"Unexpected calls {remote.calls}")


def test_update_as_create_failure_propagates(remote: FakeRemoteClient) -> None:
    fresh = _bookmark("fresh")
    remote.fail("create", fresh.id, RemoteNotFoundError("table missing"))
    with pytest.raises(RemoteNotFoundError, match="table missing"):
        replay_operation(remote, PendingOperation.update(fresh))


def test_concurrent_enqueue_keeps_persisted_queue_consistent(storage: MemoryStorage) -> None:
    queue = PendingOperationQueue(storage)
    workers, edits = 8, 25
    barrier = threading.Barrier(workers)
    bookmarks = [_bookmark(f"t{i}") for i in range(workers)]
    errors: list[BaseException] = []

    def _mutate(bm: Bookmark) -> None:
        try:
            barrier.wait(timeout=5)
            queue.enqueue(PendingOperation.create(bm))
            for n in range(edits):
                bm.title = f"{bm.title.split('#')[0]}#{n}"
                queue.enqueue(PendingOperation.update(bm))
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=_mutate, args=(bm,)) for bm in bookmarks]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    if errors or any(thread.is_alive() for thread in threads):
        raise AssertionError(f"Concurrent enqueue failed: {errors}")

    ops = queue.operations
    if len(queue) != 2 * workers:
        raise AssertionError(f"Expected one create and one update per bookmark, got {len(ops)}")
    for bm in bookmarks:
        mine = [op for op in ops if op.bookmark_id == bm.id]
        if [op.type for op in mine] != [OperationType.CREATE, OperationType.UPDATE]:
            raise AssertionError("Create must stay ahead of the coalesced update")
        if mine[1].payload.title != f"t{bookmarks.index(bm)}#{edits - 1}":  # type: ignore[union-attr]
            raise AssertionError("Coalesced update should carry the last edit")

    reloaded = PendingOperationQueue(storage).operations
    as_rows = [(op.type, op.bookmark_id, op.payload.title if op.payload else None) for op in ops]
    if [(op.type, op.bookmark_id, op.payload.title if op.payload else None) for op in reloaded] != as_rows:
        raise AssertionError("Persisted queue diverged from the in-memory queue")


def test_clear_all_during_drain_stops_replay(
    queue: PendingOperationQueue, remote: FakeRemoteClient,
) -> None:
    first, second = _bookmark("first"), _bookmark("second")
    queue.enqueue(PendingOperation.create(first))
    queue.enqueue(PendingOperation.create(second))
    original_create = remote.create_bookmark

    def _create_then_clear(bookmark: Bookmark) -> None:
        original_create(bookmark)
        queue.clear_all()

    remote.create_bookmark = _create_then_clear  # type: ignore[method-assign]
    report = queue.drain(remote)
    if remote.calls != [("create", first.id)]:
        raise AssertionError(f"Cleared operations were still replayed: {remote.calls}")
    if report.attempted != 1 or report.remaining:
        raise AssertionError(f"Unexpected report {report}")
