"""Tests for the write-through queue store."""

import time

import pytest

from conftest import FlakyStore
from extraction_queue.errors import InvalidTransition, ItemNotFound, PartialEnqueueError, StorageError
from extraction_queue.models import RawInput
from extraction_queue.queue_store import QueueStore
from extraction_queue.storage import QueueItem


@pytest.fixture
def flaky_store(temp_db):
    return FlakyStore(temp_db)


@pytest.fixture
def queue(flaky_store):
    queue = QueueStore(flaky_store)
    queue.load()
    return queue


def raw(name, data=None):
    return RawInput(data=data or name.encode(), name=name, mime_type="image/jpeg")


def test_enqueue_returns_ids_in_order(queue, flaky_store):
    """Test that enqueued items are pending and persisted."""
    ids = queue.enqueue_many([raw("a.jpg"), raw("b.jpg"), raw("c.jpg")])

    assert len(ids) == 3
    assert [item.id for item in queue.list_items()] == ids
    assert all(item.status == "pending" for item in queue.list_items())
    assert [item.id for item in flaky_store.list_items()] == ids


def test_list_items_orders_by_enqueue_time(queue):
    for name in ("a.jpg", "b.jpg", "c.jpg", "d.jpg"):
        queue.enqueue_many([raw(name)])

    items = queue.list_items()
    assert [item.file_name for item in items] == ["a.jpg", "b.jpg", "c.jpg", "d.jpg"]
    times = [item.enqueued_at for item in items]
    assert times == sorted(times)


def test_list_items_filters_by_status(queue):
    first, second = queue.enqueue_many([raw("a.jpg"), raw("b.jpg")])
    queue.mark_processing(first)

    assert [item.id for item in queue.list_items(status="pending")] == [second]
    assert [item.id for item in queue.list_items(status="processing")] == [first]


def test_partial_enqueue_keeps_successful_items(queue, flaky_store):
    """Test that one failing input does not undo the rest of the batch."""
    flaky_store.fail_names = {"bad.jpg"}

    with pytest.raises(PartialEnqueueError) as exc_info:
        queue.enqueue_many([raw("a.jpg"), raw("bad.jpg"), raw("c.jpg")])

    error = exc_info.value
    assert len(error.enqueued_ids) == 2
    assert error.failures[0][0] == "bad.jpg"
    assert [item.file_name for item in queue.list_items()] == ["a.jpg", "c.jpg"]
    assert len(flaky_store.list_items()) == 2


def test_duplicate_id_is_rejected(queue):
    queue.enqueue_many([RawInput(id="doc-1", data=b"x", name="a.jpg")])

    with pytest.raises(PartialEnqueueError) as exc_info:
        queue.enqueue_many([RawInput(id="doc-1", data=b"y", name="b.jpg")])

    assert exc_info.value.enqueued_ids == []
    assert queue.get_item("doc-1").file_name == "a.jpg"


def test_dequeue_next_returns_oldest_pending(queue):
    assert queue.dequeue_next() is None

    first, second = queue.enqueue_many([raw("a.jpg"), raw("b.jpg")])
    assert queue.dequeue_next().id == first

    queue.mark_processing(first)
    assert queue.dequeue_next().id == second
    # Dequeue does not claim the item
    assert queue.get_item(second).status == "pending"


def test_only_one_item_processing(queue):
    first, second = queue.enqueue_many([raw("a.jpg"), raw("b.jpg")])
    queue.mark_processing(first)

    with pytest.raises(InvalidTransition):
        queue.mark_processing(second)
    assert queue.get_item(second).status == "pending"


def test_full_lifecycle(queue):
    """Test pending -> processing -> completed with timestamps."""
    [item_id] = queue.enqueue_many([raw("a.jpg")])

    processing = queue.mark_processing(item_id)
    assert processing.status == "processing"
    assert processing.started_at is not None

    completed = queue.mark_completed(item_id, {"total": 180.0})
    assert completed.status == "completed"
    assert completed.result == {"total": 180.0}
    assert completed.completed_at >= completed.started_at

    stored = queue.store.get(item_id)
    assert stored.status == "completed"
    assert stored.result == {"total": 180.0}


def test_mark_failed_records_error(queue):
    [item_id] = queue.enqueue_many([raw("a.jpg")])
    queue.mark_processing(item_id)

    failed = queue.mark_failed(item_id, "Rate limited", "rate_limited")
    assert failed.status == "failed"
    assert failed.error == "Rate limited"
    assert failed.error_kind == "rate_limited"
    assert failed.result is None


def test_invalid_transitions(queue):
    [item_id] = queue.enqueue_many([raw("a.jpg")])

    with pytest.raises(InvalidTransition):
        queue.mark_completed(item_id, {"total": 1})
    with pytest.raises(InvalidTransition):
        queue.mark_failed(item_id, "boom")

    queue.mark_processing(item_id)
    queue.mark_completed(item_id, {"total": 1})
    with pytest.raises(InvalidTransition):
        queue.mark_processing(item_id)


def test_transition_on_missing_item(queue):
    with pytest.raises(ItemNotFound):
        queue.mark_completed("missing", {})


def test_storage_failure_leaves_memory_unchanged(queue, flaky_store):
    """Test that a failed write does not change the in-memory state."""
    [item_id] = queue.enqueue_many([raw("a.jpg")])
    flaky_store.fail_puts = True

    with pytest.raises(StorageError):
        queue.mark_processing(item_id)

    assert queue.get_item(item_id).status == "pending"
    assert flaky_store.get(item_id).status == "pending"


def test_recover_interrupted(flaky_store):
    """Test that items left processing go back to pending on load."""
    stuck = QueueItem(file_name="stuck.jpg", status="processing", started_at=time.time())
    done = QueueItem(file_name="done.jpg", status="completed", result={"total": 1})
    flaky_store.put(stuck)
    flaky_store.put(done)

    queue = QueueStore(flaky_store)
    queue.load()
    recovered = queue.recover_interrupted()

    assert recovered == [stuck.id]
    assert queue.get_item(stuck.id).status == "pending"
    assert queue.get_item(stuck.id).started_at is None
    assert flaky_store.get(stuck.id).status == "pending"
    assert queue.get_item(done.id).status == "completed"


def test_remove(queue, flaky_store):
    [item_id] = queue.enqueue_many([raw("a.jpg")])
    queue.remove(item_id)

    with pytest.raises(ItemNotFound):
        queue.get_item(item_id)
    assert flaky_store.get(item_id) is None
    with pytest.raises(ItemNotFound):
        queue.remove(item_id)


def test_clear_completed_removes_finished_items(queue):
    done, failed, waiting = queue.enqueue_many([raw("a.jpg"), raw("b.jpg"), raw("c.jpg")])
    queue.mark_processing(done)
    queue.mark_completed(done, {"total": 1})
    queue.mark_processing(failed)
    queue.mark_failed(failed, "boom")

    assert queue.clear_completed() == 2
    assert [item.id for item in queue.list_items()] == [waiting]


def test_clear_all(queue, flaky_store):
    first, _ = queue.enqueue_many([raw("a.jpg"), raw("b.jpg")])
    queue.mark_processing(first)

    assert queue.clear_all() == 2
    assert queue.list_items() == []
    assert flaky_store.list_items() == []


def test_counts(queue):
    first, _, _ = queue.enqueue_many([raw("a.jpg"), raw("b.jpg"), raw("c.jpg")])
    queue.mark_processing(first)

    assert queue.counts() == {
        "pending": 2,
        "processing": 1,
        "completed": 0,
        "failed": 0,
        "total": 3,
    }


def test_subscribe_and_unsubscribe(queue):
    """Test that listeners see every change until they unsubscribe."""
    events = []
    unsubscribe = queue.subscribe(lambda event, item_id: events.append((event, item_id)))

    [item_id] = queue.enqueue_many([raw("a.jpg")])
    queue.mark_processing(item_id)
    queue.remove(item_id)
    queue.clear_all()

    assert events == [
        ("enqueued", item_id),
        ("updated", item_id),
        ("removed", item_id),
        ("cleared", None),
    ]

    unsubscribe()
    queue.enqueue_many([raw("b.jpg")])
    assert len(events) == 4


def test_failing_listener_does_not_break_queue(queue):
    def broken(event, item_id):
        raise RuntimeError("listener bug")

    queue.subscribe(broken)
    ids = queue.enqueue_many([raw("a.jpg")])
    assert queue.get_item(ids[0]).status == "pending"


def test_load_restores_state(flaky_store):
    first = QueueStore(flaky_store)
    first.load()
    ids = first.enqueue_many([raw("a.jpg"), raw("b.jpg")])

    second = QueueStore(flaky_store)
    second.load()
    assert [item.id for item in second.list_items()] == ids


def test_refresh_picks_up_changes_from_another_queue(queue, flaky_store):
    """Test that refresh adds items written elsewhere and drops deleted ones."""
    [kept_id, removed_id] = queue.enqueue_many([raw("a.jpg"), raw("b.jpg")])
    queue.mark_processing(kept_id)
    events = []
    queue.subscribe(lambda event, item_id: events.append((event, item_id)))

    other = QueueStore(flaky_store)
    other.load()
    [added_id] = other.enqueue_many([raw("c.jpg")])
    other.remove(removed_id)

    assert queue.refresh() == ([added_id], [removed_id])
    assert [item.id for item in queue.list_items()] == [kept_id, added_id]
    assert queue.get_item(kept_id).status == "processing"
    assert queue.get_item(added_id).status == "pending"
    assert events == [("enqueued", added_id), ("removed", removed_id)]

    assert queue.refresh() == ([], [])
    assert len(events) == 2
