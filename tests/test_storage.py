"""Tests for the SQLite durable store."""

import sqlite3
import time

import pytest

from extraction_queue.errors import StorageError
from extraction_queue.storage import DurableStore, QueueItem, RetryEntry


def test_put_and_get_item(store):
    """Test storing an item and reading it back."""
    item = QueueItem(file_name="receipt.jpg", mime_type="image/jpeg", payload=b"\x89PNG\x00data")
    store.put(item)

    stored = store.get(item.id)
    assert stored is not None
    assert stored.file_name == "receipt.jpg"
    assert stored.mime_type == "image/jpeg"
    assert stored.payload == b"\x89PNG\x00data"
    assert stored.status == "pending"
    assert stored.result is None


def test_get_missing_item(store):
    assert store.get("missing") is None


def test_put_updates_state_only(store):
    """Test that an update keeps the payload written on insert."""
    item = QueueItem(file_name="a.jpg", payload=b"original")
    store.put(item)

    store.put(item.replace(
        status="completed",
        payload=b"ignored",
        result={"total": 12.5},
        completed_at=time.time(),
    ))

    stored = store.get(item.id)
    assert stored.status == "completed"
    assert stored.result == {"total": 12.5}
    assert stored.payload == b"original"
    assert stored.completed_at is not None


def test_put_rejects_unknown_status(store):
    item = QueueItem(file_name="a.jpg", status="confirmed")
    with pytest.raises(StorageError):
        store.put(item)
    assert store.get(item.id) is None


def test_list_items_in_enqueue_order(store):
    """Test that equal timestamps keep insertion order."""
    now = time.time()
    first = QueueItem(file_name="first.jpg", enqueued_at=now)
    second = QueueItem(file_name="second.jpg", enqueued_at=now)
    earlier = QueueItem(file_name="earlier.jpg", enqueued_at=now - 10)
    for item in (first, second, earlier):
        store.put(item)

    names = [item.file_name for item in store.list_items()]
    assert names == ["earlier.jpg", "first.jpg", "second.jpg"]


def test_delete_item(store):
    item = QueueItem(file_name="a.jpg")
    store.put(item)

    assert store.delete(item.id) is True
    assert store.delete(item.id) is False
    assert store.get(item.id) is None


def test_clear(store):
    for name in ("a.jpg", "b.jpg"):
        store.put(QueueItem(file_name=name))
    store.clear()
    assert store.list_items() == []


def test_items_survive_reopen(temp_db):
    """Test that a new store instance sees previously written items."""
    item = QueueItem(file_name="a.jpg", payload=b"abc", status="processing", started_at=time.time())
    DurableStore(temp_db).put(item)

    reopened = DurableStore(temp_db).get(item.id)
    assert reopened.status == "processing"
    assert reopened.payload == b"abc"


def test_corrupt_status_raises_storage_error(store):
    """Test that a row with an unknown status is reported, not guessed at."""
    store.put(QueueItem(id="bad", file_name="a.jpg"))
    conn = sqlite3.connect(store.db_path)
    conn.execute("UPDATE queue_items SET status = 'exploded' WHERE id = 'bad'")
    conn.commit()
    conn.close()

    with pytest.raises(StorageError):
        store.get("bad")
    with pytest.raises(StorageError):
        store.list_items()


def test_corrupt_result_raises_storage_error(store):
    store.put(QueueItem(id="bad", file_name="a.jpg"))
    conn = sqlite3.connect(store.db_path)
    conn.execute("UPDATE queue_items SET result = '{not json' WHERE id = 'bad'")
    conn.commit()
    conn.close()

    with pytest.raises(StorageError):
        store.get("bad")


def test_unreachable_database(tmp_path):
    with pytest.raises(StorageError):
        DurableStore(str(tmp_path / "missing" / "dir" / "queue.db"))


def test_settings(store):
    """Test reading, writing and deleting settings."""
    assert store.get_setting("provider.use_remote") is None
    assert store.get_setting("provider.use_remote", False) is False

    store.put_setting("provider.use_remote", True)
    store.put_setting("provider.remote_credential", "key-1")
    store.put_setting("provider.remote_credential", "key-2")

    assert store.get_setting("provider.use_remote") is True
    assert store.get_setting("provider.remote_credential") == "key-2"

    store.delete_setting("provider.remote_credential")
    assert store.get_setting("provider.remote_credential") is None


def test_retry_entries(store):
    """Test the retry entry lifecycle."""
    later = RetryEntry(record={"id": "later"}, next_attempt_at=200.0, last_error="offline")
    sooner = RetryEntry(record={"id": "sooner"}, next_attempt_at=100.0)

    later_id = store.add_retry_entry(later)
    sooner_id = store.add_retry_entry(sooner)
    assert later.id == later_id
    assert sooner_id != later_id

    entries = store.list_retry_entries()
    assert [entry.record["id"] for entry in entries] == ["sooner", "later"]
    assert entries[1].last_error == "offline"
    assert entries[1].attempts == 0

    later.attempts = 2
    later.next_attempt_at = 50.0
    later.last_error = "timeout"
    store.update_retry_entry(later)

    entries = store.list_retry_entries()
    assert entries[0].id == later_id
    assert entries[0].attempts == 2
    assert entries[0].last_error == "timeout"

    store.delete_retry_entry(later_id)
    assert [entry.id for entry in store.list_retry_entries()] == [sooner_id]


def test_fail_retry_entry_moves_it_to_failures(store):
    entry = RetryEntry(record={"id": "rec-1"}, next_attempt_at=10.0, attempts=3, last_error="offline")
    entry_id = store.add_retry_entry(entry)
    other_id = store.add_retry_entry(RetryEntry(record={"id": "rec-2"}, next_attempt_at=10.0))

    entry.failed_at = 42.0
    store.fail_retry_entry(entry)

    assert [e.id for e in store.list_retry_entries()] == [other_id]
    [failure] = store.list_sync_failures()
    assert failure.id == entry_id
    assert failure.record == {"id": "rec-1"}
    assert failure.attempts == 3
    assert failure.last_error == "offline"
    assert failure.failed_at == 42.0

    assert store.delete_sync_failure(entry_id) is True
    assert store.delete_sync_failure(entry_id) is False
    assert store.list_sync_failures() == []


def test_clear_retry_entries_and_failures(store):
    for name in ("a", "b"):
        store.add_retry_entry(RetryEntry(record={"id": name}, next_attempt_at=1.0))
    failed = RetryEntry(record={"id": "c"}, next_attempt_at=1.0)
    store.add_retry_entry(failed)
    store.fail_retry_entry(failed)

    assert failed.failed_at is not None
    assert store.clear_retry_entries() == 2
    assert store.clear_sync_failures() == 1
    assert store.list_retry_entries() == []
    assert store.list_sync_failures() == []


def test_list_ids_in_enqueue_order(store):
    first = QueueItem(file_name="a.jpg", mime_type="image/jpeg", payload=b"A", enqueued_at=1.0)
    second = QueueItem(file_name="b.jpg", mime_type="image/jpeg", payload=b"B", enqueued_at=2.0)
    store.put(second)
    store.put(first)

    assert store.list_ids() == [first.id, second.id]


def test_queue_item_to_dict():
    item = QueueItem(id="abc", file_name="a.jpg", payload=b"12345")

    data = item.to_dict()
    assert data["id"] == "abc"
    assert data["size"] == 5
    assert "payload" not in data
    assert item.to_dict(include_payload=True)["payload"] == b"12345"

    copy = QueueItem.from_dict(item.to_dict(include_payload=True))
    assert copy.id == item.id
    assert copy.enqueued_at == item.enqueued_at
