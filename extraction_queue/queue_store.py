"""In-memory queue state mirrored write-through to the durable store."""

import logging
import threading
import time
from typing import Any, Callable, Iterable, Optional

from .errors import InvalidTransition, ItemNotFound, PartialEnqueueError, QueueError
from .models import RawInput
from .storage import STATUSES, DurableStore, QueueItem

logger = logging.getLogger(__name__)

# (event, item_id); item_id is None for "cleared"
Listener = Callable[[str, Optional[str]], None]


class QueueStore:
    """Owns every queue item state transition.

    The durable store is written first and memory is updated only after
    the write succeeds, so a StorageError leaves both sides unchanged.
    """

    def __init__(self, store: DurableStore):
        self.store = store
        self._items: dict[str, QueueItem] = {}
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []

    def load(self):
        """Fill the in-memory mirror from the durable store."""
        items = self.store.list_items()
        with self._lock:
            self._items = {item.id: item for item in items}
        logger.info(f"Loaded {len(items)} queue items from {self.store.db_path}")

    def refresh(self) -> tuple[list[str], list[str]]:
        """Pick up items other processes added to or removed from the store.

        Items this process already holds keep their in-memory state, since
        only the processor that owns the queue changes item status.

        Returns:
            (added ids, dropped ids)
        """
        added = []
        dropped = []
        with self._lock:
            stored_ids = self.store.list_ids()
            stored = set(stored_ids)
            for item_id in stored_ids:
                if item_id not in self._items:
                    item = self.store.get(item_id)
                    if item is not None:
                        self._items[item_id] = item
                        added.append(item_id)
            for item_id in list(self._items):
                if item_id not in stored:
                    del self._items[item_id]
                    dropped.append(item_id)

        if added or dropped:
            logger.info(f"Picked up {len(added)} new and {len(dropped)} removed items from the store")
        for item_id in added:
            self._notify("enqueued", item_id)
        for item_id in dropped:
            self._notify("removed", item_id)
        return added, dropped

    # Notifications

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener.

        Args:
            listener: Called with (event, item_id) after every change

        Returns:
            A function that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: str, item_id: Optional[str] = None):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, item_id)
            except Exception as e:
                logger.error(f"Queue listener failed on {event}: {e}", exc_info=True)

    # Enqueue and query

    def enqueue_many(self, inputs: Iterable[RawInput]) -> list[str]:
        """Persist each input as a pending item.

        Args:
            inputs: Files to queue

        Returns:
            IDs of the queued items, in input order

        Raises:
            PartialEnqueueError: If at least one input could not be queued;
                the others stay queued
        """
        ids = []
        failures = []
        for raw in inputs:
            item = QueueItem(
                id=raw.id,
                file_name=raw.name,
                mime_type=raw.mime_type,
                payload=raw.data,
                status="pending",
            )
            try:
                with self._lock:
                    if item.id in self._items:
                        raise QueueError(f"Item {item.id} is already queued")
                    self.store.put(item)
                    self._items[item.id] = item
            except QueueError as e:
                logger.error(f"Failed to queue {raw.name}: {e}")
                failures.append((raw.name, str(e)))
                continue

            ids.append(item.id)
            logger.info(f"Queued {item.file_name} as {item.id} ({len(item.payload)} bytes)")
            self._notify("enqueued", item.id)

        if failures:
            raise PartialEnqueueError(ids, failures)
        return ids

    def get_item(self, item_id: str) -> QueueItem:
        with self._lock:
            item = self._items.get(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        return item

    def list_items(self, status: Optional[str] = None) -> list[QueueItem]:
        """Items ordered by enqueue time, optionally filtered by status."""
        with self._lock:
            items = list(self._items.values())
        if status:
            items = [item for item in items if item.status == status]
        # dicts keep insertion order, so equal timestamps stay in enqueue order
        return sorted(items, key=lambda item: item.enqueued_at)

    def dequeue_next(self) -> Optional[QueueItem]:
        """The oldest pending item, left untouched, or None."""
        pending = self.list_items(status="pending")
        return pending[0] if pending else None

    def counts(self) -> dict[str, int]:
        with self._lock:
            statuses = [item.status for item in self._items.values()]
        stats = {status: statuses.count(status) for status in STATUSES}
        stats["total"] = len(statuses)
        return stats

    # Transitions

    def _transition(self, item_id: str, source: tuple[str, ...], target: str, **changes: Any) -> QueueItem:
        with self._lock:
            current = self._items.get(item_id)
            if current is None:
                raise ItemNotFound(item_id)
            if current.status not in source:
                logger.error(f"Rejected transition of {item_id}: {current.status} -> {target}")
                raise InvalidTransition(item_id, current.status, target)

            updated = current.replace(status=target, **changes)
            self.store.put(updated)
            self._items[item_id] = updated

        self._notify("updated", item_id)
        return updated

    def mark_processing(self, item_id: str) -> QueueItem:
        """Claim a pending item; only one item may be processing."""
        with self._lock:
            busy = [item.id for item in self._items.values() if item.status == "processing"]
            if busy and busy[0] != item_id:
                logger.error(f"Refusing to start {item_id} while {busy[0]} is processing")
                raise InvalidTransition(item_id, self.get_item(item_id).status, "processing")
            return self._transition(
                item_id, ("pending",), "processing", started_at=time.time()
            )

    def mark_completed(self, item_id: str, result: dict[str, Any]) -> QueueItem:
        return self._transition(
            item_id,
            ("processing",),
            "completed",
            result=result,
            error=None,
            error_kind=None,
            completed_at=time.time(),
        )

    def mark_failed(self, item_id: str, error: str, kind: Optional[str] = None) -> QueueItem:
        return self._transition(
            item_id,
            ("processing",),
            "failed",
            result=None,
            error=error,
            error_kind=kind,
            completed_at=time.time(),
        )

    def recover_interrupted(self) -> list[str]:
        """Return items left in processing by an interrupted run to pending.

        Returns:
            IDs of the recovered items
        """
        with self._lock:
            stuck = [item.id for item in self._items.values() if item.status == "processing"]
        recovered = []
        for item_id in stuck:
            self._transition(item_id, ("processing",), "pending", started_at=None)
            recovered.append(item_id)
            logger.warning(f"Recovered interrupted item {item_id}; it will be extracted again")
        return recovered

    # Removal

    def remove(self, item_id: str):
        """Delete an item from memory and the durable store."""
        with self._lock:
            if item_id not in self._items:
                raise ItemNotFound(item_id)
            self.store.delete(item_id)
            del self._items[item_id]
        logger.info(f"Removed item {item_id}")
        self._notify("removed", item_id)

    def clear_completed(self) -> int:
        """Remove finished items (completed and failed).

        Returns:
            Number of removed items
        """
        with self._lock:
            finished = [
                item.id for item in self._items.values()
                if item.status in ("completed", "failed")
            ]
        removed = 0
        for item_id in finished:
            try:
                self.remove(item_id)
            except ItemNotFound:
                continue
            removed += 1
        return removed

    def clear_all(self) -> int:
        """Remove every item, including one being processed."""
        with self._lock:
            self.store.clear()
            count = len(self._items)
            self._items = {}
        logger.info(f"Cleared {count} queue items")
        self._notify("cleared")
        return count
