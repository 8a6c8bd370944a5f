"""Backup synchronization with a durable retry queue."""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import httpx

from .errors import StorageError, SyncError
from .storage import DurableStore, RetryEntry

logger = logging.getLogger(__name__)

PermanentFailureListener = Callable[[RetryEntry], None]


class SyncTarget(ABC):
    """External store that receives confirmed records."""

    @abstractmethod
    def write(self, record: dict[str, Any]):
        """Write one record; raise SyncError on failure."""

    def protect(self) -> bool:
        """Best-effort guard against manual edits of the backup."""
        return True

    def close(self):
        pass


class HttpSyncTarget(SyncTarget):
    """Posts records as JSON to a backup endpoint."""

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout: float = 30,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    def write(self, record: dict[str, Any]):
        try:
            response = self._client.post(self.url, json=record)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SyncError(f"Backup target returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SyncError(f"Backup target unreachable: {e}") from e

    def protect(self) -> bool:
        try:
            response = self._client.post(
                f"{self.url.rstrip('/')}/protect",
                json={"warning_only": True, "description": "Automated backup; manual edits may be overwritten."},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Could not protect backup target (non-critical): {e}")
            return False
        return True

    def close(self):
        self._client.close()


class DrainReport:
    """What one drain pass did."""

    def __init__(self):
        self.succeeded: list[int] = []
        self.retried: list[int] = []
        self.permanently_failed: list[int] = []

    def __repr__(self) -> str:
        return (
            f"DrainReport(succeeded={self.succeeded}, retried={self.retried}, "
            f"permanently_failed={self.permanently_failed})"
        )


class RetrySyncQueue:
    """Durable queue of failed backup writes retried with exponential backoff.

    An entry becomes due ``base_delay * 2**attempts`` seconds (capped at
    ``max_delay``) after its last failure. When a due entry has used up
    ``max_attempts`` retries it moves to the durable permanent failures
    instead of being tried again, where it stays until acknowledged.
    """

    def __init__(
        self,
        store: DurableStore,
        target: SyncTarget,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.target = target
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.clock = clock
        self.running = False
        self._listeners: list[PermanentFailureListener] = []
        self._drain_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def backoff(self, attempts: int) -> float:
        return min(self.base_delay * (2 ** attempts), self.max_delay)

    def push(self, record: dict[str, Any], error: str) -> int:
        """Buffer a record whose write failed.

        Args:
            record: The record that could not be written
            error: Why the write failed

        Returns:
            ID of the new retry entry
        """
        entry = RetryEntry(
            record=record,
            attempts=0,
            next_attempt_at=self.clock() + self.backoff(0),
            last_error=error,
        )
        entry_id = self.store.add_retry_entry(entry)
        logger.info(f"Queued backup retry {entry_id}: {error}")
        return entry_id

    def entries(self) -> list[RetryEntry]:
        return self.store.list_retry_entries()

    @property
    def permanent_failures(self) -> list[RetryEntry]:
        """Entries given up on and not yet acknowledged, oldest first."""
        return self.store.list_sync_failures()

    def acknowledge(self, failure_id: int) -> bool:
        """Drop one permanent failure once it has been dealt with.

        Returns:
            False if there was no such failure
        """
        dropped = self.store.delete_sync_failure(failure_id)
        if dropped:
            logger.info(f"Acknowledged permanent backup failure {failure_id}")
        return dropped

    def clear_failures(self) -> int:
        """Acknowledge every permanent failure."""
        count = self.store.clear_sync_failures()
        logger.info(f"Cleared {count} permanent backup failures")
        return count

    def clear(self) -> int:
        """Drop every pending retry without writing it."""
        with self._drain_lock:
            count = self.store.clear_retry_entries()
        logger.warning(f"Dropped {count} pending backup retries")
        return count

    def on_permanent_failure(self, listener: PermanentFailureListener):
        self._listeners.append(listener)

    def drain(self, now: Optional[float] = None) -> DrainReport:
        """Retry every entry that is due.

        Entries are handled independently; one failure never stops the pass.

        Args:
            now: Current time, defaults to the queue's clock

        Returns:
            DrainReport listing what happened to each due entry
        """
        report = DrainReport()
        with self._drain_lock:
            now = self.clock() if now is None else now
            due = [entry for entry in self.entries() if entry.next_attempt_at <= now]

            for entry in due:
                try:
                    self._attempt(entry, now, report)
                except StorageError as e:
                    logger.error(f"Store unavailable while retrying entry {entry.id}: {e}")

        if report.succeeded or report.retried or report.permanently_failed:
            logger.info(f"Backup retry pass: {report}")
        return report

    def _attempt(self, entry: RetryEntry, now: float, report: DrainReport):
        if entry.attempts >= self.max_attempts:
            entry.failed_at = now
            self.store.fail_retry_entry(entry)
            self._give_up(entry)
            report.permanently_failed.append(entry.id)
            return

        try:
            self.target.write(entry.record)
        except SyncError as e:
            entry.attempts += 1
            entry.last_error = str(e)
            entry.next_attempt_at = now + self.backoff(entry.attempts)
            self.store.update_retry_entry(entry)
            logger.warning(
                f"Backup retry {entry.id} failed (attempt {entry.attempts}/{self.max_attempts}): {e}"
            )
            report.retried.append(entry.id)
            return

        self.store.delete_retry_entry(entry.id)
        logger.info(f"Backup retry {entry.id} succeeded after {entry.attempts + 1} attempts")
        report.succeeded.append(entry.id)

    def _give_up(self, entry: RetryEntry):
        logger.error(
            f"Backup of record {entry.record.get('id', entry.id)} failed permanently "
            f"after {entry.attempts} retries: {entry.last_error}"
        )
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.error(f"Permanent failure listener failed: {e}", exc_info=True)

    def start(self, interval: float = 5):
        """Drain every ``interval`` seconds on a background thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self.running = True
        self._thread = threading.Thread(
            target=self._run, args=(interval,), name="backup-retry", daemon=True
        )
        self._thread.start()
        logger.info(f"Backup retry drainer started (every {interval}s)")

    def _run(self, interval: float):
        while not self._stop.wait(interval):
            try:
                self.drain()
            except Exception as e:
                logger.error(f"Error in backup retry loop: {e}", exc_info=True)

    def stop(self, timeout: Optional[float] = None):
        self.running = False
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None


class BackupSync:
    """Write-behind backup of confirmed records."""

    def __init__(self, target: SyncTarget, retry_queue: RetrySyncQueue):
        self.target = target
        self.retry_queue = retry_queue
        self.protected = False

    def initialize(self) -> bool:
        """Prepare the target; failing to protect it is logged, not raised."""
        self.protected = self.target.protect()
        if not self.protected:
            logger.warning("Backup target is not protected against manual edits")
        return self.protected

    def sync(self, record: dict[str, Any]) -> bool:
        """Write a record, queueing a retry if the write fails.

        Returns:
            True if the record was written now
        """
        try:
            self.target.write(record)
        except SyncError as e:
            logger.warning(f"Backup of record {record.get('id')} failed, will retry: {e}")
            self.retry_queue.push(record, str(e))
            return False

        logger.info(f"Backed up record {record.get('id')}")
        return True
