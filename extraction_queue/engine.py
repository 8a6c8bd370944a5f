"""The extraction engine: one instance per process, explicit lifecycle."""

import logging
from typing import Any, Callable, Iterable, Optional

import httpx

from .config import EngineConfig
from .errors import InvalidTransition, QueueError, SyncFailureNotFound
from .models import ProviderStatus, QueueStats, RawInput, SyncStatus
from .processor import BackgroundProcessor
from .providers import LocalModel, ProviderConfig, ProviderSettings
from .queue_store import Listener, QueueStore
from .retry_sync import BackupSync, HttpSyncTarget, RetrySyncQueue, SyncTarget
from .storage import DurableStore, QueueItem

logger = logging.getLogger(__name__)


class ExtractionEngine:
    """Wires the durable store, queue, processor and backup sync together.

    Nothing runs until ``init()``; ``shutdown()`` stops the workers and
    releases clients. Tests can build as many engines as they like.

    Args:
        config: Engine settings, defaults to EngineConfig()
        local_model: On-device model for the local provider
        sync_target: Backup target; built from ``config.backup_url`` when omitted
        transport: httpx transport for the remote provider
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        local_model: Optional[LocalModel] = None,
        sync_target: Optional[SyncTarget] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config or EngineConfig()
        self.store = DurableStore(self.config.db_path)
        self.queue = QueueStore(self.store)
        self.providers = ProviderSettings(
            self.store,
            local_model=local_model,
            timeout=self.config.extraction_timeout,
            remote_model=self.config.remote_model,
            remote_base_url=self.config.remote_base_url,
            transport=transport,
        )
        self.processor = BackgroundProcessor(
            self.queue, self.providers, poll_interval=self.config.poll_interval
        )

        if sync_target is None and self.config.backup_url:
            sync_target = HttpSyncTarget(self.config.backup_url, token=self.config.backup_token)
        self.sync_target = sync_target
        self.retry_queue: Optional[RetrySyncQueue] = None
        self.backup: Optional[BackupSync] = None
        if sync_target is not None:
            self.retry_queue = RetrySyncQueue(
                self.store,
                sync_target,
                base_delay=self.config.retry_base_delay,
                max_delay=self.config.retry_max_delay,
                max_attempts=self.config.retry_max_attempts,
            )
            self.backup = BackupSync(sync_target, self.retry_queue)

        self.initialized = False

    def init(self, start_workers: bool = True):
        """Load persisted state and start the workers.

        Starting the processor runs the recovery pass first.

        Args:
            start_workers: Start the processor and retry threads. Pass False
                for client-only use (another process owns the workers) or to
                drive processing by hand.
        """
        if self.initialized:
            return

        self.queue.load()
        self.providers.load()
        if start_workers:
            self.processor.start()

        if self.backup is not None:
            self.backup.initialize()
            if start_workers:
                self.retry_queue.start(self.config.drain_interval)

        self.initialized = True
        logger.info(f"Extraction engine ready ({self.get_counts().total} items queued)")

    def shutdown(self, timeout: Optional[float] = 10):
        """Stop workers and release resources; safe to call twice."""
        if not self.initialized:
            return
        self.processor.stop(timeout)
        if self.retry_queue is not None:
            self.retry_queue.stop(timeout)
        self.providers.close()
        if self.sync_target is not None:
            self.sync_target.close()
        self.initialized = False
        logger.info("Extraction engine shut down")

    def _require_init(self):
        if not self.initialized:
            raise QueueError("Extraction engine is not initialized; call init() first")

    # Queue API

    def enqueue(self, raw_inputs: Iterable[RawInput]) -> list[str]:
        """Queue files for extraction; returns without waiting for processing."""
        self._require_init()
        return self.queue.enqueue_many(raw_inputs)

    def list_queue(self, status: Optional[str] = None) -> list[QueueItem]:
        self._require_init()
        return self.queue.list_items(status=status)

    def get_counts(self) -> QueueStats:
        return QueueStats(**self.queue.counts())

    def get_item(self, item_id: str) -> QueueItem:
        self._require_init()
        return self.queue.get_item(item_id)

    def remove(self, item_id: str):
        self._require_init()
        self.queue.remove(item_id)

    def clear_completed(self) -> int:
        self._require_init()
        return self.queue.clear_completed()

    def clear_all(self) -> int:
        self._require_init()
        return self.queue.clear_all()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.queue.subscribe(listener)

    def confirm(self, item_id: str, record: Optional[dict[str, Any]] = None) -> Optional[bool]:
        """Accept a completed item: back its record up, then drop it from the queue.

        Args:
            item_id: ID of a completed item
            record: Reviewed record; defaults to the extracted result

        Returns:
            True if backed up now, False if a backup retry was queued,
            None when no backup target is configured
        """
        self._require_init()
        item = self.queue.get_item(item_id)
        if item.status != "completed":
            raise InvalidTransition(item_id, item.status, "confirmed")

        record = dict(record if record is not None else item.result)
        record.setdefault("id", item.id)
        record.setdefault("file_name", item.file_name)

        synced = self.backup.sync(record) if self.backup is not None else None
        self.queue.remove(item_id)
        return synced

    # Providers

    def set_provider(self, use_remote: bool, credential: Optional[str] = None) -> ProviderConfig:
        return self.providers.set_provider(use_remote, credential)

    def provider_status(self) -> ProviderStatus:
        return self.providers.status()

    # Backup sync

    def sync_status(self) -> SyncStatus:
        if self.retry_queue is None:
            return SyncStatus(waiting=0, entries=[], permanent_failures=[])
        entries = self.retry_queue.entries()
        return SyncStatus(
            waiting=len(entries),
            entries=[entry.to_dict() for entry in entries],
            permanent_failures=[entry.to_dict() for entry in self.retry_queue.permanent_failures],
        )

    def acknowledge_sync_failure(self, failure_id: int):
        """Drop one permanent backup failure after it has been handled.

        Raises:
            SyncFailureNotFound: If there is no such failure
        """
        if self.retry_queue is None or not self.retry_queue.acknowledge(failure_id):
            raise SyncFailureNotFound(failure_id)

    def clear_sync_failures(self) -> int:
        if self.retry_queue is None:
            return 0
        return self.retry_queue.clear_failures()
