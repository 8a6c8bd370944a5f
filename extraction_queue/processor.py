"""Background processor that extracts queued items one at a time."""

import logging
import threading
from typing import Optional

from .errors import ExtractionError, InvalidTransition, ItemNotFound, StorageError
from .providers import ProviderSettings
from .queue_store import QueueStore

logger = logging.getLogger(__name__)


class Outcome:
    """Result of one extraction, waiting to be written to the queue."""

    def __init__(
        self,
        item_id: str,
        result: Optional[dict] = None,
        error: Optional[str] = None,
        kind: Optional[str] = None,
    ):
        self.item_id = item_id
        self.result = result
        self.error = error
        self.kind = kind

    @property
    def succeeded(self) -> bool:
        return self.result is not None


class BackgroundProcessor:
    """Single-flight worker over a QueueStore.

    Exactly one item is extracted at a time. New enqueues wake the worker
    early; otherwise it polls every ``poll_interval`` seconds.
    """

    def __init__(
        self,
        queue: QueueStore,
        providers: ProviderSettings,
        poll_interval: float = 5,
    ):
        self.queue = queue
        self.providers = providers
        self.poll_interval = poll_interval
        self.running = False
        self._wakeup = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unresolved: Optional[Outcome] = None
        self._tick_lock = threading.Lock()
        self._unsubscribe = None

    def recover(self) -> list[str]:
        """Recovery pass: put items interrupted mid-extraction back to pending."""
        recovered = self.queue.recover_interrupted()
        if recovered:
            logger.warning(f"Recovery pass returned {len(recovered)} items to pending")
        return recovered

    def start(self):
        """Run the recovery pass, then start the worker thread."""
        if self._thread and self._thread.is_alive():
            return

        self.recover()
        self._unsubscribe = self.queue.subscribe(self._on_queue_event)
        self.running = True
        self._thread = threading.Thread(
            target=self._loop, name="extraction-processor", daemon=True
        )
        self._thread.start()
        logger.info(f"Processor started (poll interval {self.poll_interval}s)")

    def stop(self, timeout: Optional[float] = None):
        """Stop the worker; an in-flight extraction finishes first."""
        self.running = False
        self._wakeup.set()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Processor stopped")

    def notify(self):
        """Wake the worker before the poll interval elapses."""
        self._wakeup.set()

    def _on_queue_event(self, event: str, item_id: Optional[str]):
        if event == "enqueued":
            self.notify()

    def run(self):
        """Run the worker loop in the calling thread until stopped."""
        self.running = True
        self._loop()

    def _loop(self):
        while self.running:
            self._wakeup.clear()
            try:
                worked = self.process_next()
            except Exception as e:
                logger.error(f"Processor tick failed: {e}", exc_info=True)
                worked = False

            if not worked and self.running:
                self._wakeup.wait(self.poll_interval)

    def process_next(self) -> bool:
        """Extract the next pending item.

        Returns:
            True if an item was taken through extraction
        """
        with self._tick_lock:
            if self._unresolved is not None:
                if not self._resolve(self._unresolved):
                    return False

            # Other processes enqueue and switch providers through the store
            try:
                self.queue.refresh()
                self.providers.load()
            except StorageError as e:
                logger.error(f"Store unavailable while polling: {e}")
                return False

            self.providers.release_retired()
            provider = self.providers.active()
            if not provider.is_available():
                logger.debug(f"The {provider.name} provider is unavailable; waiting")
                return False

            item = self.queue.dequeue_next()
            if item is None:
                return False

            try:
                self.queue.mark_processing(item.id)
            except (ItemNotFound, InvalidTransition) as e:
                logger.error(f"Could not claim item {item.id}: {e}")
                return False
            except StorageError as e:
                logger.error(f"Store unavailable while claiming {item.id}: {e}")
                return False

            logger.info(f"Extracting {item.file_name} ({item.id}) with the {provider.name} provider")
            try:
                record = provider.extract(item.payload, item.mime_type)
                outcome = Outcome(item.id, result=record.model_dump(mode="json"))
            except ExtractionError as e:
                logger.warning(f"Extraction of {item.id} failed ({e.kind.value}): {e.message}")
                outcome = Outcome(item.id, error=e.message, kind=e.kind.value)
            except Exception as e:
                # A claimed item must always resolve or the queue stalls behind it
                logger.error(f"Unexpected failure extracting {item.id}: {e}", exc_info=True)
                outcome = Outcome(item.id, error=f"Unexpected extraction failure: {e}")

            self._resolve(outcome)
            return True

    def _resolve(self, outcome: Outcome) -> bool:
        """Write an extraction outcome back to the queue.

        Returns:
            False if the store was unavailable and the outcome is kept for
            the next tick
        """
        try:
            if outcome.succeeded:
                self.queue.mark_completed(outcome.item_id, outcome.result)
                logger.info(f"Completed item {outcome.item_id}")
            else:
                self.queue.mark_failed(outcome.item_id, outcome.error, outcome.kind)
        except ItemNotFound:
            logger.info(f"Item {outcome.item_id} was removed during extraction; result discarded")
        except InvalidTransition as e:
            logger.error(f"Dropping outcome for {outcome.item_id}: {e}")
        except StorageError as e:
            logger.error(f"Store unavailable while saving {outcome.item_id}, will retry: {e}")
            self._unresolved = outcome
            return False

        self._unresolved = None
        return True
