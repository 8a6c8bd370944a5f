"""Exception types for the extraction queue."""

from enum import Enum
from typing import Optional


class QueueError(Exception):
    """Base class for all extraction queue errors."""


class StorageError(QueueError):
    """The durable store is unavailable or holds corrupt data."""


class ItemNotFound(QueueError):
    """No queue item exists with the requested id."""

    def __init__(self, item_id: str):
        super().__init__(f"Queue item {item_id} not found")
        self.item_id = item_id


class InvalidTransition(QueueError):
    """A status change was requested from the wrong source state."""

    def __init__(self, item_id: str, current: str, target: str):
        super().__init__(
            f"Cannot move item {item_id} from '{current}' to '{target}'"
        )
        self.item_id = item_id
        self.current = current
        self.target = target


class PartialEnqueueError(QueueError):
    """Some inputs of a batch were queued and at least one was not.

    Attributes:
        enqueued_ids: Ids of the items that were persisted
        failures: (input name, reason) for every input that was not
    """

    def __init__(self, enqueued_ids: list[str], failures: list[tuple[str, str]]):
        names = ", ".join(name for name, _ in failures)
        super().__init__(
            f"Queued {len(enqueued_ids)} items, {len(failures)} failed: {names}"
        )
        self.enqueued_ids = enqueued_ids
        self.failures = failures


class ProviderConfigError(QueueError):
    """Rejected provider configuration (e.g. remote without a credential)."""


class ExtractionErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    NETWORK = "network"


class ExtractionError(QueueError):
    """Extraction failed; ``kind`` drives the message shown to the user."""

    def __init__(self, kind: ExtractionErrorKind, message: Optional[str] = None):
        self.kind = ExtractionErrorKind(kind)
        self.message = message or _DEFAULT_MESSAGES[self.kind]
        super().__init__(self.message)


_DEFAULT_MESSAGES = {
    ExtractionErrorKind.UNAVAILABLE: "Extraction model is not available",
    ExtractionErrorKind.UNAUTHORIZED: "Missing or rejected model credential",
    ExtractionErrorKind.RATE_LIMITED: "Rate limited by the model provider",
    ExtractionErrorKind.TIMEOUT: "Extraction timed out",
    ExtractionErrorKind.MALFORMED_RESPONSE: "Model returned a malformed response",
    ExtractionErrorKind.NETWORK: "Network error while calling the model",
}


class SyncError(QueueError):
    """A write to the backup target failed; assumed transient."""


class SyncFailureNotFound(QueueError):
    """No permanent backup failure exists with the requested id."""

    def __init__(self, failure_id: int):
        super().__init__(f"Sync failure {failure_id} not found")
        self.failure_id = failure_id
