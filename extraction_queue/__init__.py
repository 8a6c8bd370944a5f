"""Extraction queue package."""

from .engine import ExtractionEngine
from .config import EngineConfig
from .errors import (
    ExtractionError,
    ExtractionErrorKind,
    InvalidTransition,
    ItemNotFound,
    PartialEnqueueError,
    ProviderConfigError,
    QueueError,
    StorageError,
    SyncError,
)
from .models import ExtractedRecord, QueueStats, RawInput
from .storage import DurableStore, QueueItem, RetryEntry

__all__ = [
    "ExtractionEngine",
    "EngineConfig",
    "ExtractionError",
    "ExtractionErrorKind",
    "InvalidTransition",
    "ItemNotFound",
    "PartialEnqueueError",
    "ProviderConfigError",
    "QueueError",
    "StorageError",
    "SyncError",
    "ExtractedRecord",
    "QueueStats",
    "RawInput",
    "DurableStore",
    "QueueItem",
    "RetryEntry",
]
