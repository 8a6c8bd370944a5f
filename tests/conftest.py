"""Shared fixtures and fakes for the extraction queue tests."""

import tempfile
import threading
import time
from pathlib import Path

import pytest

from extraction_queue.config import EngineConfig
from extraction_queue.engine import ExtractionEngine
from extraction_queue.errors import StorageError, SyncError
from extraction_queue.retry_sync import SyncTarget
from extraction_queue.storage import DurableStore

INVOICE_RESPONSE = """Here is the extracted invoice:
```json
{
  "merchantName": "Sari-Sari Store",
  "invoiceNumber": "INV-001",
  "date": "2024-03-15",
  "items": [
    {"name": "Rice", "quantity": 2, "unitPrice": 50, "totalPrice": 100},
    {"name": "Eggs", "quantity": 1, "unitPrice": 80}
  ],
  "total": 180,
  "currency": "PHP",
  "confidence": 0.9
}
```"""


class FakeLocalModel:
    """Stands in for an on-device model.

    Responses are keyed by payload; a response that is an exception is
    raised instead of returned.
    """

    def __init__(self, responses=None, status="available", delay=0.0, on_prompt=None):
        self.responses = responses or {}
        self.status = status
        self.delay = delay
        self.on_prompt = on_prompt
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def availability(self):
        return self.status

    def prompt(self, payload, mime_type, instruction):
        with self._lock:
            self.calls.append(payload)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.on_prompt:
                self.on_prompt(payload)
            if self.delay:
                time.sleep(self.delay)
            response = self.responses.get(payload, INVOICE_RESPONSE)
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            with self._lock:
                self.active -= 1


class FakeSyncTarget(SyncTarget):
    """Backup target that records writes and fails on demand."""

    def __init__(self, failing=False, fail_ids=(), protect_ok=True):
        self.failing = failing
        self.fail_ids = set(fail_ids)
        self.protect_ok = protect_ok
        self.written = []
        self.attempts = 0

    def write(self, record):
        self.attempts += 1
        if self.failing or record.get("id") in self.fail_ids:
            raise SyncError("backup target offline")
        self.written.append(record)

    def protect(self):
        return self.protect_ok


class FlakyStore(DurableStore):
    """DurableStore whose item writes can be switched to fail."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.fail_puts = False
        self.fail_names = set()

    def put(self, item):
        if self.fail_puts or item.file_name in self.fail_names:
            raise StorageError("disk full")
        super().put(item)


def wait_for(condition, timeout=5.0, interval=0.02):
    """Poll until condition() is true or the deadline passes."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_queue.db"
        yield str(db_path)


@pytest.fixture
def store(temp_db):
    return DurableStore(db_path=temp_db)


@pytest.fixture
def model():
    return FakeLocalModel()


@pytest.fixture
def config(temp_db):
    return EngineConfig(db_path=temp_db, poll_interval=0.05, extraction_timeout=2)


@pytest.fixture
def engine(config, model):
    """An initialized engine whose processing is driven by the test."""
    engine = ExtractionEngine(config, local_model=model)
    engine.init(start_workers=False)
    yield engine
    engine.shutdown()
