"""Environment-variable-driven configuration for the extraction queue."""

import os
from dataclasses import dataclass
from typing import Optional

from .providers import DEFAULT_REMOTE_BASE_URL, DEFAULT_REMOTE_MODEL, DEFAULT_TIMEOUT

ENV_PREFIX = "EXTRACTION_QUEUE_"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    return value if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(_env(name, str(default)))


@dataclass
class EngineConfig:
    db_path: str = "extraction_queue.db"
    poll_interval: float = 5.0
    extraction_timeout: float = DEFAULT_TIMEOUT
    remote_model: str = DEFAULT_REMOTE_MODEL
    remote_base_url: str = DEFAULT_REMOTE_BASE_URL
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    retry_max_attempts: int = 3
    drain_interval: float = 5.0
    backup_url: Optional[str] = None
    backup_token: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from EXTRACTION_QUEUE_* environment variables."""
        return cls(
            db_path=_env("DB_PATH", cls.db_path),
            poll_interval=_env_float("POLL_INTERVAL", cls.poll_interval),
            extraction_timeout=_env_float("EXTRACTION_TIMEOUT", cls.extraction_timeout),
            remote_model=_env("REMOTE_MODEL", cls.remote_model),
            remote_base_url=_env("REMOTE_BASE_URL", cls.remote_base_url),
            retry_base_delay=_env_float("RETRY_BASE_DELAY", cls.retry_base_delay),
            retry_max_delay=_env_float("RETRY_MAX_DELAY", cls.retry_max_delay),
            retry_max_attempts=_env_int("RETRY_MAX_ATTEMPTS", cls.retry_max_attempts),
            drain_interval=_env_float("DRAIN_INTERVAL", cls.drain_interval),
            backup_url=_env("BACKUP_URL"),
            backup_token=_env("BACKUP_TOKEN"),
        )
