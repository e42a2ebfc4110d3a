"""
config.py - Tunable constants for the offline sync engine

Operator-set values only. Defaults mirror what the field clients shipped
with; every field can be overridden from the environment.
"""

import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

BASE_DIR = Path(__file__).parent.parent.parent.parent
DATA_DIR = BASE_DIR / "data"
DB_PATH = DATA_DIR / "local.db"

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


@dataclass
class SyncConfig:
    """Engine tunables. All durations are in milliseconds."""

    # Retry / backoff
    max_retries: int = 3
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 60 * 1000
    inline_retry_max_ms: int = 1000

    # Drain passes
    periodic_sync_interval_ms: int = 5 * MINUTE_MS
    batch_size: int = 50
    max_pass_wait_ms: int = 5 * MINUTE_MS
    request_timeout_ms: int = 30 * 1000

    # Cache
    cache_default_ttl_ms: int = 5 * MINUTE_MS
    static_cache_ttl_ms: int = 7 * DAY_MS
    cache_sweep_interval_ms: int = HOUR_MS

    # Queue
    max_queue_size: int = 1000
    urgent_flush_age_ms: int = 5 * MINUTE_MS

    # Connectivity
    heartbeat_interval_ms: int = 30 * 1000
    max_failures_before_offline: int = 3

    # Remote service
    endpoints: Dict[str, str] = field(default_factory=dict)
    health_endpoint: Optional[str] = None
    beacon_url: Optional[str] = None
    source: str = "mobile-app"

    db_path: str = str(DB_PATH)

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_backoff_ms < 0 or self.max_backoff_ms < self.base_backoff_ms:
            raise ValueError("backoff bounds must satisfy 0 <= base_backoff_ms <= max_backoff_ms")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.request_timeout_ms <= 0:
            raise ValueError("request_timeout_ms must be positive")

    @property
    def request_timeout(self) -> float:
        """Per-request timeout in seconds."""
        return self.request_timeout_ms / 1000

    def backoff_ms(self, retry_count: int) -> int:
        """Delay before the next attempt of a record that has failed retry_count times."""
        return min(self.base_backoff_ms * (2 ** retry_count), self.max_backoff_ms)

    def endpoint_url(self, name: str) -> Optional[str]:
        return self.endpoints.get(name)

    @classmethod
    def from_env(cls, prefix: str = "OFFSYNC_") -> "SyncConfig":
        """
        Build a config from environment variables.

        Every int field maps to ``<prefix><FIELD_NAME>`` (e.g. OFFSYNC_MAX_RETRIES).
        OFFSYNC_ENDPOINTS holds a JSON object of endpoint name -> URL.
        """
        kwargs = {}
        for name, default in cls.__dataclass_fields__.items():
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is None:
                continue
            if name == "endpoints":
                try:
                    endpoints = json.loads(raw)
                except json.JSONDecodeError as e:
                    raise ValueError(f"{prefix}ENDPOINTS is not valid JSON: {e}") from e
                if not isinstance(endpoints, dict):
                    raise ValueError(f"{prefix}ENDPOINTS must be a JSON object")
                kwargs[name] = endpoints
            elif default.type in (int, "int"):
                try:
                    kwargs[name] = int(raw)
                except ValueError as e:
                    raise ValueError(f"{prefix}{name.upper()} must be an integer, got {raw!r}") from e
            else:
                kwargs[name] = raw
        return cls(**kwargs)


def now_ms() -> float:
    """Wall-clock time in milliseconds since the epoch."""
    return time.time() * 1000
