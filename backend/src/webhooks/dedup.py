"""Webhook deduplication within a retention window.

The dedup key is the provider's event id when the payload carries one,
otherwise a hash of provider, raw body and a received-at time bucket.
claim() is atomic: exactly one of two concurrent deliveries wins.
"""

import hashlib
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

from redis import Redis


def compute_dedup_key(
    provider_type: str,
    event_id: Optional[str],
    raw_payload: bytes,
    received_at: datetime,
    bucket_seconds: int = 60,
) -> str:
    if event_id:
        return f"{provider_type}:id:{event_id}"
    bucket = int(received_at.timestamp()) // max(bucket_seconds, 1)
    digest = hashlib.sha256()
    digest.update(provider_type.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(raw_payload)
    digest.update(b"\x00")
    digest.update(str(bucket).encode("ascii"))
    return f"{provider_type}:hash:{digest.hexdigest()}"


class DedupStore(ABC):
    @abstractmethod
    def claim(self, key: str) -> bool:
        """Mark key as processed. Returns False if it already was within the window."""
        pass

    @abstractmethod
    def release(self, key: str) -> None:
        """Forget a claim so a failed delivery can be processed again."""
        pass


class InMemoryDedupStore(DedupStore):
    def __init__(self, window_seconds: int = 86400, monotonic: Callable[[], float] = time.monotonic):
        self._window = window_seconds
        self._monotonic = monotonic
        self._expiry: dict[str, float] = {}
        self._lock = threading.Lock()

    def claim(self, key: str) -> bool:
        now = self._monotonic()
        with self._lock:
            expired = [k for k, expires in self._expiry.items() if expires <= now]
            for k in expired:
                del self._expiry[k]
            if key in self._expiry:
                return False
            self._expiry[key] = now + self._window
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._expiry.pop(key, None)


class RedisDedupStore(DedupStore):
    """SET NX EX per key; Redis expires claims after the window."""

    def __init__(self, client: Redis, window_seconds: int = 86400, prefix: str = "integration:webhook:"):
        self._client = client
        self._window = window_seconds
        self._prefix = prefix

    def claim(self, key: str) -> bool:
        return bool(self._client.set(f"{self._prefix}{key}", "1", nx=True, ex=self._window))

    def release(self, key: str) -> None:
        self._client.delete(f"{self._prefix}{key}")
