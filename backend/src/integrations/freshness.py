"""Monotonic-timestamp guard.

An update to shared entity state is applied only if its source timestamp is
strictly newer than the last one applied for that entity. Sync results and
webhooks check the same keys, so a slow sync cannot overwrite a newer
webhook update.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from redis import Redis

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Compare-and-set in one round trip: SET only if strictly newer.
_CHECK_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and tonumber(current) >= tonumber(ARGV[1]) then
    return 0
end
if tonumber(ARGV[2]) > 0 then
    redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
else
    redis.call('SET', KEYS[1], ARGV[1])
end
return 1
"""


def freshness_key(connection_id: str, scope: str, entity_id: str) -> str:
    return f"{connection_id}:{scope}:{entity_id}"


def _micros(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    delta = ts - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


class FreshnessGuard(ABC):
    @abstractmethod
    def check_and_set(self, key: str, timestamp: datetime) -> bool:
        """Record timestamp for key if strictly newer.

        Returns:
            True if the update should be applied, False if it is stale
        """
        pass


class InMemoryFreshnessGuard(FreshnessGuard):
    def __init__(self):
        self._latest: dict[str, int] = {}
        self._lock = threading.Lock()

    def check_and_set(self, key: str, timestamp: datetime) -> bool:
        value = _micros(timestamp)
        with self._lock:
            current = self._latest.get(key)
            if current is not None and current >= value:
                return False
            self._latest[key] = value
            return True


class RedisFreshnessGuard(FreshnessGuard):
    """Guard shared by all workers, backed by an atomic Lua script."""

    def __init__(self, client: Redis, prefix: str = "integration:freshness:", ttl_seconds: Optional[int] = None):
        self._client = client
        self._prefix = prefix
        self._ttl = ttl_seconds or 0
        self._script = client.register_script(_CHECK_AND_SET_SCRIPT)

    def check_and_set(self, key: str, timestamp: datetime) -> bool:
        result = self._script(keys=[f"{self._prefix}{key}"], args=[_micros(timestamp), self._ttl])
        return int(result) == 1
