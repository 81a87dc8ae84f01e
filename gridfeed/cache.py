"""
GridFeed — Live response cache
Short-lived, per-poller store of genuinely live responses.

Expiry is lazy: an entry older than the TTL is simply treated as absent on
read and overwritten by the next live response for the same key.  There is
no background sweep.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from gridfeed.models import DataResponse, DataSource


@dataclass(frozen=True)
class CacheEntry:
    key:       str
    data:      DataResponse
    stored_at: float  # monotonic seconds


class ResponseCache:
    """
    TTL cache keyed by ``cache_key(data_type, params)``.

    Parameters
    ----------
    ttl:
        Seconds an entry stays fresh.  Valid while ``now - stored_at < ttl``.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the fresh entry for *key*, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        age = self._clock() - entry.stored_at
        if age >= self.ttl:
            logger.debug("Cache expired for {} (age {:.1f}s >= ttl {:.1f}s).", key, age, self.ttl)
            return None
        return entry

    def put(self, key: str, response: DataResponse) -> CacheEntry:
        """Store a live response.  Anything else is rejected."""
        if response.source is not DataSource.LIVE:
            raise ValueError(
                f"Only live responses may be cached, got source={response.source.value!r}"
            )
        entry = CacheEntry(key=key, data=response, stored_at=self._clock())
        self._entries[key] = entry
        return entry

    def entries(self) -> list[CacheEntry]:
        """All stored entries, fresh or not."""
        return list(self._entries.values())
