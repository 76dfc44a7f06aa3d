"""
In-memory audio payload cache with a fixed time-to-live
"""

import logging
import time
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class ResultCache:
    """
    Maps media id -> audio bytes, each entry expiring `ttl` seconds after insertion.

    Expiry is not sliding: reads never extend an entry. Expired entries are
    dropped lazily on get() and in bulk by purge_expired(). All access happens
    on the event loop thread, so no lock is taken.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._data: Dict[str, Tuple[float, bytes]] = {}

    def get(self, key: str) -> Optional[bytes]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return payload

    def set(self, key: str, payload: bytes) -> None:
        self._data[key] = (self._clock() + self.ttl, bytes(payload))

    def clear(self) -> int:
        """Drop every entry. Returns the number removed."""
        removed = len(self._data)
        self._data.clear()
        if removed:
            logger.info(f"🧹 Cleared {removed} cached audio entries")
        return removed

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        if expired:
            logger.info(f"Expired {len(expired)} cached audio entries")
        return len(expired)

    def total_bytes(self) -> int:
        return sum(len(payload) for _, payload in self._data.values())

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
