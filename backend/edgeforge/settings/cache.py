"""
Explicit cache for resolved settings.

No module-level state: the cache is an object passed to whoever resolves
settings. Writers MUST call invalidate(site_id) after any settings mutation.
"""

import logging
import threading
import time
from typing import Callable, Dict, Hashable, Optional, Tuple

from .schema import OptimizationSettings

logger = logging.getLogger(__name__)


class SettingsCache:
    """
    TTL cache of resolved settings keyed by (site_id, scope key).

    A ttl of 0 disables caching (every get misses).
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, Hashable], Tuple[float, OptimizationSettings]] = {}

    def get(self, site_id: str, key: Hashable = "*") -> Optional[OptimizationSettings]:
        with self._lock:
            entry = self._entries.get((site_id, key))
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[(site_id, key)]
                return None
            return value

    def put(self, site_id: str, value: OptimizationSettings, key: Hashable = "*") -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[(site_id, key)] = (self._clock() + self.ttl_seconds, value)

    def invalidate(self, site_id: str) -> int:
        """
        Drop every cached entry for a site.

        Returns:
            Number of entries removed
        """
        with self._lock:
            keys = [k for k in self._entries if k[0] == site_id]
            for k in keys:
                del self._entries[k]
        if keys:
            logger.debug(f"[SettingsCache] Invalidated {len(keys)} entries for site {site_id}")
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
