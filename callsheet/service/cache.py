"""
Bounded, TTL-evicting cache of extraction results.

Owned by whoever builds the engine and injected into it; nothing here is
process-global. Keys combine a hash of the normalized text with a hash of
the resolved options, so the same document extracted with different
settings is cached separately. Only successful results are stored.
"""

import hashlib
import logging
import threading
import time
from typing import Callable, Optional

from cachetools import TTLCache

from ..extract.schemas import ExtractionResult

logger = logging.getLogger(__name__)


class ExtractionCache:
    """Thread-safe TTLCache wrapper keyed by (text, options) fingerprints."""

    def __init__(
        self,
        maxsize: int = 256,
        ttl: float = 3600.0,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_settings(cls, settings) -> Optional["ExtractionCache"]:
        if not settings.enabled:
            return None
        return cls(maxsize=settings.maxsize, ttl=settings.ttl_seconds)

    @staticmethod
    def make_key(text: str, options_fingerprint: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{digest}:{options_fingerprint}"

    def get(self, key: str) -> Optional[ExtractionResult]:
        with self._lock:
            result = self._cache.get(key)
            if result is None:
                self.misses += 1
                return None
            self.hits += 1
        logger.debug(f"Cache hit for {key[:12]}")
        return result

    def put(self, key: str, result: ExtractionResult):
        if not result.success:
            return
        with self._lock:
            self._cache[key] = result

    def clear(self):
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
