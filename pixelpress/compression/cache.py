"""In-memory, content-addressed cache of compression outputs.

Entries are keyed by a SHA-256 digest of the input bytes plus output format
and mode, expire after a fixed TTL, and live only for the process lifetime.
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple, Union

from .result import CompressionMode, OutputFormat

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class CacheEntry:
    """Cached output with what is needed to rebuild a result.

    Attributes:
        buffer: Encoded output bytes
        timestamp: Insertion time (cache clock)
        quality: Quality the output was encoded at
        scale_factor: Downscale applied, None when unscaled
        dimensions: Output dimensions (width, height)
    """
    buffer: bytes = field(repr=False)
    timestamp: float
    quality: int = 0
    scale_factor: Optional[float] = None
    dimensions: Tuple[int, int] = (0, 0)


def _value(item: Union[str, OutputFormat, CompressionMode]) -> str:
    return getattr(item, "value", item)


class CompressionCache:
    """Thread-safe TTL cache with hit/miss accounting."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize cache.

        Args:
            ttl_seconds: Age after which entries are stale
            clock: Time source in seconds
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def generate_key(
        data: bytes,
        output_format: Union[str, OutputFormat],
        mode: Union[str, CompressionMode],
        target_bytes: Optional[int] = None,
    ) -> str:
        """Build a cache key from input bytes and job settings.

        Identical bytes under a different format, mode or target never
        share a key.
        """
        digest = hashlib.sha256(data).hexdigest()
        key = f"{digest}-{_value(output_format)}-{_value(mode)}"
        if target_bytes is not None:
            key = f"{key}-{target_bytes}"
        return key

    def _is_valid(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp < self.ttl_seconds

    def lookup(self, key: str) -> Optional[CacheEntry]:
        """Get the entry for key if present and unexpired.

        An expired entry is evicted and counted as a miss.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if not self._is_valid(entry, self._clock()):
                del self._entries[key]
                self._misses += 1
                logger.debug(f"Cache entry expired: {key[:16]}")
                return None

            self._hits += 1
            return entry

    def get(self, key: str) -> Optional[bytes]:
        """Get the cached buffer for key if present and unexpired."""
        entry = self.lookup(key)
        return entry.buffer if entry is not None else None

    def set(
        self,
        key: str,
        buffer: bytes,
        quality: int = 0,
        scale_factor: Optional[float] = None,
        dimensions: Tuple[int, int] = (0, 0),
    ) -> None:
        """Store buffer under key, overwriting any existing entry."""
        entry = CacheEntry(
            buffer=buffer,
            timestamp=self._clock(),
            quality=quality,
            scale_factor=scale_factor,
            dimensions=dimensions,
        )
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> None:
        """Remove key if present."""
        with self._lock:
            self._entries.pop(key, None)

    def cleanup(self) -> int:
        """Remove every expired entry.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._entries.items()
                if not self._is_valid(entry, now)
            ]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.debug(f"Cache cleanup: removed {len(expired)} expired entries")
        return len(expired)

    def get_stats(self) -> dict:
        """Get size and hit/miss counters."""
        with self._lock:
            total = self._hits + self._misses
            return {
                'size': len(self._entries),
                'hit_count': self._hits,
                'miss_count': self._misses,
                'hit_rate': self._hits / total if total > 0 else 0.0,
            }

    def clear(self) -> None:
        """Drop all entries and reset counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
