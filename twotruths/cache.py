"""
In-memory TTL cache used for short-lived server-side state such as admin
bearer sessions.
"""

import time
from typing import Any, Optional, Dict
import threading
from dataclasses import dataclass


@dataclass
class CacheEntry:
    """A single cache entry with value and expiration"""
    value: Any
    expires_at: float
    created_at: float


class MemoryCache:
    """Thread-safe in-memory cache with TTL support"""

    def __init__(self, clock=time.time):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'evictions': 0
        }

    def get(self, key: str) -> Optional[Any]:
        """Get a value from cache, return None if not found or expired"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None

            if self._clock() > entry.expires_at:
                del self._cache[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                return None

            self._stats['hits'] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int = 3600) -> None:
        with self._lock:
            now = self._clock()
            self._cache[key] = CacheEntry(
                value=value,
                expires_at=now + ttl_seconds,
                created_at=now
            )
            self._stats['sets'] += 1

    def delete(self, key: str) -> bool:
        """Delete a key from cache, return True if existed"""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    def clear(self) -> None:
        with self._lock:
            evicted = len(self._cache)
            self._cache.clear()
            self._stats['evictions'] += evicted

    def cleanup_expired(self) -> int:
        """Remove all expired entries, return count of removed entries"""
        with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._cache.items()
                if now > entry.expires_at
            ]

            for key in expired_keys:
                del self._cache[key]

            self._stats['evictions'] += len(expired_keys)
            return len(expired_keys)

    def count_prefix(self, prefix: str) -> int:
        """Number of live (unexpired) entries whose key starts with prefix"""
        with self._lock:
            now = self._clock()
            return sum(
                1 for key, entry in self._cache.items()
                if key.startswith(prefix) and now <= entry.expires_at
            )

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total_requests = self._stats['hits'] + self._stats['misses']
            hit_rate = (self._stats['hits'] / total_requests * 100) if total_requests > 0 else 0

            return {
                **self._stats,
                'total_requests': total_requests,
                'hit_rate_percent': round(hit_rate, 2),
                'cache_size': len(self._cache),
            }


ADMIN_SESSION_PREFIX = "admin_session:"


def cache_admin_session(cache: MemoryCache, token: str, data: dict, ttl_seconds: int) -> None:
    cache.set(f"{ADMIN_SESSION_PREFIX}{token}", data, ttl_seconds)


def get_admin_session(cache: MemoryCache, token: str) -> Optional[dict]:
    if not token:
        return None
    return cache.get(f"{ADMIN_SESSION_PREFIX}{token}")


def drop_admin_session(cache: MemoryCache, token: str) -> bool:
    if not token:
        return False
    return cache.delete(f"{ADMIN_SESSION_PREFIX}{token}")


def count_admin_sessions(cache: MemoryCache) -> int:
    return cache.count_prefix(ADMIN_SESSION_PREFIX)
