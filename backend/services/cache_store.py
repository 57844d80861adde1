"""
Cache Store - TTL key/value cache backed by Firebase Realtime Database

Entries live under `api_cache/{key}` as:
    {'value': <payload>, 'expires_at': <epoch seconds>, 'created_at': <epoch seconds>}

Expired entries are removed lazily on read and by a periodic sweep.
Every storage failure is logged and treated as a miss, so a broken cache
only costs performance.

Firebase rules should index the sweep field:
    "api_cache": {".indexOn": ["expires_at"]}
"""
import hashlib
import logging
import re
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

CACHE_ROOT = 'api_cache'

_UNSAFE_KEY_CHARS = re.compile(r'[^A-Za-z0-9_-]')


def build_cache_key(operation: str, scope: str, subject: str) -> str:
    """
    Build a deterministic, Firebase-safe cache key.

    The subject (free text, URL, serialized filters) is hashed so keys never
    contain characters Firebase rejects ('.', '#', '$', '[', ']', '/').

    Args:
        operation: Operation name (e.g., 'geocode')
        scope: Provider scope or other partition (e.g., 'auto', 'google')
        subject: Input the cached result was computed from

    Returns:
        Key such as "geocode_auto_1f3a...".

    Example:
        >>> build_cache_key('geocode', 'osm', 'Manhattan, NYC')[:12]
        'geocode_osm_'
    """
    digest = hashlib.sha256(subject.encode('utf-8')).hexdigest()[:40]
    safe_scope = _UNSAFE_KEY_CHARS.sub('_', scope or 'default')
    return f"{operation}_{safe_scope}_{digest}"


def coordinate_cache_key(operation: str, latitude: float, longitude: float) -> str:
    """
    Cache key for a coordinate pair (4 decimal precision = ~11m).

    Periods become underscores and minus signs become 'n' for Firebase
    path compatibility.
    """
    return f"{operation}_{latitude:.4f}_{longitude:.4f}".replace('.', '_').replace('-', 'n')


class CacheStore:
    """
    Durable TTL cache with lazy expiry.

    Usage:
        cache = CacheStore(db)
        cache.set('geocode_auto_abc', {'latitude': 40.7}, ttl_seconds=86400)
        cache.get('geocode_auto_abc')  # {'latitude': 40.7} until it expires
    """

    def __init__(self, db_client, clock: Callable[[], float] = time.time, root: str = CACHE_ROOT):
        """
        Initialize cache store

        Args:
            db_client: Object exposing reference(path) (firebase_admin.db)
            clock: Source of current epoch seconds
            root: Database path holding the cache entries
        """
        self.db = db_client
        self.clock = clock
        self.root = root

    def _ref(self, key: Optional[str] = None):
        path = f'{self.root}/{key}' if key else self.root
        return self.db.reference(path)

    @staticmethod
    def _is_expired(entry: Any, now: float) -> bool:
        if not isinstance(entry, dict):
            return True
        try:
            return now >= float(entry.get('expires_at', 0))
        except (TypeError, ValueError):
            return True

    def get(self, key: str) -> Optional[Any]:
        """
        Read a cached value.

        Args:
            key: Cache key (must be non-empty)

        Returns:
            Cached value, or None on miss, expiry, or storage error
        """
        if not key:
            return None

        try:
            entry = self._ref(key).get()
        except Exception as e:
            logger.error(f"Cache read error for {key}: {e}")
            return None

        if entry is None:
            return None

        if self._is_expired(entry, self.clock()):
            logger.debug(f"Cache EXPIRED: {key}")
            self._delete_if_expired(key)
            return None

        logger.debug(f"Cache HIT: {key}")
        return entry.get('value')

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """
        Store a value, replacing any existing entry for the key.

        Args:
            key: Cache key
            value: JSON-serializable payload
            ttl_seconds: Seconds until the entry expires
        """
        if not key:
            return

        now = self.clock()
        try:
            self._ref(key).set({
                'value': value,
                'expires_at': now + ttl_seconds,
                'created_at': now
            })
            logger.debug(f"Cache SET: {key} (ttl={ttl_seconds}s)")
        except Exception as e:
            logger.error(f"Cache write error for {key}: {e}")

    def delete(self, key: str) -> None:
        """Remove an entry regardless of its expiry."""
        if not key:
            return
        try:
            self._ref(key).delete()
        except Exception as e:
            logger.error(f"Cache delete error for {key}: {e}")

    def cleanup(self) -> int:
        """
        Sweep every entry whose expires_at has passed.

        Expired keys are found with an expires_at query and removed with one
        multi-path update (a null per key).

        Returns:
            Number of entries removed
        """
        now = self.clock()
        try:
            expired = self._ref().order_by_child('expires_at').end_at(now).get() or {}
        except Exception as e:
            logger.error(f"Cache cleanup query failed: {e}")
            return 0

        stale = [key for key, entry in expired.items() if self._is_expired(entry, now)]
        if not stale:
            return 0

        try:
            self._ref().update({key: None for key in stale})
        except Exception as e:
            logger.error(f"Cache cleanup delete failed: {e}")
            return 0

        logger.info(f"Cache cleanup removed {len(stale)} expired entries")
        return len(stale)

    def clear(self) -> None:
        """Drop the whole cache."""
        try:
            self._ref().delete()
            logger.info("Cleared all cache entries")
        except Exception as e:
            logger.error(f"Error clearing cache: {e}")

    def stats(self) -> Dict[str, int]:
        """
        Count cached entries.

        Returns:
            Dict with 'entries' and 'expired' counts (zeros on storage error)
        """
        try:
            entries = self._ref().get() or {}
        except Exception as e:
            logger.error(f"Cache stats error: {e}")
            return {'entries': 0, 'expired': 0}

        now = self.clock()
        expired = sum(1 for entry in entries.values() if self._is_expired(entry, now))
        return {'entries': len(entries), 'expired': expired}

    def _delete_if_expired(self, key: str) -> bool:
        """Re-read an entry and delete it if still expired. Returns True if removed."""
        try:
            ref = self._ref(key)
            current = ref.get()
            if current is None or not self._is_expired(current, self.clock()):
                return False
            # A set() landing between the re-read and the delete is lost; the next get misses
            ref.delete()
        except Exception as e:
            logger.error(f"Cache expiry delete failed for {key}: {e}")
            return False

        logger.debug(f"Cache DELETE expired: {key}")
        return True
