"""
Verification Cache

Argon2id verification costs tens of milliseconds and an API key lookup scans
every activated user. The cache maps a presented key to the user it resolved to for a
short time so that repeated tool calls skip the scan.

Entries are keyed by the SHA-256 digest of the key, never the key itself. An entry older
than the TTL is a miss; an entry exactly at the TTL still hits.
"""

from dataclasses import dataclass
import hashlib
import threading
import time
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class CacheEntry:
    user_id: str
    verified_at: float


def cache_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


class VerificationCache:
    def __init__(
        self,
        ttl_seconds: float = 900,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, api_key: str) -> Optional[str]:
        """Return the cached user id for a key, or None on a miss or stale entry."""
        key = cache_key(api_key)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now - entry.verified_at > self._ttl:
                del self._entries[key]
                return None
            return entry.user_id

    def put(self, api_key: str, user_id: str) -> None:
        entry = CacheEntry(user_id=user_id, verified_at=self._clock())
        with self._lock:
            self._entries[cache_key(api_key)] = entry

    def invalidate(self, user_id: str) -> int:
        """Drop every entry that resolves to ``user_id``. Returns the number removed."""
        with self._lock:
            stale = [k for k, v in self._entries.items() if v.user_id == user_id]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [
                k for k, v in self._entries.items() if now - v.verified_at > self._ttl
            ]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
