import asyncio
import hashlib
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Tuple

logger = logging.getLogger(__name__)

_MISS = object()


def _retrieve_exception(task: "asyncio.Task[Any]") -> None:
    # Every waiter may have gone; mark a failed load's exception as seen.
    if not task.cancelled():
        task.exception()


class ResponseCache:
    """
    TTL cache for Canvas GET responses with in-flight request deduplication.

    A caller that misses while another caller is already loading the same key awaits the
    first caller's load instead of issuing a second upstream request. The load runs in its
    own task, so a waiter that is cancelled detaches without cancelling it for the rest.
    Failed loads are never cached.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._pending: Dict[str, "asyncio.Task[Any]"] = {}

    @staticmethod
    def key(domain: str, access_token: str, path: str) -> str:
        token_digest = hashlib.sha256(access_token.encode("utf-8")).hexdigest()[:16]
        return f"{domain}:{token_digest}:{path}"

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISS
        value, expires_at = entry
        if self._clock() > expires_at:
            del self._entries[key]
            return _MISS
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def fetch(
        self, key: str, ttl: float, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        cached = self.get(key)
        if cached is not _MISS:
            return cached

        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(self._load(key, ttl, loader))
            task.add_done_callback(_retrieve_exception)
            self._pending[key] = task
        # A cancelled caller only stops waiting; the load finishes for the others.
        return await asyncio.shield(task)

    async def _load(
        self, key: str, ttl: float, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        try:
            value = await loader()
            self.set(key, value, ttl)
            return value
        finally:
            self._pending.pop(key, None)

    def cleanup(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if now > expires_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        for task in self._pending.values():
            task.cancel()

    def stats(self) -> Dict[str, int]:
        return {"size": len(self._entries), "pending_requests": len(self._pending)}

    def __len__(self) -> int:
        return len(self._entries)
