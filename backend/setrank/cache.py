from __future__ import annotations

from asyncio import Lock
import time
from typing import Any, Callable


class TTLCache:
    """An in-memory TTL cache with async-safe access.

    Instances are constructed by the application and injected where needed;
    ``clock`` defaults to ``time.monotonic`` and can be replaced in tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._store: dict[Any, tuple[Any, float]] = {}

    async def get(self, key: Any) -> Any | None:
        now = self._clock()
        async with self._lock:
            entry = self._store.get(key)
            if not entry:
                return None
            value, expires_at = entry
            if expires_at <= now:
                self._store.pop(key, None)
                return None
            return value

    async def set(self, key: Any, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        expires_at = self._clock() + max(ttl, 0.0)
        async with self._lock:
            if ttl <= 0:
                self._store.pop(key, None)
            else:
                self._store[key] = (value, expires_at)

    async def invalidate(self, owner_id: str) -> None:
        """Drop ``owner_id`` and every tuple key scoped to it."""

        async with self._lock:
            keys_to_remove = [
                key
                for key in self._store
                if key == owner_id
                or (isinstance(key, tuple) and key and key[0] == owner_id)
            ]
            for key in keys_to_remove:
                self._store.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._store.clear()
