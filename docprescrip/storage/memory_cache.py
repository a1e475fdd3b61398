from __future__ import annotations

import math
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from docprescrip.storage.redis_cache import RedisCache


class MemoryCache:
    """Process-local stand-in for RedisCache with the same async surface.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Expiry is evaluated
    lazily against ``clock`` so tests can move time forward without sleeping.
    Every operation holds one lock, which mirrors the single-key atomicity of
    Redis including the scripted multi-key updates.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[Any]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _put(self, key: str, value: Any, ttl_seconds: Optional[float]) -> None:
        expires_at = None if ttl_seconds is None else self._clock() + max(1, ttl_seconds)
        self._values[key] = (value, expires_at)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            return None if value is None else str(value)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._put(key, value, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._values.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            if self._live(key) is None:
                return None
            expires_at = self._values[key][1]
            if expires_at is None:
                return 0
            return max(1, math.ceil(expires_at - self._clock()))

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._values.pop(key, None)
            return None if value is None else str(value)

    async def increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                self._put(key, 1, ttl_seconds)
                return 1
            value = int(current) + 1
            self._values[key] = (value, self._values[key][1])
            return value

    async def record_failed_attempt(
        self,
        lock_key: str,
        attempts_key: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> Tuple[bool, int]:
        with self._lock:
            if self._live(lock_key) is not None:
                return (True, -1)
            current = self._live(attempts_key)
            if current is None:
                attempts = 1
                self._put(attempts_key, attempts, window_seconds)
            else:
                attempts = int(current) + 1
                self._values[attempts_key] = (attempts, self._values[attempts_key][1])
            if attempts >= max_attempts:
                self._put(lock_key, "1", lockout_seconds)
                self._values.pop(attempts_key, None)
                return (True, attempts)
            return (False, attempts)

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        log_key = RedisCache._normalize_rate_key(key)
        now = self._clock()
        with self._lock:
            admitted = [ts for ts in self._live(log_key) or [] if ts > now - window_seconds]
            if len(admitted) >= limit:
                self._put(log_key, admitted, window_seconds)
                oldest = admitted[0] if admitted else now
                reset_after = max(1, math.ceil(oldest + window_seconds - now))
                return (False, 0, reset_after)
            admitted.append(now)
            self._put(log_key, admitted, window_seconds)
            return (True, limit - len(admitted), 0)

    async def push_capped(
        self, key: str, value: str, *, max_entries: int, ttl_seconds: int
    ) -> None:
        with self._lock:
            items = list(self._live(key) or [])
            items.insert(0, value)
            self._put(key, items[:max_entries], ttl_seconds)

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        with self._lock:
            items = list(self._live(key) or [])
        return items[start:] if end == -1 else items[start : end + 1]

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
