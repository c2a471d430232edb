"""
Read-through cache for checkpoint listings.
One instance lives on app.state and is handed to routes as a dependency;
writers call invalidate() before returning.
"""
import threading
import time
from typing import Any, Callable, Hashable, Optional

import cachetools
import structlog
from starlette.requests import Request

logger = structlog.get_logger(__name__)

_MISSING = object()


class CheckpointCache:
    """Lock-guarded cachetools.TTLCache; cachetools itself is not thread-safe."""

    def __init__(self, ttl_seconds: float = 300, maxsize: int = 256, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._entries = cachetools.TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=clock)

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._entries.get(key, default)

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = value

    def get_or_set(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = loader()
        self.set(key, value)
        return value

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when key is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)
        logger.debug("cache_invalidated", key=str(key) if key is not None else "*")

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


def get_checkpoint_cache(request: Request) -> CheckpointCache:
    return request.app.state.checkpoint_cache
