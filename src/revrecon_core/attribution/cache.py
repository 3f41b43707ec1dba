"""TTL caches and the in-flight registry for detached export jobs."""
import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import date
from time import monotonic
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, TypeVar


logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


def range_key(start: date, end: date) -> str:
    """Cache key for a date window: ``YYYY-MM-DD|YYYY-MM-DD``."""
    return f"{start.isoformat()}|{end.isoformat()}"


def _non_empty(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value > 0
    is_empty = getattr(value, "is_empty", None)
    if isinstance(is_empty, bool):
        return not is_empty
    try:
        return len(value) > 0
    except TypeError:
        return True


@dataclass
class CacheEntry(Generic[V]):
    value: V
    stored_at: float
    ttl: float


class CacheStore(Generic[K, V]):
    """Keyed TTL cache.

    The lock is held only to read or write entries; upstream fetches in
    ``get_or_fetch`` run outside it. Empty results are not stored unless
    ``accept`` says otherwise.
    """

    def __init__(
        self,
        name: str,
        default_ttl: float,
        clock: Callable[[], float] = monotonic,
    ):
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[K, CacheEntry[V]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_entry(self, key: K) -> Optional[CacheEntry[V]]:
        """Return the live entry for key, dropping it if expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now - entry.stored_at >= entry.ttl:
                del self._entries[key]
                return None
            return entry

    def get(self, key: K) -> Optional[V]:
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def set(self, key: K, value: V, ttl: Optional[float] = None, age: float = 0.0) -> None:
        """Store a value.

        Args:
            key: Cache key
            value: Value to store
            ttl: Per-entry TTL in seconds (defaults to the store's TTL)
            age: Seconds the value has already been alive (restored results)
        """
        entry = CacheEntry(
            value=value,
            stored_at=self._clock() - max(age, 0.0),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        with self._lock:
            self._entries[key] = entry

    def invalidate(self, key: K) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def get_or_fetch(
        self,
        key: K,
        fetch: Callable[[], Awaitable[V]],
        ttl: Optional[float] = None,
        accept: Optional[Callable[[V], bool]] = None,
    ) -> V:
        """Return the cached value or fetch, store and return a fresh one."""
        cached = self.get(key)
        if cached is not None:
            logger.debug("%s cache hit for %s", self.name, key)
            return cached

        value = await fetch()

        if (accept or _non_empty)(value):
            self.set(key, value, ttl)
        else:
            logger.info("%s: not caching empty result for %s", self.name, key)
        return value


class InFlightRegistry:
    """Tracks detached background jobs by key so each key runs at most once."""

    def __init__(self, name: str = "in-flight"):
        self.name = name
        self._lock = threading.Lock()
        self._keys: set[str] = set()
        self._tasks: dict[str, asyncio.Task] = {}

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def try_register(self, key: str) -> bool:
        """Claim a key. Returns False if it is already in flight."""
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._keys.discard(key)
            self._tasks.pop(key, None)

    def launch(
        self,
        key: str,
        coro_factory: Callable[[], Awaitable[Any]],
    ) -> Optional[asyncio.Task]:
        """Spawn a detached task for key unless one is already running.

        The key is released in a done callback whatever the outcome.

        Returns:
            The new task, or None if the key was already in flight
        """
        if not self.try_register(key):
            return None

        try:
            task = asyncio.ensure_future(coro_factory())
        except Exception:
            self.release(key)
            raise

        with self._lock:
            self._tasks[key] = task
        task.add_done_callback(lambda t: self._on_done(key, t))
        return task

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        self.release(key)
        if task.cancelled():
            logger.info("%s: job %s cancelled", self.name, key)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s: job %s failed: %s", self.name, key, exc)

    async def drain(self) -> None:
        """Wait for all outstanding jobs."""
        with self._lock:
            tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def cancel_all(self) -> None:
        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
