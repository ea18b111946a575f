"""In-process TTL cache for rendered frames.

Entries expire lazily (an expired entry is dropped by the read that finds
it) and proactively through ``sweep()``, which a background thread runs on
a fixed interval. There is no size bound: the key space is "latest" plus a
handful of timestamp keys.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 120.0
DEFAULT_SWEEP_SECONDS = 300.0


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float


class FrameCache:
    def __init__(
        self,
        *,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = float(default_ttl)
        self.sweep_interval = float(sweep_interval)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def get(self, key: str) -> Any | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                self._entries.pop(key, None)
                return None
            return entry.value

    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl_s = self.default_ttl if ttl is None else float(ttl)
        entry = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl_s)
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[str]:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    # -- periodic sweep ---------------------------------------------------

    def start_sweeper(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="frame-cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._sweeper
        if thread is not None:
            thread.join(timeout=timeout)
        self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Cache sweep failed")
