# =============================================
# File: app/services/fallback_cache.py
# Purpose: In-process TTL cache + pub/sub + append-only streams, used when Redis is unreachable
# =============================================
from __future__ import annotations
import asyncio
import itertools
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

Handler = Callable[[str], None]
StreamEntry = Tuple[str, Dict[str, str]]

DEFAULT_SWEEP_SECONDS = 60.0


def _now() -> float:
    return time.time()


class FallbackCache:
    """
    Redis-shaped stand-in kept entirely in process memory.

    - cache: key -> (expires_at | None, value); expiry is checked lazily on read
      and by the periodic sweeper.
    - pub/sub: synchronous local fan-out, handlers run in registration order,
      nothing is kept for late subscribers.
    - streams: unbounded ordered list per key.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: Dict[str, Tuple[Optional[float], str]] = {}
        self._streams: Dict[str, List[StreamEntry]] = {}
        self._subscribers: Dict[str, List[Handler]] = {}
        self._seq = itertools.count()
        self._last_ms = 0
        self._sweeper: Optional[asyncio.Task] = None

    # ---- key/value ----

    def setex(self, key: str, ttl: float, value: str) -> None:
        with self._lock:
            self._store[key] = (_now() + float(ttl), value)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._store.get(key)
            if item is None:
                return None
            exp, val = item
            if exp is not None and exp <= _now():
                self._store.pop(key, None)
                return None
            return val

    def incrby(self, key: str, by: int = 1) -> int:
        with self._lock:
            item = self._store.get(key)
            current = 0
            exp: Optional[float] = None
            if item is not None and (item[0] is None or item[0] > _now()):
                exp = item[0]
                try:
                    current = int(item[1])
                except ValueError:
                    raise ValueError(f"value at {key!r} is not an integer")
            value = current + int(by)
            self._store[key] = (exp, str(value))
            return value

    def purge_expired(self) -> int:
        now = _now()
        with self._lock:
            dead = [k for k, (exp, _) in self._store.items() if exp is not None and exp <= now]
            for k in dead:
                self._store.pop(k, None)
        return len(dead)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    # ---- pub/sub ----

    def publish(self, channel: str, message: str) -> int:
        with self._lock:
            handlers = list(self._subscribers.get(channel, ()))
        for handler in handlers:
            try:
                handler(message)
            except Exception as e:
                logger.warning(f"[fallback] handler for {channel} failed: {e}")
        return len(handlers)

    def subscribe(self, channel: str, handler: Handler) -> None:
        with self._lock:
            self._subscribers.setdefault(channel, []).append(handler)

    def unsubscribe(self, channel: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._subscribers.get(channel)
            if not handlers:
                return
            try:
                handlers.remove(handler)
            except ValueError:
                return
            if not handlers:
                self._subscribers.pop(channel, None)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))

    # ---- streams ----

    def _next_id(self) -> str:
        ms = int(_now() * 1000)
        if ms <= self._last_ms:
            ms = self._last_ms
        self._last_ms = ms
        return f"{ms}-{next(self._seq)}"

    def xadd(self, stream_key: str, fields: Dict[str, str], entry_id: Optional[str] = None) -> str:
        with self._lock:
            eid = entry_id if entry_id and entry_id != "*" else self._next_id()
            self._streams.setdefault(stream_key, []).append((eid, dict(fields)))
            return eid

    def xrevrange(self, stream_key: str, count: int = 10) -> List[StreamEntry]:
        if count <= 0:
            return []
        with self._lock:
            entries = self._streams.get(stream_key, [])
            return list(reversed(entries[-count:]))

    # ---- background sweep ----

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.purge_expired()
            if removed:
                logger.debug(f"[fallback] swept {removed} expired keys")

    def start_sweeper(self, interval: float = DEFAULT_SWEEP_SECONDS) -> None:
        """Start the periodic expiry sweep on the running loop (idempotent)."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(interval))

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()
