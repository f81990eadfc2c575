# =============================================
# File: app/services/gateway.py
# Purpose: One cache/broker interface over Redis or the in-process fallback
# =============================================
from __future__ import annotations
import asyncio
import json
import os
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from loguru import logger

from app.services.fallback_cache import FallbackCache

PayloadHandler = Callable[[Dict[str, Any]], None]
StreamEntry = Tuple[str, Dict[str, str]]

MODE_CONNECTED = "connected"
MODE_FALLBACK = "fallback"

OPTIMIZATION_KEY_PREFIX = "optimization:"
DEFAULT_OPTIMIZATION_TTL = 3600
DEFAULT_CONNECT_TIMEOUT = 3.0
MEMORY_URL = "memory://"


class SubscribeError(RuntimeError):
    """Binding a handler to a topic failed."""


class Subscription:
    """Handle returned by EventBus.subscribe; close() is idempotent."""

    def __init__(self, topic: str, closer: Callable[[], Awaitable[None]]) -> None:
        self.topic = topic
        self._closer = closer
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._closer()


# ---------------- transports ----------------

class EventBus(ABC):
    """Transport capability. Implementations raise on transport errors."""

    mode: str = ""

    @abstractmethod
    async def set_with_ttl(self, key: str, ttl: int, value: str) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def publish(self, topic: str, message: str) -> int: ...

    @abstractmethod
    async def subscribe(self, topic: str, handler: Callable[[str], None]) -> Subscription: ...

    @abstractmethod
    async def append_to_stream(self, stream_key: str, fields: Dict[str, str]) -> str: ...

    @abstractmethod
    async def read_stream_recent(self, stream_key: str, count: int) -> List[StreamEntry]: ...

    @abstractmethod
    async def increment(self, key: str, by: int) -> int: ...

    @abstractmethod
    async def close(self) -> None: ...


class LiveBus(EventBus):
    """Redis-backed bus (redis.asyncio, decode_responses=True)."""

    mode = MODE_CONNECTED

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    async def set_with_ttl(self, key: str, ttl: int, value: str) -> None:
        await self._client.setex(key, ttl, value)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def publish(self, topic: str, message: str) -> int:
        return int(await self._client.publish(topic, message))

    async def subscribe(self, topic: str, handler: Callable[[str], None]) -> Subscription:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(topic)

        async def _pump() -> None:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    handler(message["data"])
                except Exception as e:
                    logger.warning(f"[gateway] handler for {topic} failed: {e}")

        task = asyncio.get_running_loop().create_task(_pump())

        async def _close() -> None:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, RedisError):
                pass
            try:
                await pubsub.unsubscribe(topic)
            finally:
                await pubsub.aclose()

        return Subscription(topic, _close)

    async def append_to_stream(self, stream_key: str, fields: Dict[str, str]) -> str:
        return await self._client.xadd(stream_key, fields)

    async def read_stream_recent(self, stream_key: str, count: int) -> List[StreamEntry]:
        rows = await self._client.xrevrange(stream_key, count=count)
        return [(eid, dict(fields)) for eid, fields in rows]

    async def increment(self, key: str, by: int) -> int:
        return int(await self._client.incrby(key, by))

    async def close(self) -> None:
        await self._client.aclose()


class FallbackBus(EventBus):
    """In-process bus over FallbackCache; publish fans out synchronously."""

    mode = MODE_FALLBACK

    def __init__(self, cache: Optional[FallbackCache] = None) -> None:
        self.cache = cache or FallbackCache()

    async def set_with_ttl(self, key: str, ttl: int, value: str) -> None:
        self.cache.setex(key, ttl, value)

    async def get(self, key: str) -> Optional[str]:
        return self.cache.get(key)

    async def publish(self, topic: str, message: str) -> int:
        return self.cache.publish(topic, message)

    async def subscribe(self, topic: str, handler: Callable[[str], None]) -> Subscription:
        self.cache.subscribe(topic, handler)

        async def _close() -> None:
            self.cache.unsubscribe(topic, handler)

        return Subscription(topic, _close)

    async def append_to_stream(self, stream_key: str, fields: Dict[str, str]) -> str:
        return self.cache.xadd(stream_key, fields)

    async def read_stream_recent(self, stream_key: str, count: int) -> List[StreamEntry]:
        return self.cache.xrevrange(stream_key, count)

    async def increment(self, key: str, by: int) -> int:
        return self.cache.incrby(key, by)

    async def close(self) -> None:
        await self.cache.stop_sweeper()


# ---------------- gateway ----------------

class CacheGateway:
    """
    Uniform, never-raising access to whichever bus was selected at startup.
    Transport errors are logged and turned into neutral results
    (False / None / [] / 0); only subscribe() reports failure, as SubscribeError.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    @property
    def mode(self) -> str:
        return self._bus.mode

    @property
    def bus(self) -> EventBus:
        return self._bus

    async def set_with_ttl(self, key: str, ttl: int, value: str) -> bool:
        try:
            await self._bus.set_with_ttl(key, ttl, value)
            return True
        except Exception as e:
            logger.error(f"[gateway] set [{key}] failed: {e}")
            return False

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._bus.get(key)
        except Exception as e:
            logger.error(f"[gateway] get [{key}] failed: {e}")
            return None

    async def publish(self, topic: str, payload: Dict[str, Any]) -> bool:
        try:
            await self._bus.publish(topic, json.dumps(payload, ensure_ascii=False, default=str))
            return True
        except Exception as e:
            logger.error(f"[gateway] publish on {topic} dropped: {e}")
            return False

    async def subscribe(self, topic: str, handler: PayloadHandler) -> Subscription:
        def _decode(raw: str) -> None:
            try:
                payload = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning(f"[gateway] undecodable message on {topic}")
                return
            try:
                handler(payload)
            except Exception as e:
                logger.warning(f"[gateway] handler for {topic} failed: {e}")

        try:
            return await self._bus.subscribe(topic, _decode)
        except Exception as e:
            logger.error(f"[gateway] subscribe to {topic} failed: {e}")
            raise SubscribeError(str(e)) from e

    async def append_to_stream(self, stream_key: str, fields: Dict[str, Any]) -> Optional[str]:
        try:
            return await self._bus.append_to_stream(stream_key, {k: str(v) for k, v in fields.items()})
        except Exception as e:
            logger.error(f"[gateway] stream append to {stream_key} failed: {e}")
            return None

    async def read_stream_recent(self, stream_key: str, count: int = 10) -> List[StreamEntry]:
        try:
            return await self._bus.read_stream_recent(stream_key, count)
        except Exception as e:
            logger.error(f"[gateway] stream read from {stream_key} failed: {e}")
            return []

    async def increment(self, key: str, by: int = 1) -> int:
        try:
            return await self._bus.increment(key, by)
        except Exception as e:
            logger.error(f"[gateway] increment [{key}] failed: {e}")
            return 0

    # ---- optimization cache helpers ----

    async def cache_optimization(
        self, query_hash: str, suggestions: List[Dict[str, Any]], ttl: int = DEFAULT_OPTIMIZATION_TTL
    ) -> bool:
        return await self.set_with_ttl(
            OPTIMIZATION_KEY_PREFIX + query_hash, ttl, json.dumps(suggestions, ensure_ascii=False)
        )

    async def get_cached_optimization(self, query_hash: str) -> Optional[List[Dict[str, Any]]]:
        """Cached suggestion set, or None on miss / unparsable entry."""
        raw = await self.get(OPTIMIZATION_KEY_PREFIX + query_hash)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"[gateway] malformed cached optimization {query_hash}; treating as miss")
            return None
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list) or not all(isinstance(d, dict) for d in data):
            logger.warning(f"[gateway] unexpected cached optimization shape {query_hash}; treating as miss")
            return None
        return data

    async def close(self) -> None:
        try:
            await self._bus.close()
        except Exception as e:
            logger.error(f"[gateway] close failed: {e}")


def _connect_timeout() -> float:
    try:
        return float(os.getenv("REDIS_CONNECT_TIMEOUT_SECONDS", str(DEFAULT_CONNECT_TIMEOUT)))
    except ValueError:
        return DEFAULT_CONNECT_TIMEOUT


async def connect_gateway(
    url: Optional[str] = None,
    timeout: Optional[float] = None,
    fallback: Optional[FallbackCache] = None,
) -> CacheGateway:
    """
    Try Redis once, bounded by `timeout`; on failure commit to the in-process
    fallback for the rest of the process lifetime.
    """
    url = url if url is not None else os.getenv("REDIS_URL", "redis://localhost:6379")
    timeout = timeout if timeout is not None else _connect_timeout()

    if url and not url.startswith(MEMORY_URL):
        client: Optional[aioredis.Redis] = None
        try:
            client = aioredis.from_url(
                url,
                password=os.getenv("REDIS_PASSWORD") or None,
                decode_responses=True,
                socket_connect_timeout=timeout,
            )
            await asyncio.wait_for(client.ping(), timeout=timeout)
            logger.info(f"[gateway] Redis connected at {url}")
            return CacheGateway(LiveBus(client))
        except (asyncio.TimeoutError, RedisError, OSError, ValueError) as e:
            # ValueError: unparsable REDIS_URL
            logger.warning(f"[gateway] Redis not available ({e!r}); using in-memory fallback")
            if client is not None:
                try:
                    await client.aclose()
                except (RedisError, OSError):
                    pass

    return CacheGateway(FallbackBus(fallback))
