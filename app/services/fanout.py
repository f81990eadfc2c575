# =============================================
# File: app/services/fanout.py
# Purpose: Live connection registry and topic fan-out to WebSocket viewers
# =============================================
from __future__ import annotations
import asyncio
import json
import os
import random
from typing import Any, Dict, List, Optional, Protocol, Sequence

from loguru import logger

from app.services.gateway import CacheGateway, MODE_FALLBACK, SubscribeError, Subscription
from app.services.pipeline import (
    TOPIC_DEMO_METRICS,
    TOPIC_OPTIMIZATION_APPLIED,
    TOPIC_OPTIMIZATIONS,
    TOPIC_QUERY_EVENTS,
)
from app.utils import metrics

# topic -> envelope "type" sent to viewers
MESSAGE_TYPES: Dict[str, str] = {
    TOPIC_QUERY_EVENTS: "query:live",
    TOPIC_OPTIMIZATIONS: "optimization:suggestion",
    TOPIC_DEMO_METRICS: "demo:metrics",
    TOPIC_OPTIMIZATION_APPLIED: "optimization:applied",
}

DEFAULT_TOPICS = (TOPIC_QUERY_EVENTS, TOPIC_OPTIMIZATIONS, TOPIC_DEMO_METRICS)
DEFAULT_SYNTHETIC_INTERVAL = 5.0
# per-viewer backlog; a stalled viewer loses its oldest messages first
MAX_PENDING_MESSAGES = 500
WELCOME_MESSAGE = "Connected to the query optimizer live feed"


class Sender(Protocol):
    async def send_text(self, data: str) -> None: ...


def synthetic_metrics() -> Dict[str, int]:
    return {
        "queriesPerMin": random.randint(200, 299),
        "activeUsers": random.randint(800, 1299),
        "databaseLoad": random.randint(40, 69),
    }


def _synthetic_interval() -> float:
    try:
        return float(os.getenv("LIVE_SYNTHETIC_INTERVAL_SECONDS", str(DEFAULT_SYNTHETIC_INTERVAL)))
    except ValueError:
        return DEFAULT_SYNTHETIC_INTERVAL


class LiveConnection:
    """
    One viewer. Messages go through a private queue drained by a single writer
    task, so per-topic publish order is kept for this connection.
    """

    def __init__(self, conn_id: int, sender: Sender, max_pending: int = MAX_PENDING_MESSAGES) -> None:
        self.id = conn_id
        self.sender = sender
        self.subscriptions: List[Subscription] = []
        self.synthetic_task: Optional[asyncio.Task] = None
        self.closed = False
        self.sent = 0
        self.dropped = 0
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=max_pending)
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._writer = asyncio.get_running_loop().create_task(self._write_loop())

    def deliver(self, envelope: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"[live] connection {self.id} is behind; {self.dropped} messages dropped")
        self._queue.put_nowait(envelope)
        return True

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    async def _write_loop(self) -> None:
        while True:
            envelope = await self._queue.get()
            try:
                await self.sender.send_text(json.dumps(envelope, ensure_ascii=False, default=str))
                self.sent += 1
            except Exception as e:
                # peer gone; the endpoint's receive loop will unregister us
                logger.debug(f"[live] send to connection {self.id} failed: {e}")
                self.closed = True
                return

    @property
    def synthetic_active(self) -> bool:
        return self.synthetic_task is not None and not self.synthetic_task.done()

    async def close(self) -> None:
        self.closed = True
        subs, self.subscriptions = self.subscriptions, []
        for sub in subs:
            try:
                await sub.close()
            except Exception as e:
                logger.debug(f"[live] unsubscribe {sub.topic} failed: {e}")
        tasks = [t for t in (self.synthetic_task, self._writer) if t is not None]
        self.synthetic_task = None
        self._writer = None
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class LiveHub:
    """Registry of live connections bound to gateway topics."""

    def __init__(
        self,
        gateway: CacheGateway,
        topics: Sequence[str] = DEFAULT_TOPICS,
        synthetic_interval: Optional[float] = None,
        max_pending: int = MAX_PENDING_MESSAGES,
    ) -> None:
        self.gateway = gateway
        self.max_pending = max_pending
        self.topics = tuple(topics)
        self.synthetic_interval = synthetic_interval if synthetic_interval is not None else _synthetic_interval()
        self._connections: Dict[int, LiveConnection] = {}
        self._next_id = 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def _handler_for(self, conn: LiveConnection, topic: str):
        msg_type = MESSAGE_TYPES.get(topic, topic)

        def _on_message(payload: Dict[str, Any]) -> None:
            conn.deliver({"type": msg_type, "data": payload})

        return _on_message

    async def _synthetic_loop(self, conn: LiveConnection) -> None:
        msg_type = MESSAGE_TYPES[TOPIC_DEMO_METRICS]
        while not conn.closed:
            await asyncio.sleep(self.synthetic_interval)
            if not conn.deliver({"type": msg_type, "data": synthetic_metrics()}):
                return

    async def _bind(self, conn: LiveConnection) -> bool:
        for topic in self.topics:
            try:
                conn.subscriptions.append(await self.gateway.subscribe(topic, self._handler_for(conn, topic)))
            except SubscribeError as e:
                logger.warning(f"[live] connection {conn.id} could not bind {topic}: {e}")
                for sub in conn.subscriptions:
                    await sub.close()
                conn.subscriptions = []
                return False
        return True

    async def register(self, sender: Sender) -> LiveConnection:
        self._next_id += 1
        conn = LiveConnection(self._next_id, sender, self.max_pending)
        self._connections[conn.id] = conn
        conn.start()
        conn.deliver({"type": "connection", "message": WELCOME_MESSAGE})
        metrics.connection_opened()

        bound = await self._bind(conn)
        if not bound or self.gateway.mode == MODE_FALLBACK:
            # no cross-process broker: keep the feed alive with synthetic metrics
            conn.synthetic_task = asyncio.get_running_loop().create_task(self._synthetic_loop(conn))
        logger.info(
            f"[live] connection {conn.id} open (bound={bound}, synthetic={conn.synthetic_active}, "
            f"total={self.connection_count})"
        )
        return conn

    async def unregister(self, conn: LiveConnection) -> None:
        if self._connections.pop(conn.id, None) is None:
            return
        await conn.close()
        metrics.connection_closed()
        logger.info(f"[live] connection {conn.id} closed (total={self.connection_count})")

    async def close_all(self) -> None:
        for conn in list(self._connections.values()):
            await self.unregister(conn)
