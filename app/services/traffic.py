# =============================================
# File: app/services/traffic.py
# Purpose: Demo traffic generator feeding simulated e-commerce queries into the pipeline
# =============================================
from __future__ import annotations
import asyncio
import random
from typing import Any, Dict, Optional

from loguru import logger

from app.services.fanout import synthetic_metrics
from app.services.pipeline import EventPipeline, IngestError, TOPIC_DEMO_METRICS

TRAFFIC_COUNTER_KEY = "demo:traffic:requests"
DEFAULT_INTERVAL_MS = 3000
MIN_INTERVAL_MS = 100

# (query template, endpoint, latency range in ms)
SIMULATED_QUERIES = [
    ("SELECT * FROM products WHERE category_id = {n} LIMIT 20", "/api/products", (20, 140)),
    ("SELECT * FROM users WHERE id = '{n}'", "/api/users", (5, 60)),
    ("SELECT * FROM orders WHERE user_id = '{n}' ORDER BY created_at DESC", "/api/orders", (40, 180)),
    ("SELECT p.name, c.name, o.total_amount FROM products p "
     "LEFT JOIN order_items oi ON p.id = oi.product_id "
     "LEFT JOIN orders o ON oi.order_id = o.id "
     "LEFT JOIN categories c ON p.category_id = c.id", "/api/reports/sales", (150, 900)),
    ("INSERT INTO orders (user_id, status, total_amount) VALUES ('{n}', 'pending', 42.50)", "/api/orders", (10, 120)),
    ("UPDATE products SET stock = stock - 1 WHERE id = {n}", "/api/products", (10, 250)),
]


class TrafficGenerator:
    """Owns a single cancellable task; start() while running restarts it with the new interval."""

    def __init__(self, pipeline: EventPipeline) -> None:
        self.pipeline = pipeline
        self.interval_ms = DEFAULT_INTERVAL_MS
        self.generated = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> None:
        template, endpoint, (lo, hi) = random.choice(SIMULATED_QUERIES)
        text = template.format(n=random.randint(1, 20))
        try:
            await self.pipeline.ingest(text, random.randint(lo, hi), endpoint)
        except IngestError:
            return
        self.generated += 1
        await self.pipeline.gateway.increment(TRAFFIC_COUNTER_KEY, 1)
        await self.pipeline.gateway.publish(TOPIC_DEMO_METRICS, synthetic_metrics())

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_ms / 1000.0)
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"[traffic] tick failed: {e}")

    async def start(self, interval_ms: int = DEFAULT_INTERVAL_MS) -> None:
        await self.stop()
        self.interval_ms = max(MIN_INTERVAL_MS, int(interval_ms))
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(f"[traffic] demo traffic started every {self.interval_ms}ms")

    async def stop(self) -> bool:
        task, self._task = self._task, None
        if task is None:
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("[traffic] demo traffic stopped")
        return True

    async def status(self) -> Dict[str, Any]:
        total = await self.pipeline.gateway.increment(TRAFFIC_COUNTER_KEY, 0)
        return {
            "isRunning": self.running,
            "interval": self.interval_ms,
            "generated": self.generated,
            "totalRequests": total,
        }
