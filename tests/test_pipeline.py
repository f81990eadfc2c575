# =============================================
# File: tests/test_pipeline.py
# Purpose: Ingest -> persist -> stream -> publish -> enrichment (cache vs advisor), failure isolation
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import asyncio
import pytest
from app.db.models import QueryLog
from app.db.repo import Storage, make_engine
from app.services.advisor import Suggestion
from app.services.gateway import CacheGateway, FallbackBus
from app.services.pipeline import (
    EventPipeline,
    IngestError,
    QUERY_STREAM_KEY,
    TOPIC_OPTIMIZATIONS,
    TOPIC_QUERY_EVENTS,
    query_hash,
)

PRICE_QUERY = "SELECT * FROM products WHERE price > 100"
INDEX_ON_PRICE = {"optimizationType": "index", "suggestion": "add index on price", "confidence": 85, "estimatedImprovement": 60}


class _StubAdvisor:
    def __init__(self, suggestions=(), delay=0.0):
        self.suggestions = list(suggestions)
        self.delay = delay
        self.calls = 0

    async def analyze(self, query_text, execution_time_ms):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return [Suggestion.model_validate(s) for s in self.suggestions]


class _FailingStorage(Storage):
    def insert_query_event(self, record):
        raise RuntimeError("database is locked")


class _NoStreamBus(FallbackBus):
    async def append_to_stream(self, stream_key, fields):
        raise ConnectionError("stream down")


def _storage(cls=Storage):
    storage = cls(make_engine("sqlite://"))
    storage.init_db()
    return storage

def _pipeline(advisor=None, storage=None, bus=None, **kw):
    gateway = CacheGateway(bus or FallbackBus())
    return EventPipeline(storage or _storage(), gateway, advisor or _StubAdvisor([INDEX_ON_PRICE]), **kw)

def _tap(gateway, topic):
    """Collect payloads published on a topic (registered inside the running loop)."""
    seen = []
    async def _attach():
        await gateway.subscribe(topic, seen.append)
    return seen, _attach


def test_end_to_end_critical_select_gets_ai_suggestion():
    pipeline = _pipeline()
    live, attach_live = _tap(pipeline.gateway, TOPIC_QUERY_EVENTS)
    opts, attach_opts = _tap(pipeline.gateway, TOPIC_OPTIMIZATIONS)

    async def scenario():
        await attach_live()
        await attach_opts()
        report = await pipeline.ingest(PRICE_QUERY, 250, "/api/products")
        await pipeline.drain()
        return report

    report = asyncio.run(scenario())
    ev = report.event
    assert ev.id is not None
    assert ev.query_type == "SELECT"
    assert ev.status == "critical"
    assert ev.affected_tables == ["products"]
    assert report.enrichment_scheduled is True
    assert all(s.ok for s in report.steps)

    assert len(live) == 1 and live[0]["id"] == ev.id and live[0]["status"] == "critical"

    rows = pipeline.storage.optimizations_for_event(ev.id)
    assert len(rows) == 1
    assert rows[0].status == "pending"
    assert rows[0].optimization_type == "index"
    assert rows[0].confidence == 85

    assert opts == [{"queryLogId": ev.id, **INDEX_ON_PRICE, "source": "ai"}]

def test_fast_query_is_not_enriched():
    advisor = _StubAdvisor([INDEX_ON_PRICE])
    pipeline = _pipeline(advisor=advisor)

    async def scenario():
        report = await pipeline.ingest("SELECT id FROM users WHERE id = 1", 40, "/api/users")
        await pipeline.drain()
        return report

    report = asyncio.run(scenario())
    assert report.event.status == "fast"
    assert report.enrichment_scheduled is False
    assert advisor.calls == 0

def test_second_enrich_within_ttl_uses_cache():
    advisor = _StubAdvisor([INDEX_ON_PRICE])
    pipeline = _pipeline(advisor=advisor)
    opts, attach = _tap(pipeline.gateway, TOPIC_OPTIMIZATIONS)

    async def scenario():
        await attach()
        first = await pipeline.ingest(PRICE_QUERY, 250, "/api/products")
        await pipeline.drain()
        second = await pipeline.ingest(PRICE_QUERY, 180, "/api/products")
        await pipeline.drain()
        return first, second

    first, second = asyncio.run(scenario())
    assert advisor.calls == 1
    assert [o["source"] for o in opts] == ["ai", "cache"]
    assert opts[1]["queryLogId"] == second.event.id
    assert opts[1]["suggestion"] == "add index on price"
    # the cached suggestion is persisted again for the new event
    assert len(pipeline.storage.optimizations_for_event(second.event.id)) == 1

def test_enrich_reports_source_directly():
    advisor = _StubAdvisor([INDEX_ON_PRICE])
    pipeline = _pipeline(advisor=advisor)
    event = pipeline.storage.insert_query_event(
        QueryLog(
            query_text=PRICE_QUERY, execution_time=250, affected_tables=["products"],
            query_type="SELECT", status="critical",
        )
    )

    async def scenario():
        a = await pipeline.enrich(event.id, PRICE_QUERY, 250)
        b = await pipeline.enrich(event.id, PRICE_QUERY, 250)
        return a, b

    a, b = asyncio.run(scenario())
    assert (a.source, b.source) == ("ai", "cache")
    assert a.cache_key == b.cache_key == query_hash(PRICE_QUERY)
    assert advisor.calls == 1

def test_cache_key_is_not_normalized():
    assert query_hash("SELECT 1") != query_hash("select 1")
    assert query_hash("SELECT 1") != query_hash("SELECT  1")

def test_malformed_cache_entry_falls_through_to_advisor():
    advisor = _StubAdvisor([INDEX_ON_PRICE])
    pipeline = _pipeline(advisor=advisor)

    async def scenario():
        await pipeline.gateway.set_with_ttl("optimization:" + query_hash(PRICE_QUERY), 60, "{broken")
        return await pipeline.enrich(1, PRICE_QUERY, 250)

    report = asyncio.run(scenario())
    assert report.source == "ai"
    assert advisor.calls == 1

def test_persistence_failure_aborts_without_side_effects():
    pipeline = _pipeline(storage=_storage(_FailingStorage))
    live, attach = _tap(pipeline.gateway, TOPIC_QUERY_EVENTS)

    async def scenario():
        await attach()
        with pytest.raises(IngestError):
            await pipeline.ingest(PRICE_QUERY, 250, "/api/products")
        await pipeline.drain()
        return await pipeline.gateway.read_stream_recent(QUERY_STREAM_KEY, 10)

    stream = asyncio.run(scenario())
    assert stream == []
    assert live == []
    assert pipeline.advisor.calls == 0

def test_stream_failure_does_not_block_publish_or_enrichment():
    advisor = _StubAdvisor([INDEX_ON_PRICE])
    pipeline = _pipeline(advisor=advisor, bus=_NoStreamBus())
    live, attach = _tap(pipeline.gateway, TOPIC_QUERY_EVENTS)

    async def scenario():
        await attach()
        report = await pipeline.ingest(PRICE_QUERY, 150, "/api/products")
        await pipeline.drain()
        return report

    report = asyncio.run(scenario())
    assert report.step("stream").ok is False
    assert report.step("publish").ok is True
    assert len(live) == 1
    assert advisor.calls == 1

def test_advisor_timeout_is_swallowed():
    advisor = _StubAdvisor([INDEX_ON_PRICE], delay=1.0)
    pipeline = _pipeline(advisor=advisor, advisor_timeout=0.05)

    report = asyncio.run(pipeline.enrich(1, PRICE_QUERY, 250))
    assert report.error is not None
    assert report.suggestions == []
    assert pipeline.storage.optimizations_for_event(1) == []

def test_empty_advisor_result_caches_nothing():
    advisor = _StubAdvisor([])
    pipeline = _pipeline(advisor=advisor)

    async def scenario():
        await pipeline.enrich(1, PRICE_QUERY, 250)
        await pipeline.enrich(1, PRICE_QUERY, 250)

    asyncio.run(scenario())
    assert advisor.calls == 2

def test_live_preview_is_truncated():
    pipeline = _pipeline()
    live, attach = _tap(pipeline.gateway, TOPIC_QUERY_EVENTS)
    long_sql = "SELECT " + ", ".join(f"col_{i}" for i in range(60)) + " FROM orders"

    async def scenario():
        await attach()
        await pipeline.ingest(long_sql, 10, "/api/orders")

    asyncio.run(scenario())
    text = live[0]["queryText"]
    assert text.endswith("...")
    assert len(text) == 103
    assert text[:100] == long_sql[:100]

def test_negative_duration_rejected_before_persisting():
    pipeline = _pipeline()
    with pytest.raises(ValueError):
        asyncio.run(pipeline.ingest("SELECT 1", -1))
    assert pipeline.storage.query_recent_events(5) == []

def test_concurrent_ingests_on_shared_memory_db_all_persist():
    pipeline = _pipeline(advisor=_StubAdvisor([INDEX_ON_PRICE]))

    async def scenario():
        reports = await asyncio.gather(*[
            pipeline.ingest(f"SELECT * FROM orders WHERE id = {i}", (i * 7) % 300, "/api/orders")
            for i in range(100)
        ])
        await pipeline.drain()
        return reports

    reports = asyncio.run(scenario())
    assert len({r.event.id for r in reports}) == 100
    assert len(pipeline.storage.query_recent_events(200)) == 100
    slow = [r for r in reports if r.enrichment_scheduled]
    for r in slow:
        assert len(pipeline.storage.optimizations_for_event(r.event.id)) == 1
