# =============================================
# File: tests/test_api.py
# Purpose: HTTP + WebSocket surface end-to-end on SQLite memory and the in-process broker
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import pytest
from fastapi.testclient import TestClient
from app.db.models import AiOptimization, QueryLog

PRICE_QUERY = "SELECT * FROM products WHERE price > 100"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("DB_URL", "sqlite://")
    monkeypatch.setenv("REDIS_URL", "memory://")
    monkeypatch.setenv("LIVE_SYNTHETIC_INTERVAL_SECONDS", "3600")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("DEMO_TRAFFIC_AUTOSTART", raising=False)

    from app.main import app
    with TestClient(app) as c:
        yield c

def _seed_optimization(client, status="pending"):
    storage = client.app.state.storage
    event = storage.insert_query_event(QueryLog(
        query_text=PRICE_QUERY, execution_time=250, affected_tables=["products"],
        query_type="SELECT", status="critical",
    ))
    return storage.insert_optimization(AiOptimization(
        query_log_id=event.id, optimization_type="index", suggestion="add index on price",
        confidence=85, estimated_improvement=60, status=status,
    ))


def test_ingest_classifies_and_reports_steps(client):
    r = client.post("/api/queries", json={"query_text": PRICE_QUERY, "execution_time_ms": 250, "endpoint": "/api/products"})
    assert r.status_code == 201
    body = r.json()
    ev = body["event"]
    assert ev["queryType"] == "SELECT"
    assert ev["status"] == "critical"
    assert ev["affectedTables"] == ["products"]
    assert body["enrichmentScheduled"] is True
    assert body["steps"] == {"stream": True, "publish": True}

    recent = client.get("/api/queries/recent", params={"limit": 5}).json()
    assert recent[0]["id"] == ev["id"]

    stream = client.get("/api/queries/stream", params={"count": 5}).json()
    assert stream[0]["queryId"] == str(ev["id"])
    assert stream[0]["status"] == "critical"

def test_ingest_validation(client):
    assert client.post("/api/queries", json={"query_text": "   ", "execution_time_ms": 5}).status_code == 422
    assert client.post("/api/queries", json={"query_text": "SELECT 1", "execution_time_ms": -3}).status_code == 422

def test_fast_query_not_enriched(client):
    r = client.post("/api/queries", json={"query_text": "SELECT id FROM users WHERE id = 1", "execution_time_ms": 12})
    body = r.json()
    assert body["event"]["status"] == "fast"
    assert body["enrichmentScheduled"] is False

def test_apply_then_conflict(client):
    opt = _seed_optimization(client)
    active = client.get("/api/optimizations/active").json()
    assert [o["id"] for o in active] == [opt.id]

    r = client.post(f"/api/optimizations/{opt.id}/apply")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["optimization"]["status"] == "applied"

    assert client.post(f"/api/optimizations/{opt.id}/apply").status_code == 409
    assert client.post(f"/api/optimizations/{opt.id}/reject").status_code == 409
    assert client.get("/api/optimizations/active").json() == []

def test_reject_and_missing(client):
    opt = _seed_optimization(client)
    r = client.post(f"/api/optimizations/{opt.id}/reject")
    assert r.status_code == 200
    assert r.json()["optimization"]["status"] == "rejected"
    assert client.post("/api/optimizations/99999/apply").status_code == 404

def test_health_reports_fallback_broker(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "healthy"
    assert data["database"] == "connected"
    assert data["redis"] == "fallback"
    assert client.get("/health").json() == {"status": "ok"}

def test_dashboard_summary_and_insights(client):
    client.post("/api/queries", json={"query_text": "SELECT id FROM users WHERE id = 1", "execution_time_ms": 10})
    client.post("/api/queries", json={"query_text": "SELECT id FROM users WHERE id = 2", "execution_time_ms": 30})
    client.portal.call(client.app.state.pipeline.drain)

    m = client.get("/api/metrics").json()
    assert m["totalQueries"] == 2
    assert m["avgResponseTime"] == "20.0"
    assert m["aiOptimizations"] == 0
    assert m["costSavings"] == "0"

    insights = client.get("/api/insights").json()
    assert set(insights) == {"summary", "topIssues", "recommendations"}
    assert "2 recent queries" in insights["summary"]

def test_demo_traffic_start_stop(client):
    status = client.get("/api/demo/traffic/status").json()
    assert status["isRunning"] is False

    r = client.post("/api/demo/traffic/start", json={"interval": 5000})
    assert r.json()["interval"] == 5000
    status = client.get("/api/demo/traffic/status").json()
    assert status["isRunning"] is True
    assert status["interval"] == 5000

    assert client.post("/api/demo/traffic/start", json={"interval": 10}).status_code == 422

    assert client.post("/api/demo/traffic/stop").json()["success"] is True
    assert client.get("/api/demo/traffic/status").json()["isRunning"] is False
    assert "not running" in client.post("/api/demo/traffic/stop").json()["message"]

def test_interceptor_reports_api_requests_but_not_dashboard(client):
    client.get("/api/demo/traffic/status")
    client.get("/api/queries/recent")
    client.portal.call(client.app.state.pipeline.drain)

    texts = [q["queryText"] for q in client.get("/api/queries/recent").json()]
    assert "GET /api/demo/traffic/status" in texts
    assert not any(t.startswith("GET /api/queries") for t in texts)

def test_request_id_header(client):
    r = client.get("/health")
    assert r.headers.get("X-Request-ID")

def test_websocket_receives_ack_live_event_and_suggestion(client):
    with client.websocket_connect("/ws") as ws:
        ack = ws.receive_json()
        assert ack["type"] == "connection"

        r = client.post("/api/queries", json={"query_text": PRICE_QUERY, "execution_time_ms": 250, "endpoint": "/api/products"})
        event_id = r.json()["event"]["id"]

        live = ws.receive_json()
        assert live["type"] == "query:live"
        assert live["data"]["id"] == event_id

        suggestion = None
        for _ in range(10):
            msg = ws.receive_json()
            if msg["type"] == "optimization:suggestion":
                suggestion = msg["data"]
                break
        assert suggestion is not None
        assert suggestion["queryLogId"] == event_id
        assert suggestion["source"] == "ai"
        assert suggestion["optimizationType"] in ("index", "rewrite", "cache")
