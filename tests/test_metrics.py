# =============================================
# File: tests/test_metrics.py
# =============================================
import sys, os, time
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from fastapi.testclient import TestClient
from app.utils import metrics
from app.utils.metrics import reset as metrics_reset

def _mount_client(monkeypatch):
    monkeypatch.setenv("DB_URL", "sqlite://")
    monkeypatch.setenv("REDIS_URL", "memory://")
    monkeypatch.setenv("LIVE_SYNTHETIC_INTERVAL_SECONDS", "3600")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    metrics_reset()

    from app.main import app
    return TestClient(app)

def test_metrics_counts_tiers_and_histogram(monkeypatch):
    with _mount_client(monkeypatch) as client:
        for ms in (10, 150, 700):
            r = client.post("/api/queries", json={"query_text": "SELECT * FROM products", "execution_time_ms": ms})
            assert r.status_code == 201
        client.portal.call(client.app.state.pipeline.drain)
        m = client.get("/metrics").json()

    assert m["counters"]["events_total"] == 3
    assert m["tiers"] == {"fast": 1, "slow": 1, "critical": 1}
    assert m["kinds"]["SELECT"] == 3
    # histogram consistency: sum of buckets equals events_total
    assert sum(m["execution_time_ms"]["counts"]) == m["counters"]["events_total"]
    assert m["execution_time_ms"]["buckets"][-1] == "+Inf"
    # slow + critical went through enrichment, the first one via the advisor
    assert m["counters"]["advisor_calls_total"] >= 1
    assert m["counters"]["cache_hits_total"] + m["counters"]["cache_misses_total"] == 2
    assert "POST /api/queries" in m["performance"]["endpoints"]

def test_live_connection_gauge(monkeypatch):
    with _mount_client(monkeypatch) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert metrics.snapshot()["live_connections"] == 1
        # unregister runs on the server side after the close frame
        for _ in range(100):
            if metrics.snapshot()["live_connections"] == 0:
                break
            time.sleep(0.01)
    assert metrics.snapshot()["live_connections"] == 0

def test_reset_clears_registry():
    metrics.record_event("SELECT", "slow", 150)
    metrics.incr("cache_hits_total")
    metrics_reset()
    snap = metrics.snapshot()
    assert snap["counters"]["events_total"] == 0
    assert snap["counters"]["cache_hits_total"] == 0
    assert sum(snap["execution_time_ms"]["counts"]) == 0
    assert snap["kinds"] == {}
