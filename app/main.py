import asyncio
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .routers import demo, live, metrics, optimizations, queries
from app.db.repo import Storage, make_engine
from app.services.advisor import OpenAIAdvisor
from app.services.fanout import LiveHub
from app.services.gateway import MODE_FALLBACK, connect_gateway
from app.services.pipeline import EventPipeline
from app.services.traffic import DEFAULT_INTERVAL_MS, TrafficGenerator
from app.utils import slog, timing
from app.utils.logging import configure_logging
from app.utils.metrics import record_endpoint

# Dashboard/monitoring endpoints are never reported as query events themselves
_NOT_INTERCEPTED = (
    "/api/queries",
    "/api/optimizations",
    "/api/metrics",
    "/api/health",
    "/api/insights",
)
_SHUTDOWN_DRAIN_SECONDS = 5.0


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _should_intercept(method: str, path: str) -> bool:
    if path.startswith(_NOT_INTERCEPTED) or path == "/ws":
        return False
    return method != "GET" or path.startswith("/api/")


@asynccontextmanager
async def lifespan(app: FastAPI):
    load_dotenv()
    configure_logging()

    storage = Storage(make_engine(os.getenv("DB_URL")))
    storage.init_db()

    gateway = await connect_gateway()
    if gateway.mode == MODE_FALLBACK:
        gateway.bus.cache.start_sweeper(float(os.getenv("FALLBACK_SWEEP_SECONDS", "60")))

    advisor = OpenAIAdvisor()
    pipeline = EventPipeline(
        storage,
        gateway,
        advisor,
        suggestion_ttl=int(os.getenv("OPTIMIZATION_CACHE_TTL_SECONDS", "3600")),
    )
    hub = LiveHub(gateway)
    traffic = TrafficGenerator(pipeline)

    app.state.storage = storage
    app.state.gateway = gateway
    app.state.advisor = advisor
    app.state.pipeline = pipeline
    app.state.hub = hub
    app.state.traffic = traffic
    logger.info(f"[startup] broker={gateway.mode} advisor={'openai' if advisor.online else 'heuristic'}")

    if _env_flag("DEMO_TRAFFIC_AUTOSTART"):
        await traffic.start(int(os.getenv("DEMO_TRAFFIC_INTERVAL_MS", str(DEFAULT_INTERVAL_MS))))

    yield

    await traffic.stop()
    await hub.close_all()
    try:
        await asyncio.wait_for(pipeline.drain(), timeout=_SHUTDOWN_DRAIN_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"[shutdown] dropping {pipeline.pending} unfinished pipeline tasks")
    await pipeline.close()
    await gateway.close()
    storage.engine.dispose()


app = FastAPI(
    title="Query Optimizer Live Dashboard",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def _query_interceptor(request, call_next):
    # start time lives in this closure; no shared per-request map
    start = timing.now()
    req_id = slog.new_request_id()
    client_ip = request.client.host if request.client else None
    path = str(request.url.path)
    try:
        response = await call_next(request)
    except Exception as e:
        latency_ms = timing.elapsed_ms(start)
        ctx = getattr(request.state, "log_context", {})
        slog.log_event(
            "request.error",
            request_id=req_id,
            path=path,
            method=request.method,
            latency_ms=latency_ms,
            client_ip=client_ip,
            error=str(e),
            **(ctx or {}),
        )
        raise
    latency_ms = timing.elapsed_ms(start)
    ctx = getattr(request.state, "log_context", {}) or {}

    intercepted = _should_intercept(request.method, path)
    pipeline = getattr(request.app.state, "pipeline", None)
    if intercepted and pipeline is not None:
        pipeline.submit(f"{request.method} {path}", latency_ms, path)
    ctx.setdefault("intercepted", intercepted and pipeline is not None)

    slog.finalize_request_log(
        request_id=req_id,
        method=request.method,
        path=path,
        status=response.status_code,
        latency_ms=latency_ms,
        client_ip=client_ip,
        ctx=ctx,
    )
    record_endpoint(method=request.method, path=path, latency_ms=latency_ms)
    response.headers["X-Request-ID"] = req_id
    return response


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(queries.router)
app.include_router(optimizations.router)
app.include_router(metrics.router)
app.include_router(demo.router)
app.include_router(live.router)
