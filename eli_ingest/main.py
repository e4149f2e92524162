# eli_ingest/main.py
"""
FastAPI application entry point.
Includes security middleware, global error handlers, and all routers.
Clients for every store are built once on startup (ServiceContainer) and
closed in reverse order on shutdown.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from eli_ingest.routers import webhook, enrichment, events, maintenance, health
from eli_ingest.database import create_tables
from eli_ingest.dependencies import build_container, close_container
from eli_ingest.config import settings
from eli_ingest.utils.logger import get_logger
import time

logger = get_logger(__name__)

app = FastAPI(
    title="ELI Event Ingestion API",
    description="Analytics event ingestion fan-out and asynchronous enrichment worker.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS ─────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],   # Restrict to dashboard origin in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth for read and maintenance endpoints.
    Ingestion and Pub/Sub push endpoints are excluded - the feed and the
    push subscription don't send keys.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    open_paths = {
        "/webhook/irex",
        "/ingest/event",
        "/ingest/snapshot",
        "/enrichment/pubsub",
        "/api/v1/health",
        "/docs",
        "/redoc",
        "/openapi.json",
    }

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.open_paths or not settings.API_KEY:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != settings.API_KEY:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


if settings.API_KEY:
    app.add_middleware(APIKeyMiddleware)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Global Exception Handler ─────────────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
# Ingestion and push targets keep the paths external senders are configured with
app.include_router(webhook.router,     tags=["📡 Ingestion"])
app.include_router(enrichment.router,  tags=["🧠 Enrichment"])
app.include_router(events.router,      prefix="/api/v1", tags=["📊 Records"])
app.include_router(maintenance.router, prefix="/api/v1", tags=["🧹 Maintenance"])
app.include_router(health.router,      prefix="/api/v1", tags=["💚 Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup():
    logger.info("🚀 ELI ingestion starting up...")
    container = build_container(settings)
    create_tables(container.engine)
    app.state.container = container
    logger.info("✅ Database tables ready")
    logger.info(
        f"🔌 graph={'on' if container.graph.enabled else 'off'} "
        f"archive={'on' if container.archiver.enabled else 'off'} "
        f"queue={'on' if settings.AI_PUBSUB_TOPIC and not settings.MOCK_MODE else 'off'} "
        f"detector={'on' if container.detector.enabled else 'off'} "
        f"insights={'on' if container.llm.enabled else 'off'}"
    )
    logger.info(f"🌐 Listening on http://{settings.BACKEND_IP}:{settings.BACKEND_PORT}")
    logger.info("📖 API docs at /docs")


@app.on_event("shutdown")
async def shutdown():
    logger.info("🛑 ELI ingestion shutting down...")
    container = getattr(app.state, "container", None)
    if container is not None:
        await close_container(container)
