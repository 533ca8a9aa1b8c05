"""Main FastAPI application."""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from leadflow.config import config
from leadflow.database import init_db
from leadflow.logging_config import logger
from leadflow.runtime import build_runtime

# Prometheus metrics
api_requests_total = Counter("api_requests_total", "Total API requests", ["method", "endpoint", "status"])
api_request_duration = Histogram("api_request_duration_seconds", "API request duration")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    # Startup
    logger.info("application_starting", version="1.0.0")
    init_db()  # Initialize database
    logger.info("database_initialized")
    logger.info("ai_configured", openai=config.has_openai_key(), gemini=config.has_gemini_key())
    logger.info("sheets_configured", configured=config.has_sheets_config())

    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = build_runtime()
        app.state.runtime = runtime
    await runtime.start()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await runtime.stop()


app = FastAPI(
    title="LeadFlow API",
    description="WhatsApp lead qualification and appointment booking",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    api_request_duration.observe(time.perf_counter() - started)

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    api_requests_total.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
    return response


# GET /metrics
# Gets: nothing
# Returns: Prometheus text exposition
# Example:
#   curl http://localhost:8000/metrics
@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Include routers
from leadflow.health import router as health_router
from leadflow.routers.core import router as core_router
from leadflow.routers.conversations import router as conversations_router
from leadflow.routers.whatsapp import router as whatsapp_router

app.include_router(health_router)
app.include_router(core_router)
app.include_router(conversations_router)
app.include_router(whatsapp_router)
