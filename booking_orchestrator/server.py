"""FastAPI server for the Conversational Booking Orchestrator.

Run with:
    uvicorn booking_orchestrator.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from booking_orchestrator.api.routes import router
from booking_orchestrator.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from booking_orchestrator.container import build_orchestrator
from booking_orchestrator.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the orchestrator once and keep it in app state."""
    logger.info("Building booking orchestrator...")
    orchestrator = build_orchestrator()
    application.state.orchestrator = orchestrator
    logger.info("Orchestrator ready.")
    yield
    orchestrator.close()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Conversational Booking Orchestrator",
    description=(
        "Vietnamese hospital assistant: triage symptoms, find doctors, "
        "book, cancel and reschedule appointments, manage prescriptions."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID (``X-Request-ID``) for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Conversational Booking Orchestrator",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting booking API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "booking_orchestrator.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
