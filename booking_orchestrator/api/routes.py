"""FastAPI route definitions for the booking orchestrator API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from booking_orchestrator.api.schemas import (
    BindUserRequest,
    ChatRequest,
    ChatResponse,
    HealthResponse,
    SessionResponse,
)
from booking_orchestrator.orchestrator import BookingOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_orchestrator(request: Request) -> BookingOrchestrator:
    """The orchestrator built during the FastAPI lifespan (see ``server.py``)."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return orchestrator


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Run one conversational turn.

    ``handle_turn`` blocks on the model and vector store, so it runs on the
    default thread pool via ``asyncio.to_thread``.  The orchestrator already
    turns pipeline failures into an apology; anything escaping it is a 500.
    """
    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        result = await asyncio.to_thread(
            orchestrator.handle_turn,
            request.user_prompt,
            [m.model_dump() for m in request.history],
            request.session_id,
        )
    except Exception as e:
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse(
        text=result.text,
        used_tool=result.used_tool,
        session_id=request.session_id,
        intent=str(result.intent) if result.intent else None,
        zone=str(result.zone),
        cached=result.cached,
    )


@router.put("/sessions/{session_id}/user", response_model=SessionResponse)
async def bind_user(session_id: str, body: BindUserRequest, http_request: Request):
    """Attach the authenticated user to a session (called after login)."""
    orchestrator = _get_orchestrator(http_request)
    orchestrator.bind_user(session_id, body.user_id)
    return SessionResponse(session_id=session_id, status="bound")


@router.delete("/sessions/{session_id}", response_model=SessionResponse)
async def end_session(session_id: str, http_request: Request):
    """Tear down conversation state, behavior counters, identity and cached slots."""
    orchestrator = _get_orchestrator(http_request)
    existed = orchestrator.end_session(session_id)
    return SessionResponse(session_id=session_id, status="deleted" if existed else "not_found")


@router.post("/sessions/{session_id}/reset-behavior", response_model=SessionResponse)
async def reset_behavior(session_id: str, http_request: Request):
    orchestrator = _get_orchestrator(http_request)
    orchestrator.reset_behavior(session_id)
    return SessionResponse(session_id=session_id, status="reset")
