"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class HistoryMessage(BaseModel):
    """One prior turn of the conversation, as the client remembers it."""

    role: Literal["user", "assistant"]
    content: str = Field(..., max_length=4000)


class ChatRequest(BaseModel):
    """One user utterance plus the client-held history."""

    user_prompt: str = Field(..., min_length=1, max_length=2000, description="The user's message")
    history: list[HistoryMessage] = Field(
        default_factory=list,
        description="Earlier messages, oldest first; only the most recent 30 are used",
    )
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Opaque chat session identifier",
    )


class ChatResponse(BaseModel):
    """Reply for one turn."""

    text: str = Field(..., description="The assistant's reply")
    used_tool: bool = Field(..., description="Whether any tool ran during the turn")
    session_id: str
    intent: str | None = None
    zone: str = "normal"
    cached: bool = False


class BindUserRequest(BaseModel):
    """Bind an authenticated user to a chat session."""

    user_id: str = Field(..., min_length=1, max_length=100)


class SessionResponse(BaseModel):
    session_id: str
    status: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "booking-orchestrator"
