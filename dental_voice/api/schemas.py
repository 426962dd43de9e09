"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from dental_voice.models import IncidentEntry, Message


class ChatRequest(BaseModel):
    """Typed message on the text channel."""

    message: str = Field(..., min_length=1, max_length=2000, description="The caller's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )


class ChatResponse(BaseModel):
    reply: str = Field(..., description="The assistant's reply")
    session_id: str = Field(..., description="The session ID for this conversation")
    outcome: str = Field("answered", description="answered, cap_exceeded, upstream_failure or error")
    round_trips: int = 0
    error: dict[str, Any] | None = None


class CallTextRequest(BaseModel):
    """Text to inject into a live voice call."""

    text: str = Field(..., min_length=1, max_length=2000)


class CallActionResponse(BaseModel):
    call_id: str
    status: str


class HistoryResponse(BaseModel):
    session_id: str
    channel: str
    messages: list[Message]
    transcript: list[dict[str, str]] = Field(default_factory=list)


class IncidentsResponse(BaseModel):
    incidents: list[IncidentEntry]
    count: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "dental-voice-agent"
    active_sessions: int = 0
    active_calls: int = 0
