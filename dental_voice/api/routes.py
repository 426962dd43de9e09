"""FastAPI route definitions for the dental voice API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query, Request

from dental_voice.api.schemas import (
    CallActionResponse,
    CallTextRequest,
    ChatRequest,
    ChatResponse,
    HealthResponse,
    HistoryResponse,
    IncidentsResponse,
)
from dental_voice.errors import SessionBusyError, SessionEvictedError
from dental_voice.models import UserText

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_orchestrator(request: Request):
    """Retrieve the orchestrator from app state.

    It is built once during the FastAPI lifespan (see ``server.py``).
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return orchestrator


def _get_bridges(request: Request):
    bridges = getattr(request.app.state, "bridges", None)
    if bridges is None:
        raise HTTPException(status_code=503, detail="Voice bridge is not running.")
    return bridges


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    store = getattr(request.app.state, "store", None)
    bridges = getattr(request.app.state, "bridges", None)
    return HealthResponse(
        active_sessions=store.session_count if store is not None else 0,
        active_calls=len(bridges) if bridges is not None else 0,
    )


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Run one text-channel turn.

    ``orchestrate()`` blocks on the model and the practice API, so it is
    offloaded to a thread via ``asyncio.to_thread``.  A second request for a
    session whose turn is still running gets 409 instead of interleaving.
    """
    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        result = await asyncio.to_thread(
            orchestrator.orchestrate, request.session_id, request.message, channel="text",
        )
    except SessionBusyError as e:
        raise HTTPException(
            status_code=409,
            detail="A reply for this session is still being prepared.",
        ) from e
    except SessionEvictedError as e:
        raise HTTPException(status_code=409, detail="This session has ended.") from e
    except Exception as e:
        # Full traceback stays in the server log; the client gets a generic message
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse(
        reply=result.text,
        session_id=request.session_id,
        outcome=result.outcome,
        round_trips=result.round_trips,
        error=result.error,
    )


@router.post("/calls/{call_id}/text", response_model=CallActionResponse, status_code=202)
async def send_call_text(call_id: str, body: CallTextRequest, http_request: Request):
    """Queue typed text for a live call; the reply is spoken as an announcement."""
    bridge = _get_bridges(http_request).get(call_id)
    if bridge is None:
        raise HTTPException(status_code=404, detail=f"No active call {call_id}.")
    bridge.enqueue_text(body.text)
    return CallActionResponse(call_id=call_id, status="queued")


@router.post("/calls/{call_id}/end", response_model=CallActionResponse)
async def end_call(call_id: str, http_request: Request):
    """End a call: a live connection is closed after its current turn and the
    session is evicted; a disconnected session is evicted directly."""
    bridge = _get_bridges(http_request).get(call_id)
    if bridge is not None:
        await bridge.end_call()
        return CallActionResponse(call_id=call_id, status="ending")

    store = getattr(http_request.app.state, "store", None)
    if store is not None and await asyncio.to_thread(store.evict, call_id):
        return CallActionResponse(call_id=call_id, status="evicted")
    raise HTTPException(status_code=404, detail=f"No session {call_id}.")


@router.get("/sessions/{session_id}/history", response_model=HistoryResponse)
async def session_history(session_id: str, http_request: Request):
    """Return the stored history of one session."""
    store = getattr(http_request.app.state, "store", None)
    session = store.get(session_id) if store is not None else None
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session {session_id}.")
    return HistoryResponse(
        session_id=session.session_id,
        channel=session.channel,
        # Injected prompts such as the greeting trigger are not caller speech
        messages=[m for m in session.history if not (isinstance(m, UserText) and m.synthetic)],
        transcript=session.transcript,
    )


@router.get("/incidents", response_model=IncidentsResponse)
async def list_incidents(http_request: Request, session_id: str | None = Query(None)):
    """Validation verdicts and workflow arbitrations, oldest first."""
    incident_log = getattr(http_request.app.state, "incident_log", None)
    entries = incident_log.entries(session_id) if incident_log is not None else []
    return IncidentsResponse(incidents=entries, count=len(entries))
