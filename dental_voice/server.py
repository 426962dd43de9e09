"""FastAPI server for the dental voice booking core.

Serves the voice provider's LLM WebSocket at ``/llm-websocket/{call_id}``
and the HTTP API under ``/api``.

Run with:
    uvicorn dental_voice.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from dental_voice.api.routes import router
from dental_voice.bridge.session_bridge import BridgeRegistry, SessionBridge
from dental_voice.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from dental_voice.orchestrator import create_orchestrator
from dental_voice.services.conversation_store import ConversationStore
from dental_voice.services.incident_log import IncidentLog
from dental_voice.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the store, incident log and orchestrator once and
    keep them in app state; start the session sweeper."""
    logger.info("Building orchestrator…")
    store = ConversationStore()
    incident_log = IncidentLog()
    application.state.store = store
    application.state.incident_log = incident_log
    application.state.bridges = BridgeRegistry()
    application.state.orchestrator = create_orchestrator(store, incident_log=incident_log)
    store.start_sweeper()
    logger.info("Orchestrator ready.")
    yield
    store.stop_sweeper()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Dental Voice Agent",
    description=(
        "Voice appointment-booking core — books, reschedules and cancels "
        "appointments against the practice-management API."
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
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header so clients
    can quote it when reporting problems.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.websocket("/llm-websocket/{call_id}")
async def llm_websocket(websocket: WebSocket, call_id: str):
    """One voice call.  Reconnects with the same call id resume its history."""
    orchestrator = getattr(websocket.app.state, "orchestrator", None)
    if orchestrator is None:
        # 1013: try again later
        await websocket.close(code=1013)
        return
    bridge = SessionBridge(
        websocket, call_id, orchestrator, registry=getattr(websocket.app.state, "bridges", None),
    )
    await bridge.run()


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Dental Voice Agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "websocket": "/llm-websocket/{call_id}",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting dental voice server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "dental_voice.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
