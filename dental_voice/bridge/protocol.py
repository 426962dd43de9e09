"""Wire format of the voice provider's LLM WebSocket.

Inbound frames carry an ``interaction_type`` discriminator; outbound frames a
``response_type``.  The bridge only ever deals in the ``FrameKind`` values
below, so the provider's naming stays confined to this module.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class FrameKind(str, Enum):
    KEEPALIVE = "keepalive"
    TURN_COMPLETE = "turn_complete"
    INFO_ONLY = "info_only"
    OUT_OF_BAND_TEXT = "out_of_band_text"
    SESSION_DETAILS = "session_details"
    CALL_ENDED = "call_ended"
    UNKNOWN = "unknown"


_KINDS = {
    "ping_pong": FrameKind.KEEPALIVE,
    "ping": FrameKind.KEEPALIVE,
    "response_required": FrameKind.TURN_COMPLETE,
    "reminder_required": FrameKind.TURN_COMPLETE,
    "update_only": FrameKind.INFO_ONLY,
    "text_input": FrameKind.OUT_OF_BAND_TEXT,
    "call_details": FrameKind.SESSION_DETAILS,
    "call_ended": FrameKind.CALL_ENDED,
}


class Utterance(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: str = ""


class InboundFrame(BaseModel):
    """One frame from the provider.  Unknown fields are kept, not rejected."""

    model_config = ConfigDict(extra="allow")

    interaction_type: str
    response_id: int | None = None
    transcript: list[Utterance] = Field(default_factory=list)
    content: str | None = None
    timestamp: int | None = None

    @property
    def kind(self) -> FrameKind:
        return _KINDS.get(self.interaction_type, FrameKind.UNKNOWN)

    def latest_user_utterance(self) -> str:
        """Content of the last non-empty caller utterance, or ``""``."""
        for utterance in reversed(self.transcript):
            if utterance.role == "user" and utterance.content.strip():
                return utterance.content.strip()
        return ""


# ── Outbound frames ─────────────────────────────────────────────────


class TurnResponse(BaseModel):
    response_type: Literal["response"] = "response"
    response_id: int
    content: str
    content_complete: bool = True
    end_call: bool = False


class StandaloneAnnouncement(BaseModel):
    """Spoken on its own; never concatenated with a turn's partial replies."""

    response_type: Literal["agent_interrupt"] = "agent_interrupt"
    content: str
    content_complete: Literal[True] = True


class KeepaliveAck(BaseModel):
    response_type: Literal["ping_pong"] = "ping_pong"
    timestamp: int


class SessionConfig(BaseModel):
    response_type: Literal["config"] = "config"
    config: dict[str, Any] = Field(
        default_factory=lambda: {"auto_reconnect": True, "call_details": True}
    )


def turn_response(turn_id: int, text: str, *, done: bool = True) -> dict[str, Any]:
    return TurnResponse(response_id=turn_id, content=text, content_complete=done).model_dump()


def standalone_announcement(text: str) -> dict[str, Any]:
    return StandaloneAnnouncement(content=text).model_dump()


def keepalive_ack(frame: InboundFrame) -> dict[str, Any]:
    timestamp = frame.timestamp if frame.timestamp is not None else int(time.time() * 1000)
    return KeepaliveAck(timestamp=timestamp).model_dump()


def session_config() -> dict[str, Any]:
    return SessionConfig().model_dump()
