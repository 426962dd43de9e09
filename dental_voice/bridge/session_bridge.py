"""Per-call WebSocket handler between the voice provider and the orchestrator.

One ``SessionBridge`` owns one provider connection.  Frames are read on the
receive path and handled there when they are cheap (keepalives, transcript
updates); turns that need the orchestrator are put on a queue consumed by a
single worker task, which runs the blocking orchestrator in a thread.  A
slow turn therefore never delays a keepalive answer, and turns of one call
are answered strictly in the order they arrived.

After every orchestrator turn the bridge re-reads the session history from
the store, because the orchestrator appends function-call pairs to it while
the turn is running.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from dental_voice.bridge.protocol import (
    FrameKind,
    InboundFrame,
    keepalive_ack,
    session_config,
    standalone_announcement,
    turn_response,
)
from dental_voice.config import HOLD_ANNOUNCEMENT_AFTER_SECONDS, TURN_TIMEOUT_SECONDS
from dental_voice.models import FunctionCall
from dental_voice.orchestrator import Orchestrator
from dental_voice.prompts import (
    GENERIC_APOLOGY_TEXT,
    GREETING_TRIGGER,
    HOLD_ANNOUNCEMENT_TEXT,
    TURN_TIMEOUT_TEXT,
)

logger = logging.getLogger(__name__)

# Provider turn id used for the greeting
GREETING_TURN_ID = 0


@dataclass(frozen=True)
class Turn:
    text: str
    # ``None`` for out-of-band input: the reply goes out as an announcement
    turn_id: int | None


class SpokenReply:
    """Settles, once and across threads, what the caller hears for one turn.

    The orchestrator offers its reply through :meth:`settle` just before
    storing it; the bridge calls :meth:`substitute` when the turn times out.
    Whichever comes first wins, so the stored history always matches what
    was spoken.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._text: str | None = None

    def settle(self, text: str) -> str:
        with self._lock:
            if self._text is None:
                self._text = text
            return self._text

    def substitute(self, text: str) -> bool:
        """Replace the reply with *text* unless it has already been settled."""
        with self._lock:
            if self._text is not None:
                return False
            self._text = text
            return True


_STOP = object()


class BridgeRegistry:
    """Active bridges by session id.  Only touched from the event loop."""

    def __init__(self) -> None:
        self._bridges: dict[str, SessionBridge] = {}

    def register(self, bridge: SessionBridge) -> None:
        previous = self._bridges.get(bridge.session_id)
        if previous is not None and previous is not bridge:
            logger.info("Session %s reconnected; replacing previous connection", bridge.session_id)
        self._bridges[bridge.session_id] = bridge

    def unregister(self, bridge: SessionBridge) -> None:
        if self._bridges.get(bridge.session_id) is bridge:
            del self._bridges[bridge.session_id]

    def get(self, session_id: str) -> SessionBridge | None:
        return self._bridges.get(session_id)

    def __len__(self) -> int:
        return len(self._bridges)


class SessionBridge:
    def __init__(
        self,
        websocket: WebSocket,
        session_id: str,
        orchestrator: Orchestrator,
        *,
        registry: BridgeRegistry | None = None,
        turn_timeout: float = TURN_TIMEOUT_SECONDS,
        hold_after: float = HOLD_ANNOUNCEMENT_AFTER_SECONDS,
    ):
        self.session_id = session_id
        self._ws = websocket
        self._orchestrator = orchestrator
        self._store = orchestrator.store
        self._registry = registry
        self._turn_timeout = turn_timeout
        self._hold_after = hold_after

        self._queue: asyncio.Queue = asyncio.Queue()
        self._send_lock = asyncio.Lock()
        self._socket_open = False
        self._ending = False
        self._history: list[Any] = []
        self.is_first_turn = False

    @property
    def history(self) -> list[Any]:
        """Local view of the session history, resynced after every turn."""
        return self._history

    # ── Lifecycle ───────────────────────────────────────────────────

    async def run(self) -> None:
        """Serve the connection until the provider disconnects."""
        await self._ws.accept()
        self._socket_open = True

        self._store.get_or_create(self.session_id, channel="voice")
        self._history = self._store.history(self.session_id)
        self.is_first_turn = not self._history
        if self._registry is not None:
            self._registry.register(self)
        logger.info(
            "Voice session %s connected (%s, %d messages)",
            self.session_id, "new" if self.is_first_turn else "resumed", len(self._history),
        )

        await self._send(session_config())
        worker = asyncio.create_task(self._worker(), name=f"turns-{self.session_id}")
        if self.is_first_turn:
            await self._queue.put(Turn(GREETING_TRIGGER, GREETING_TURN_ID))

        try:
            await self._receive_loop()
        finally:
            self._socket_open = False
            dropped = self._drain_queue()
            if dropped:
                logger.info("Session %s: dropped %d queued turn(s) on disconnect", self.session_id, dropped)
            await self._queue.put(_STOP)
            # Lets an in-flight turn finish before the session can go away
            await worker
            if self._registry is not None:
                self._registry.unregister(self)
            if self._ending:
                await asyncio.to_thread(self._store.evict, self.session_id)
            logger.info("Voice session %s disconnected (ended=%s)", self.session_id, self._ending)

    def enqueue_text(self, text: str) -> None:
        """Queue typed text that arrived outside the voice protocol."""
        self._queue.put_nowait(Turn(text, None))

    async def end_call(self) -> None:
        """Finish the current turn, then evict the session and close the socket."""
        self._ending = True
        async with self._send_lock:
            if not self._socket_open:
                return
            self._socket_open = False
            try:
                await self._ws.close(code=1000)
            except RuntimeError:
                logger.debug("Session %s: socket already closed", self.session_id)

    def _drain_queue(self) -> int:
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            dropped += 1

    # ── Receive path ────────────────────────────────────────────────

    async def _receive_loop(self) -> None:
        while True:
            try:
                raw = await self._ws.receive_text()
            except WebSocketDisconnect:
                return
            except RuntimeError:
                # receive() after the socket was closed from our side
                return

            try:
                frame = InboundFrame.model_validate(json.loads(raw))
            except (ValueError, ValidationError) as exc:
                logger.warning("Session %s: ignoring malformed frame (%s)", self.session_id, exc)
                continue

            try:
                await self._dispatch(frame)
            except Exception:
                logger.exception("Session %s: error handling %s frame", self.session_id, frame.interaction_type)

    async def _dispatch(self, frame: InboundFrame) -> None:
        kind = frame.kind

        if kind is FrameKind.KEEPALIVE:
            await self._send(keepalive_ack(frame))

        elif kind is FrameKind.INFO_ONLY:
            self._record_transcript(frame)

        elif kind is FrameKind.TURN_COMPLETE:
            self._record_transcript(frame)
            text = frame.latest_user_utterance()
            if not text:
                logger.warning("Session %s: turn %s has no caller utterance", self.session_id, frame.response_id)
                if frame.response_id is not None:
                    await self._send(turn_response(frame.response_id, ""))
                return
            logger.info("Session %s: turn %s queued", self.session_id, frame.response_id)
            await self._queue.put(Turn(text, frame.response_id))

        elif kind is FrameKind.OUT_OF_BAND_TEXT:
            text = (frame.content or "").strip()
            if text:
                await self._queue.put(Turn(text, None))

        elif kind is FrameKind.SESSION_DETAILS:
            logger.info("Session %s: call details received", self.session_id)

        elif kind is FrameKind.CALL_ENDED:
            logger.info("Session %s: provider reported call ended", self.session_id)
            self._ending = True

        else:
            logger.debug("Session %s: unknown interaction_type %r", self.session_id, frame.interaction_type)

    def _record_transcript(self, frame: InboundFrame) -> None:
        if not frame.transcript:
            return
        try:
            self._store.update_transcript(
                self.session_id, [u.model_dump(include={"role", "content"}) for u in frame.transcript],
            )
        except KeyError:
            logger.debug("Session %s: transcript update after eviction", self.session_id)

    # ── Turn worker ─────────────────────────────────────────────────

    async def _worker(self) -> None:
        while True:
            turn = await self._queue.get()
            if turn is _STOP:
                return
            try:
                await self._process(turn)
            except Exception:
                logger.exception("Session %s: turn failed", self.session_id)

    async def _process(self, turn: Turn) -> None:
        reply = SpokenReply()
        before = len(self._history)
        task = asyncio.ensure_future(
            asyncio.to_thread(
                self._orchestrator.orchestrate,
                self.session_id, turn.text, channel="voice", wait=True, on_reply=reply.settle,
            )
        )
        hold = asyncio.create_task(self._hold_announcement(task))
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=self._turn_timeout)
            text = result.text
        except asyncio.TimeoutError:
            if reply.substitute(TURN_TIMEOUT_TEXT):
                logger.warning(
                    "Session %s: turn %s exceeded %.0fs; the running loop will finish in the background",
                    self.session_id, turn.turn_id, self._turn_timeout,
                )
                task.add_done_callback(self._log_late_turn)
                text = TURN_TIMEOUT_TEXT
            else:
                # The loop settled its reply just as the timeout fired
                text = (await task).text
        except Exception:
            logger.exception("Session %s: orchestrator error", self.session_id)
            text = GENERIC_APOLOGY_TEXT
        finally:
            hold.cancel()

        # The orchestrator appended to the shared history mid-turn
        self._history = self._store.history(self.session_id)
        self.is_first_turn = not self._history
        calls = [m.name for m in self._history[before:] if isinstance(m, FunctionCall)]
        if calls:
            logger.info("Session %s: turn %s ran %s", self.session_id, turn.turn_id, calls)

        if turn.turn_id is None:
            await self._send(standalone_announcement(text))
        else:
            await self._send(turn_response(turn.turn_id, text))

    async def _hold_announcement(self, task: asyncio.Future) -> None:
        await asyncio.sleep(self._hold_after)
        if not task.done():
            await self._send(standalone_announcement(HOLD_ANNOUNCEMENT_TEXT))

    def _log_late_turn(self, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Session %s: late turn failed: %s", self.session_id, exc)
        else:
            logger.info("Session %s: late turn finished (%s)", self.session_id, task.result().outcome)

    # ── Send path ───────────────────────────────────────────────────

    async def _send(self, payload: dict[str, Any]) -> bool:
        async with self._send_lock:
            if not self._socket_open:
                logger.debug("Session %s: socket closed, dropping %s", self.session_id, payload.get("response_type"))
                return False
            try:
                await self._ws.send_json(payload)
            except Exception as exc:
                # Disconnect races surface as different exception types per server
                logger.warning("Session %s: send failed (%s)", self.session_id, type(exc).__name__)
                self._socket_open = False
                return False
        return True
