"""Thread-safe in-memory conversation state, keyed by session id.

Design decisions
────────────────
• **Per-session locks**.  A short registry lock guards only the dict of
  sessions; every read/write of a session's history happens under that
  session's own lock, so concurrent calls never serialise on each other.
• **Turn locks**.  A second lock per session marks "an orchestration loop
  is running".  The orchestrator holds it for a whole turn; eviction waits
  for it, so an in-flight loop always finishes before its session goes.
• **Pairing enforcement**.  Writes that would leave a ``FunctionCall``
  without its ``FunctionResult`` right behind it raise ``PairingViolation``.
• **TTL eviction** by a daemon sweeper thread.  Idle sessions older than
  ``ttl_seconds`` are removed unless a turn is in flight.
• Purely ephemeral; durable call records belong to an external store.

>>> store = ConversationStore(ttl_seconds=1800)
>>> store.get_or_create("call-123", channel="voice")
>>> store.append("call-123", UserText(text="I need a cleaning"))
>>> store.history("call-123")
[UserText(kind='user_text', text='I need a cleaning')]
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

from dental_voice.config import SESSION_SWEEP_INTERVAL_SECONDS, SESSION_TTL_MINUTES
from dental_voice.errors import PairingViolation
from dental_voice.models import Channel, FunctionCall, FunctionResult, Session, check_pairing

logger = logging.getLogger(__name__)


class _Slot:
    """A session plus the locks that guard it."""

    __slots__ = ("session", "lock", "turn_lock")

    def __init__(self, session: Session) -> None:
        self.session = session
        self.lock = threading.RLock()
        self.turn_lock = threading.Lock()


class ConversationStore:
    """Map ``session_id -> Session`` with atomic per-session operations."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        *,
        clock=time.time,
    ) -> None:
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else SESSION_TTL_MINUTES * 60
        self._clock = clock
        self._slots: dict[str, _Slot] = {}
        self._registry_lock = threading.Lock()
        self._sweeper: threading.Thread | None = None
        self._stop = threading.Event()

    # ── Slot lookup ─────────────────────────────────────────────────

    def _slot(self, session_id: str) -> _Slot:
        with self._registry_lock:
            slot = self._slots.get(session_id)
        if slot is None:
            raise KeyError(session_id)
        return slot

    def get_or_create(self, session_id: str, channel: Channel = "voice") -> Session:
        """Return the live session, creating an empty one if needed."""
        with self._registry_lock:
            slot = self._slots.get(session_id)
            if slot is None:
                now = self._clock()
                slot = _Slot(
                    Session(session_id=session_id, channel=channel, created_at=now, last_activity_at=now)
                )
                self._slots[session_id] = slot
                logger.info("Created session %s (%s)", session_id, channel)
        return slot.session

    def has(self, session_id: str) -> bool:
        with self._registry_lock:
            return session_id in self._slots

    # ── Reads ───────────────────────────────────────────────────────

    def get(self, session_id: str) -> Session | None:
        """Return a snapshot of the session (history copied) or ``None``."""
        with self._registry_lock:
            slot = self._slots.get(session_id)
        if slot is None:
            return None
        with slot.lock:
            s = slot.session
            return Session(
                session_id=s.session_id,
                channel=s.channel,
                history=list(s.history),
                transcript=[dict(u) for u in s.transcript],
                created_at=s.created_at,
                last_activity_at=s.last_activity_at,
            )

    def history(self, session_id: str) -> list[Any]:
        """Return a copy of the ordered history (empty for unknown sessions)."""
        session = self.get(session_id)
        return session.history if session is not None else []

    # ── Writes ──────────────────────────────────────────────────────

    def append(self, session_id: str, message: Any) -> None:
        """Append one message, enforcing the pairing invariant."""
        slot = self._slot(session_id)
        with slot.lock:
            history = slot.session.history
            last = history[-1] if history else None
            if isinstance(last, FunctionCall):
                if not isinstance(message, FunctionResult) or message.call_id != last.call_id:
                    raise PairingViolation(
                        f"Session {session_id}: expected result for {last.call_id} before anything else"
                    )
            elif isinstance(message, FunctionResult):
                raise PairingViolation(
                    f"Session {session_id}: result {message.call_id} has no pending call"
                )
            history.append(message)
            slot.session.last_activity_at = self._clock()

    def append_pair(self, session_id: str, call: FunctionCall, result: FunctionResult) -> None:
        """Append a call and its result atomically."""
        if result.call_id != call.call_id:
            raise PairingViolation(f"Result {result.call_id} does not answer call {call.call_id}")
        slot = self._slot(session_id)
        with slot.lock:
            history = slot.session.history
            if history and isinstance(history[-1], FunctionCall):
                raise PairingViolation(
                    f"Session {session_id}: call {history[-1].call_id} is still unanswered"
                )
            history.extend((call, result))
            slot.session.last_activity_at = self._clock()

    def replace(self, session_id: str, messages: list[Any]) -> None:
        """Swap the whole history for *messages* (validated first)."""
        check_pairing(messages)
        slot = self._slot(session_id)
        with slot.lock:
            slot.session.history = list(messages)
            slot.session.last_activity_at = self._clock()

    def update_transcript(self, session_id: str, utterances: list[dict[str, str]]) -> None:
        """Record the provider's latest transcript snapshot."""
        slot = self._slot(session_id)
        with slot.lock:
            slot.session.transcript = [dict(u) for u in utterances]
            slot.session.last_activity_at = self._clock()

    def touch(self, session_id: str) -> None:
        slot = self._slot(session_id)
        with slot.lock:
            slot.session.last_activity_at = self._clock()

    # ── Turn exclusivity ────────────────────────────────────────────

    def turn_lock(self, session_id: str) -> threading.Lock:
        """Lock held by the orchestrator for the duration of one turn."""
        return self._slot(session_id).turn_lock

    # ── Eviction ────────────────────────────────────────────────────

    def evict(self, session_id: str, *, wait_for_turn: bool = True) -> bool:
        """Remove a session.  Returns ``True`` if it existed.

        With ``wait_for_turn`` the call blocks until any in-flight turn for
        the session has finished.
        """
        with self._registry_lock:
            slot = self._slots.get(session_id)
        if slot is None:
            return False
        if wait_for_turn:
            with slot.turn_lock:
                return self._drop(session_id, slot)
        return self._drop(session_id, slot)

    def _drop(self, session_id: str, slot: _Slot) -> bool:
        with self._registry_lock:
            if self._slots.get(session_id) is not slot:
                return False
            del self._slots[session_id]
        logger.info("Evicted session %s", session_id)
        return True

    def sweep_expired(self, now: float | None = None) -> int:
        """Evict idle sessions past the TTL.  Busy sessions are skipped."""
        now = self._clock() if now is None else now
        with self._registry_lock:
            candidates = list(self._slots.items())

        removed = 0
        for session_id, slot in candidates:
            with slot.lock:
                idle = now - slot.session.last_activity_at
            if idle < self._ttl_seconds:
                continue
            if not slot.turn_lock.acquire(blocking=False):
                continue
            try:
                if self._drop(session_id, slot):
                    removed += 1
            finally:
                slot.turn_lock.release()
        if removed:
            logger.info("Swept %d expired session(s)", removed)
        return removed

    @property
    def session_count(self) -> int:
        return len(self._slots)

    # ── Background sweeper ──────────────────────────────────────────

    def start_sweeper(self, interval_seconds: float | None = None) -> None:
        """Start a daemon thread that evicts expired sessions periodically."""
        if self._sweeper is not None:
            return
        interval = interval_seconds or SESSION_SWEEP_INTERVAL_SECONDS

        def _loop():
            while not self._stop.wait(interval):
                try:
                    self.sweep_expired()
                except Exception:
                    logger.exception("Session sweeper error")

        self._sweeper = threading.Thread(target=_loop, daemon=True, name="session-sweeper")
        self._sweeper.start()
        logger.info("Session sweeper started (interval=%ds, ttl=%ds)", interval, self._ttl_seconds)

    def stop_sweeper(self) -> None:
        self._stop.set()
        self._sweeper = None
