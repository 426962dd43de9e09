"""LangGraph tool-call orchestrator for the dental voice core.

Architecture:
  One turn (one caller utterance) runs through a LangGraph StateGraph with
  four nodes:

    1. **router**    — cheap Haiku call that labels the utterance with an
                       intent and resolves the matching workflow plan
                       (canned or freshly synthesized).  Optional.
    2. **model**     — the conversation model, with every practice operation
                       bound as a tool and parallel tool calls disabled.
    3. **tools**     — runs the requested calls strictly in order:
                       identifier propagation → validation → execution, and
                       appends each call/result pair to the session history.
    4. **fallback**  — fixed "please try again" reply once the round-trip
                       cap is reached.

  Routing:
    router → model → (no tool calls?)     → END
                   → (cap reached?)       → fallback → END
                   → (tool calls?)        → tools → model (loop)

  Memory:
    History lives in the ``ConversationStore``, not in a LangGraph
    checkpointer.  The model node rebuilds its request from the store on
    every round trip, so function results appended by the tools node are
    always visible to the next call.

  Failures never escape a turn: operation errors become ``FunctionResult``
  errors the model can react to, and anything that ends the turn early
  produces a short fallback reply.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import anthropic
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, HumanMessage
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from dental_voice.config import (
    ANTHROPIC_API_KEY,
    INTENT_ROUTING_ENABLED,
    MAX_ROUND_TRIPS,
    MODEL_NAME,
    MODEL_RETRY_ATTEMPTS,
    ROUND_TRIP_TIMEOUT_SECONDS,
    ROUTER_MODEL_NAME,
)
from dental_voice.errors import (
    IterationCapExceeded,
    OrchestrationError,
    SessionBusyError,
    SessionEvictedError,
    TransientUpstreamError,
    UnknownOperation,
    ValidationBlocked,
    WorkflowSynthesisError,
)
from dental_voice.models import (
    AssistantText,
    FunctionCall,
    FunctionResult,
    OrchestrationRequest,
    ToolSpec,
    UserText,
)
from dental_voice.prompts import (
    CAP_FALLBACK_TEXT,
    GENERIC_APOLOGY_TEXT,
    GREETING_TRIGGER,
    ROUTER_PROMPT,
    UPSTREAM_FAILURE_TEXT,
    load_instructions,
)
from dental_voice.services.conversation_store import ConversationStore
from dental_voice.services.incident_log import IncidentLog
from dental_voice.services.metrics import metrics
from dental_voice.tools.executor import ExternalAPIExecutor
from dental_voice.tools.operations import (
    OPERATIONS,
    OperationSpec,
    collect_created_ids,
    extract_created_ids,
    propagate_identifiers,
    tool_specs,
)
from dental_voice.validator import ValidationLayer
from dental_voice.workflows import WorkflowSynthesizer

logger = logging.getLogger(__name__)

# Errors worth re-running a whole round trip for
TRANSIENT_MODEL_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
    anthropic.RateLimitError,
    TransientUpstreamError,
)


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict, total=False):
    """State that flows through the graph for one turn.

    ``pending`` holds the function calls requested by the latest model
    response; the tools node drains it.  ``created_ids`` carries identifiers
    returned by create operations so later calls in the loop can use them.
    """

    session_id: str
    user_text: str
    instructions: str
    intent: str
    round_trips: int
    pending: list[FunctionCall]
    created_ids: dict[str, Any]
    final_text: str
    outcome: str


@dataclass
class OrchestrationResult:
    text: str
    error: dict[str, Any] | None = None
    round_trips: int = 0
    outcome: str = "answered"
    intent: str | None = None


# ── LLM builders ────────────────────────────────────────────────────


def _build_llm(tools: list[ToolSpec]):
    """Build the conversation model with every operation bound as a tool."""
    llm = ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,  # Low temperature for consistent, factual responses
        max_tokens=1024,
        timeout=ROUND_TRIP_TIMEOUT_SECONDS,
        max_retries=0,  # Retries happen at the round-trip boundary
    )
    return llm.bind_tools([t.to_tool_definition() for t in tools], parallel_tool_calls=False)


def _build_router_llm() -> ChatAnthropic:
    """Build a lightweight Haiku LLM for intent classification (no tools)."""
    return ChatAnthropic(
        model=ROUTER_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=20,
        timeout=ROUND_TRIP_TIMEOUT_SECONDS,
        max_retries=0,  # A failed classification just skips the plan
    )


def _text_of(message: AIMessage) -> str:
    """Concatenate the text blocks of a model response."""
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts).strip()


def _normalise_intent(raw: str) -> str:
    words = raw.strip().lower().split()
    label = re.sub(r"[^a-z0-9_]+", "_", words[0] if words else "").strip("_")
    return label or "other"


def _router_context(history: list[Any], max_messages: int = 6) -> str:
    """Short summary of recent turns so the router can see an ongoing flow."""
    recent = [
        m for m in history
        if isinstance(m, AssistantText) or (isinstance(m, UserText) and not m.synthetic)
    ][-max_messages - 1:-1]
    if not recent:
        return ""
    lines = ["Recent conversation:\n"]
    for message in recent:
        speaker = "Caller" if isinstance(message, UserText) else "Assistant"
        lines.append(f"  {speaker}: {message.text[:200]}")
    lines.append("")
    return "\n".join(lines)


class Orchestrator:
    """Turn one caller utterance into one reply, running operations on the way."""

    def __init__(
        self,
        store: ConversationStore,
        executor: ExternalAPIExecutor,
        *,
        llm=None,
        validator: ValidationLayer | None = None,
        router_llm=None,
        synthesizer: WorkflowSynthesizer | None = None,
        instructions: Callable[[], str] | str = load_instructions,
        operations: dict[str, OperationSpec] | None = None,
        max_round_trips: int = MAX_ROUND_TRIPS,
        retry_attempts: int = MODEL_RETRY_ATTEMPTS,
        retry_backoff_seconds: float = 1.0,
    ):
        self._store = store
        self._executor = executor
        self._validator = validator
        self._router_llm = router_llm
        self._synthesizer = synthesizer
        self._instructions = instructions
        self._operations = operations or OPERATIONS
        self._tools = tool_specs(self._operations)
        self._llm = llm if llm is not None else _build_llm(self._tools)
        self.max_round_trips = max_round_trips
        self._retry_attempts = retry_attempts
        self._retry_backoff_seconds = retry_backoff_seconds
        self._graph = self._build_graph()

    @property
    def store(self) -> ConversationStore:
        return self._store

    # ── Node: router ────────────────────────────────────────────────

    def _router_node(self, state: TurnState) -> dict:
        """Label the utterance and fold the matching plan into the instructions."""
        user_text = state["user_text"]
        if user_text == GREETING_TRIGGER:
            return {"intent": "greeting"}

        history = self._store.history(state["session_id"])
        prompt = ROUTER_PROMPT.format(context=_router_context(history), message=user_text)
        try:
            with metrics.timed("anthropic", "router_classify"):
                response = self._router_llm.invoke([HumanMessage(content=prompt)])
            intent = _normalise_intent(_text_of(response))
        except Exception as exc:
            logger.warning("Router failed, continuing without a plan: %s", exc)
            return {"intent": "other"}

        logger.debug("Router (%s) classified as: %s", ROUTER_MODEL_NAME, intent)
        if self._synthesizer is None:
            return {"intent": intent}
        try:
            workflow = self._synthesizer.resolve(intent, state["session_id"])
        except WorkflowSynthesisError as exc:
            logger.warning("No workflow for %s: %s", intent, exc)
            return {"intent": intent}
        except Exception:
            logger.exception("Workflow resolution failed for %s", intent)
            return {"intent": intent}

        if workflow is None:
            return {"intent": intent}
        return {"intent": intent, "instructions": f"{state['instructions']}\n\n{workflow.render()}"}

    # ── Node: model ─────────────────────────────────────────────────

    def _invoke_model(self, request: OrchestrationRequest) -> AIMessage:
        """One round trip, retried as a whole on transient upstream errors."""
        messages = request.to_langchain_messages()
        attempts = self._retry_attempts + 1
        for attempt in range(1, attempts + 1):
            try:
                with metrics.timed("anthropic", "llm_invoke"):
                    return self._llm.invoke(messages)
            except TRANSIENT_MODEL_ERRORS as exc:
                if attempt == attempts:
                    raise TransientUpstreamError(f"Model unavailable: {type(exc).__name__}") from exc
                backoff = self._retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Model round trip %d/%d failed (%s). Retrying in %.1fs…",
                    attempt, attempts, type(exc).__name__, backoff,
                )
                time.sleep(backoff)
        raise TransientUpstreamError("Model unavailable")

    def _model_node(self, state: TurnState) -> dict:
        session_id = state["session_id"]
        round_trips = state.get("round_trips", 0) + 1
        request = OrchestrationRequest(
            session_id=session_id,
            instructions=state["instructions"],
            tools=self._tools,
            input=self._store.history(session_id),
        )
        try:
            response = self._invoke_model(request)
        except TransientUpstreamError as exc:
            logger.warning("[%s] Giving up on turn: %s", session_id, exc)
            return {
                "round_trips": round_trips,
                "pending": [],
                "final_text": UPSTREAM_FAILURE_TEXT,
                "outcome": "upstream_failure",
            }

        calls = [
            FunctionCall(
                name=tc["name"],
                arguments=dict(tc.get("args") or {}),
                call_id=tc.get("id") or f"call_{uuid.uuid4().hex[:12]}",
            )
            for tc in (getattr(response, "tool_calls", None) or [])
        ]
        if calls:
            logger.debug(
                "[%s] Round trip %d requested %s", session_id, round_trips, [c.name for c in calls],
            )
            return {"round_trips": round_trips, "pending": calls}
        return {
            "round_trips": round_trips,
            "pending": [],
            "final_text": _text_of(response),
            "outcome": "answered",
        }

    # ── Node: tools ─────────────────────────────────────────────────

    def _run_call(
        self,
        session_id: str,
        call: FunctionCall,
        created_ids: dict[str, Any],
    ) -> tuple[FunctionCall, FunctionResult]:
        """Validate and execute one call; never raises."""
        try:
            spec = self._executor.spec_for(call.name)
        except UnknownOperation as exc:
            return call, FunctionResult(call_id=call.call_id, error=exc.to_error())

        arguments = propagate_identifiers(spec, call.arguments, created_ids)
        if arguments != call.arguments:
            logger.info(
                "[%s] Filled identifiers for %s from earlier results: %s",
                session_id, call.name,
                {k: v for k, v in arguments.items() if call.arguments.get(k) != v},
            )
            call = call.model_copy(update={"arguments": arguments})

        try:
            if self._validator is not None and self._validator.should_validate(spec):
                verdict = self._validator.validate(
                    session_id, call, spec, self._store.history(session_id),
                )
                if verdict.blocks:
                    if verdict.validator_available:
                        error = ValidationBlocked(verdict)
                    else:
                        error = TransientUpstreamError(
                            f"{call.name} could not be checked right now. Please try again shortly."
                        )
                    return call, FunctionResult(call_id=call.call_id, error=error.to_error())

            payload = self._executor.execute(call.name, arguments)
        except OrchestrationError as exc:
            return call, FunctionResult(call_id=call.call_id, error=exc.to_error())
        except Exception:
            logger.exception("[%s] Unexpected error running %s", session_id, call.name)
            error = OrchestrationError(f"{call.name} failed unexpectedly.")
            return call, FunctionResult(call_id=call.call_id, error=error.to_error())

        created_ids.update(extract_created_ids(spec, payload))
        return call, FunctionResult(call_id=call.call_id, payload=payload)

    def _tools_node(self, state: TurnState) -> dict:
        """Run the pending calls one at a time, in the order requested."""
        session_id = state["session_id"]
        created_ids = dict(state.get("created_ids") or {})
        for requested in state.get("pending", []):
            call, result = self._run_call(session_id, requested, created_ids)
            self._store.append_pair(session_id, call, result)
            if not result.ok:
                logger.info("[%s] %s -> %s", session_id, call.name, result.error["code"])
        return {"pending": [], "created_ids": created_ids}

    # ── Node: fallback ──────────────────────────────────────────────

    def _fallback_node(self, state: TurnState) -> dict:
        logger.warning(
            "[%s] Round-trip cap (%d) reached; answering with fallback",
            state["session_id"], self.max_round_trips,
        )
        metrics.record_count("Orchestrator/CapExceeded")
        return {"pending": [], "final_text": CAP_FALLBACK_TEXT, "outcome": "cap_exceeded"}

    # ── Conditional edges ───────────────────────────────────────────

    def _after_model(self, state: TurnState) -> str:
        if not state.get("pending"):
            return END
        if state.get("round_trips", 0) >= self.max_round_trips:
            return "fallback"
        return "tools"

    # ── Graph assembly ──────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(TurnState)
        graph.add_node("model", self._model_node)
        graph.add_node("tools", self._tools_node)
        graph.add_node("fallback", self._fallback_node)

        if self._router_llm is not None:
            graph.add_node("router", self._router_node)
            graph.set_entry_point("router")
            graph.add_edge("router", "model")
        else:
            graph.set_entry_point("model")

        graph.add_conditional_edges(
            "model", self._after_model, {"tools": "tools", "fallback": "fallback", END: END},
        )
        graph.add_edge("tools", "model")
        graph.add_edge("fallback", END)
        return graph.compile()

    # ── Public API ──────────────────────────────────────────────────

    def orchestrate(
        self,
        session_id: str,
        user_text: str,
        *,
        channel: str = "text",
        wait: bool = False,
        on_reply: Callable[[str], str] | None = None,
    ) -> OrchestrationResult:
        """Run one turn for *session_id* and return the reply.

        Only one turn per session runs at a time.  With ``wait=False`` a
        second concurrent turn is rejected with ``SessionBusyError``; with
        ``wait=True`` it queues behind the running one.  A session evicted
        before the turn gets its lock raises ``SessionEvictedError``.

        *on_reply* receives the final reply text and returns the text the
        caller actually heard; that text is what gets stored.
        """
        self._store.get_or_create(session_id, channel)
        lock = self._current_turn_lock(session_id)
        if lock is None:
            raise SessionEvictedError(f"Session {session_id} was evicted")
        if not lock.acquire(blocking=wait):
            raise SessionBusyError(f"A turn is already running for session {session_id}")
        try:
            # The slot may have been evicted (or replaced) while we waited
            if self._current_turn_lock(session_id) is not lock:
                raise SessionEvictedError(f"Session {session_id} was evicted before its turn ran")
            return self._run_turn(session_id, user_text, on_reply)
        finally:
            lock.release()

    def _current_turn_lock(self, session_id: str):
        try:
            return self._store.turn_lock(session_id)
        except KeyError:
            return None

    def _run_turn(
        self,
        session_id: str,
        user_text: str,
        on_reply: Callable[[str], str] | None = None,
    ) -> OrchestrationResult:
        self._store.append(
            session_id, UserText(text=user_text, synthetic=user_text == GREETING_TRIGGER),
        )
        instructions = self._instructions() if callable(self._instructions) else self._instructions
        initial: TurnState = {
            "session_id": session_id,
            "user_text": user_text,
            "instructions": instructions,
            "round_trips": 0,
            "pending": [],
            "created_ids": collect_created_ids(self._store.history(session_id), self._operations),
            "final_text": "",
            "outcome": "answered",
        }
        t0 = time.perf_counter()
        try:
            final = self._graph.invoke(
                initial, config={"recursion_limit": self.max_round_trips * 2 + 5},
            )
        except Exception:
            logger.exception("[%s] Turn failed", session_id)
            final = {**initial, "final_text": GENERIC_APOLOGY_TEXT, "outcome": "error"}

        text = final.get("final_text") or ""
        if on_reply is not None:
            text = on_reply(text)
        if text:
            self._store.append(session_id, AssistantText(text=text))

        outcome = final.get("outcome", "answered")
        error = None
        if outcome == "cap_exceeded":
            error = IterationCapExceeded(
                f"Stopped after {self.max_round_trips} round trips"
            ).to_error()
        elif outcome == "upstream_failure":
            error = TransientUpstreamError("Language model unavailable").to_error()
        elif outcome == "error":
            error = OrchestrationError("Turn failed").to_error()

        logger.info(
            "[%s] Turn finished: outcome=%s round_trips=%d (%.0fms)",
            session_id, outcome, final.get("round_trips", 0), (time.perf_counter() - t0) * 1000,
        )
        return OrchestrationResult(
            text=text,
            error=error,
            round_trips=final.get("round_trips", 0),
            outcome=outcome,
            intent=final.get("intent"),
        )


# ── Factory ──────────────────────────────────────────────────────────


def create_orchestrator(
    store: ConversationStore | None = None,
    *,
    incident_log: IncidentLog | None = None,
) -> Orchestrator:
    """Wire an orchestrator with production dependencies.

    The validator and workflow synthesizer share one incident log so both
    kinds of audit entry appear in the same stream.
    """
    store = store or ConversationStore()
    incident_log = incident_log or IncidentLog()
    router_llm = synthesizer = None
    if INTENT_ROUTING_ENABLED:
        router_llm = _build_router_llm()
        synthesizer = WorkflowSynthesizer(incident_log=incident_log)

    orchestrator = Orchestrator(
        store,
        ExternalAPIExecutor(),
        validator=ValidationLayer(incident_log=incident_log),
        router_llm=router_llm,
        synthesizer=synthesizer,
    )
    logger.debug(
        "Orchestrator ready — model: %s, router: %s, tools: %d, cap: %d",
        MODEL_NAME, ROUTER_MODEL_NAME if router_llm else "off",
        len(orchestrator._tools), orchestrator.max_round_trips,
    )
    return orchestrator
