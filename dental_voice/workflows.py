"""Workflow registry and synthesizer.

Canned workflows cover the common intents (book, reschedule, cancel).  When
the router reports an intent with no workflow, the synthesizer asks two
independent generator models for a candidate each, then an arbiter model
judges both against five criteria and picks exactly one outright.  Steps
from the two candidates are never combined.

Rejected candidates are carried into the next attempt as an exclusion list;
a regenerated candidate identical to an excluded one is dropped without
arbitration.  Every arbitration is written to the incident log.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Literal

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage
from pydantic import BaseModel, Field

from dental_voice.config import (
    ANTHROPIC_API_KEY,
    ARBITER_MODEL_NAME,
    ROUND_TRIP_TIMEOUT_SECONDS,
    WORKFLOW_ALT_MODEL_NAME,
    WORKFLOW_MAX_ATTEMPTS,
    WORKFLOW_MODEL_NAME,
    WORKFLOW_SYNTHESIS_BUDGET_SECONDS,
)
from dental_voice.errors import WorkflowSynthesisError
from dental_voice.models import WorkflowDefinition, WorkflowStep
from dental_voice.prompts import ARBITER_PROMPT, GENERATOR_PROMPT
from dental_voice.services.incident_log import IncidentLog
from dental_voice.services.metrics import metrics
from dental_voice.tools.operations import OPERATIONS, OperationSpec

logger = logging.getLogger(__name__)

PSEUDO_STEPS = frozenset({"AskUser", "ConfirmWithUser"})
# Intents answered conversationally, without a plan
NO_PLAN_INTENTS = frozenset({"general_question", "greeting", "other"})


def _step(function_name: str, output_as: str | None = None, **mapping: str) -> WorkflowStep:
    return WorkflowStep(function_name=function_name, input_mapping=mapping, output_as=output_as)


_FIND_PATIENT = _step("GetMultiplePatients", "patient", LName="user.last_name", FName="user.first_name")

CANNED_WORKFLOWS = (
    WorkflowDefinition(
        intent="book_appointment",
        steps=[
            _FIND_PATIENT,
            _step(
                "CreatePatient", "patient",
                FName="user.first_name", LName="user.last_name",
                Birthdate="user.birthdate", WirelessPhone="user.phone",
            ),
            _step("GetAvailableSlots", "slots", dateStart="user.preferred_date", dateEnd="user.preferred_date"),
            _step("ConfirmWithUser", AptDateTime="slots.DateTimeStart"),
            _step(
                "CreateAppointment", "appointment",
                PatNum="patient.PatNum", AptDateTime="slots.DateTimeStart",
                ProvNum="slots.ProvNum", Op="slots.OpNum",
            ),
        ],
        required_user_inputs=["first_name", "last_name", "birthdate", "phone", "preferred_date"],
    ),
    WorkflowDefinition(
        intent="reschedule_appointment",
        steps=[
            _FIND_PATIENT,
            _step("GetAppointments", "appointments", PatNum="patient.PatNum"),
            _step("GetAvailableSlots", "slots", dateStart="user.preferred_date", dateEnd="user.preferred_date"),
            _step("ConfirmWithUser", AptNum="appointments.AptNum", AptDateTime="slots.DateTimeStart"),
            _step(
                "UpdateAppointment", "appointment",
                AptNum="appointments.AptNum", AptDateTime="slots.DateTimeStart",
                ProvNum="slots.ProvNum", Op="slots.OpNum",
            ),
        ],
        required_user_inputs=["first_name", "last_name", "preferred_date"],
    ),
    WorkflowDefinition(
        intent="cancel_appointment",
        steps=[
            _FIND_PATIENT,
            _step("GetAppointments", "appointments", PatNum="patient.PatNum"),
            _step("ConfirmWithUser", AptNum="appointments.AptNum"),
            _step("BreakAppointment", AptNum="appointments.AptNum"),
        ],
        required_user_inputs=["first_name", "last_name"],
    ),
)


# ── Registry ────────────────────────────────────────────────────────


class WorkflowRegistry:
    """Thread-safe ``intent -> WorkflowDefinition`` cache."""

    def __init__(self, workflows=CANNED_WORKFLOWS):
        self._lock = threading.Lock()
        self._workflows: dict[str, WorkflowDefinition] = {w.intent: w for w in workflows}

    def get(self, intent: str) -> WorkflowDefinition | None:
        with self._lock:
            return self._workflows.get(intent)

    def put(self, workflow: WorkflowDefinition) -> None:
        with self._lock:
            self._workflows[workflow.intent] = workflow
        logger.info("Registered workflow for intent %s (%d steps)", workflow.intent, len(workflow.steps))

    def intents(self) -> list[str]:
        with self._lock:
            return sorted(self._workflows)


# ── Arbitration schema ──────────────────────────────────────────────


class CriteriaScores(BaseModel):
    correctness: int = Field(..., ge=1, le=5)
    logical_soundness: int = Field(..., ge=1, le=5)
    completeness: int = Field(..., ge=1, le=5)
    safety: int = Field(..., ge=1, le=5)
    efficiency: int = Field(..., ge=1, le=5)

    @property
    def total(self) -> int:
        return self.correctness + self.logical_soundness + self.completeness + self.safety + self.efficiency


class ArbitrationVerdict(BaseModel):
    candidate_a_correct: bool
    candidate_b_correct: bool
    scores_a: CriteriaScores
    scores_b: CriteriaScores
    chosen: Literal["a", "b", "none"]
    reasoning: str

    @property
    def both_correct(self) -> bool:
        return self.candidate_a_correct and self.candidate_b_correct


class _Candidate(BaseModel):
    """Generator output; the intent is filled in by the synthesizer."""

    steps: list[WorkflowStep] = Field(..., min_length=1)
    required_user_inputs: list[str] = Field(default_factory=list)


# ── LLM builders ────────────────────────────────────────────────────


def _build_generator_llm(model_name: str) -> ChatAnthropic:
    return ChatAnthropic(
        model=model_name,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.3,
        max_tokens=2048,
        timeout=ROUND_TRIP_TIMEOUT_SECONDS,
        max_retries=0,  # Synthesis attempts are the retry loop
    )


def _build_arbiter_llm() -> ChatAnthropic:
    return ChatAnthropic(
        model=ARBITER_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=1024,
        timeout=ROUND_TRIP_TIMEOUT_SECONDS,
        max_retries=0,
    )


def _signature(workflow: WorkflowDefinition) -> tuple:
    return tuple(
        (s.function_name, tuple(sorted(s.input_mapping.items())), s.output_as) for s in workflow.steps
    )


def schema_problems(workflow: WorkflowDefinition, operations: dict[str, OperationSpec] | None = None) -> list[str]:
    """Return reasons *workflow* cannot run against the operation catalogue."""
    operations = operations or OPERATIONS
    problems = []
    for number, step in enumerate(workflow.steps, start=1):
        if step.function_name in PSEUDO_STEPS:
            continue
        spec = operations.get(step.function_name)
        if spec is None:
            problems.append(f"step {number}: unknown operation {step.function_name}")
            continue
        unknown = set(step.input_mapping) - set(spec.args_model.model_fields)
        if unknown:
            problems.append(f"step {number}: {step.function_name} has no argument(s) {', '.join(sorted(unknown))}")
    return problems


class WorkflowSynthesizer:
    """Resolve an intent to a workflow, generating one when none exists."""

    def __init__(
        self,
        primary_llm=None,
        secondary_llm=None,
        arbiter_llm=None,
        *,
        registry: WorkflowRegistry | None = None,
        incident_log: IncidentLog | None = None,
        max_attempts: int = WORKFLOW_MAX_ATTEMPTS,
        budget_seconds: float = WORKFLOW_SYNTHESIS_BUDGET_SECONDS,
        operations: dict[str, OperationSpec] | None = None,
    ):
        self._generators = (
            ("a", primary_llm or _build_generator_llm(WORKFLOW_MODEL_NAME)),
            ("b", secondary_llm or _build_generator_llm(WORKFLOW_ALT_MODEL_NAME)),
        )
        self._arbiter = (arbiter_llm or _build_arbiter_llm()).with_structured_output(ArbitrationVerdict)
        self.registry = registry or WorkflowRegistry()
        self.incident_log = incident_log or IncidentLog()
        self.max_attempts = max_attempts
        self.budget_seconds = budget_seconds
        self._operations = operations or OPERATIONS
        self._intent_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, intent: str) -> threading.Lock:
        with self._locks_guard:
            return self._intent_locks.setdefault(intent, threading.Lock())

    def resolve(self, intent: str, session_id: str = "-") -> WorkflowDefinition | None:
        """Cached workflow for *intent*, a freshly synthesized one, or ``None``."""
        if intent in NO_PLAN_INTENTS:
            return None
        workflow = self.registry.get(intent)
        if workflow is not None:
            return workflow
        # One synthesis per intent at a time; late arrivals reuse the result
        with self._lock_for(intent):
            workflow = self.registry.get(intent)
            if workflow is None:
                workflow = self.synthesize(intent, session_id)
        return workflow

    # ── Generation ──────────────────────────────────────────────────

    def _generate(self, llm, intent: str, excluded: list[WorkflowDefinition]) -> WorkflowDefinition:
        operations = "\n".join(f"- {s.name}: {s.description}" for s in self._operations.values())
        exclusions = ""
        if excluded:
            rejected = "\n".join(json.dumps(e.model_dump(), indent=1) for e in excluded)
            exclusions = f"\nThese workflows were already rejected; do not propose them again:\n{rejected}\n"
        prompt = GENERATOR_PROMPT.format(intent=intent, operations=operations, exclusions=exclusions)
        raw = llm.with_structured_output(_Candidate).invoke([HumanMessage(content=prompt)])
        candidate = raw if isinstance(raw, _Candidate) else _Candidate.model_validate(raw)
        return WorkflowDefinition(
            intent=intent, steps=candidate.steps, required_user_inputs=candidate.required_user_inputs,
        )

    def _candidates(self, intent: str, excluded: list[WorkflowDefinition]) -> list[WorkflowDefinition]:
        rejected = {_signature(e) for e in excluded}
        candidates = []
        for label, llm in self._generators:
            try:
                with metrics.timed("anthropic", f"workflow_generate_{label}"):
                    candidate = self._generate(llm, intent, excluded)
            except Exception as exc:
                logger.warning("Workflow generator %s failed for %s: %s", label, intent, exc)
                continue
            if _signature(candidate) in rejected:
                logger.info("Generator %s repeated a rejected workflow for %s; discarded", label, intent)
                continue
            problems = schema_problems(candidate, self._operations)
            if problems:
                logger.info("Generator %s produced an invalid workflow for %s: %s", label, intent, problems)
                excluded.append(candidate)
                rejected.add(_signature(candidate))
                continue
            candidates.append(candidate)
        return candidates

    # ── Arbitration ─────────────────────────────────────────────────

    def arbitrate(
        self, intent: str, a: WorkflowDefinition, b: WorkflowDefinition,
    ) -> tuple[ArbitrationVerdict, WorkflowDefinition | None]:
        """Judge two candidates and return the verdict plus the chosen one."""
        identical = _signature(a) == _signature(b)
        prompt = ARBITER_PROMPT.format(
            intent=intent,
            candidate_a=a.render(),
            candidate_b=b.render(),
            operation_names=", ".join(self._operations),
        )
        with metrics.timed("anthropic", "workflow_arbitrate"):
            raw = self._arbiter.invoke([HumanMessage(content=prompt)])
        verdict = raw if isinstance(raw, ArbitrationVerdict) else ArbitrationVerdict.model_validate(raw)

        if identical:
            # Same plan twice: one judgement applies to both
            correct = verdict.candidate_a_correct or verdict.candidate_b_correct
            verdict = verdict.model_copy(
                update={
                    "candidate_a_correct": correct,
                    "candidate_b_correct": correct,
                    "scores_b": verdict.scores_a,
                    "chosen": "a" if correct else "none",
                }
            )

        chosen = {"a": a, "b": b}.get(verdict.chosen)
        if verdict.chosen == "a" and not verdict.candidate_a_correct:
            chosen = None
        if verdict.chosen == "b" and not verdict.candidate_b_correct:
            chosen = None
        if chosen is None and (verdict.candidate_a_correct or verdict.candidate_b_correct):
            # Arbiter picked an incorrect (or no) candidate while a correct one exists
            chosen = a if verdict.candidate_a_correct else b
            verdict = verdict.model_copy(update={"chosen": "a" if chosen is a else "b"})
        return verdict, chosen

    def synthesize(self, intent: str, session_id: str = "-") -> WorkflowDefinition:
        """Generate, arbitrate and register a workflow for *intent*."""
        excluded: list[WorkflowDefinition] = []
        deadline = time.monotonic() + self.budget_seconds
        attempts = 0
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1 and time.monotonic() >= deadline:
                logger.warning(
                    "Workflow synthesis for %s stopped after %d attempt(s): %.0fs budget spent",
                    intent, attempts, self.budget_seconds,
                )
                break
            attempts = attempt
            candidates = self._candidates(intent, excluded)
            if not candidates:
                self._log_outcome(session_id, intent, attempt, None, None, None, "no valid candidates")
                continue

            a = candidates[0]
            b = candidates[1] if len(candidates) > 1 else candidates[0]
            try:
                verdict, chosen = self.arbitrate(intent, a, b)
            except Exception as exc:
                logger.warning("Arbiter failed for %s on attempt %d: %s", intent, attempt, exc)
                self._log_outcome(session_id, intent, attempt, a, b, None, f"arbiter error: {exc}")
                continue

            self._log_outcome(session_id, intent, attempt, a, b, verdict, verdict.reasoning, chosen)
            if chosen is not None:
                self.registry.put(chosen)
                return chosen
            excluded.extend(c for c in candidates if c not in excluded)

        metrics.record_count("Workflow/SynthesisFailed", intent=intent)
        raise WorkflowSynthesisError(f"No correct workflow for intent {intent} after {attempts} attempt(s)")

    def _log_outcome(
        self,
        session_id: str,
        intent: str,
        attempt: int,
        a: WorkflowDefinition | None,
        b: WorkflowDefinition | None,
        verdict: ArbitrationVerdict | None,
        reasoning: str,
        chosen: WorkflowDefinition | None = None,
    ) -> None:
        if verdict is None:
            outcome = "none_correct"
        elif verdict.both_correct:
            outcome = "both_correct"
        elif verdict.candidate_a_correct or verdict.candidate_b_correct:
            outcome = "one_correct"
        else:
            outcome = "none_correct"

        original = {"intent": intent, "attempt": attempt}
        if a is not None:
            original["candidate_a"] = a.model_dump()
        if b is not None:
            original["candidate_b"] = b.model_dump()
        if verdict is not None:
            original["scores_a"] = verdict.scores_a.model_dump()
            original["scores_b"] = verdict.scores_b.model_dump()
            original["chosen"] = verdict.chosen

        self.incident_log.record(
            session_id=session_id,
            operation_type="workflow_arbitration",
            verdict=outcome,
            severity="none" if chosen is not None else "high",
            reasoning=reasoning,
            original_arguments=original,
            corrected_arguments=chosen.model_dump() if chosen is not None else None,
            action="chosen" if chosen is not None else "failed",
        )
