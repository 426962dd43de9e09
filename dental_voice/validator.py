"""Validation layer: a second model's veto over risky mutating operations.

Policy
------
* Reads never reach this module; the orchestrator asks ``should_validate``.
* Each validation operation type has its own on/off flag (bookings,
  reschedules and patient creation on by default; cancellations off).
* A required identifier that is missing or a placeholder is rejected with
  ``critical`` severity before any model is consulted.
* Otherwise the validator model returns a structured verdict.  Only an
  invalid ``critical`` verdict blocks the call.
* If the validator model cannot be reached, operation types listed in
  ``fail_closed`` are blocked (reported to the orchestrator as a transient
  failure); every other type proceeds with a warning.
* Every verdict lands in the incident log.  Corrected arguments are
  recorded for operators and never substituted into the live call.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage
from pydantic import BaseModel, Field

from dental_voice.config import (
    ANTHROPIC_API_KEY,
    ROUND_TRIP_TIMEOUT_SECONDS,
    VALIDATE_BOOKINGS,
    VALIDATE_CANCELLATIONS,
    VALIDATE_PATIENT_CREATION,
    VALIDATE_RESCHEDULES,
    VALIDATION_ENABLED,
    VALIDATOR_FAIL_CLOSED_OPERATIONS,
    VALIDATOR_MODEL_NAME,
)
from dental_voice.models import (
    AssistantText,
    FunctionCall,
    FunctionResult,
    Severity,
    UserText,
    ValidationVerdict,
)
from dental_voice.prompts import VALIDATOR_PROMPT
from dental_voice.services.incident_log import IncidentLog
from dental_voice.services.metrics import metrics
from dental_voice.tools.operations import OperationSpec, is_placeholder

logger = logging.getLogger(__name__)

# How much history the reviewer sees
TRANSCRIPT_MESSAGES = 30


class VerdictPayload(BaseModel):
    """Structured output requested from the validator model."""

    valid: bool = Field(..., description="True when the arguments are supported by the conversation")
    severity: Severity = Field(..., description="none, low, high or critical")
    hallucination_type: Literal[
        "none", "missing_parameter", "invalid_value", "fabricated_data", "logic_error"
    ] = "none"
    reasoning: str = Field(..., description="One or two sentences explaining the verdict")
    corrected_arguments: dict[str, Any] | None = Field(
        None, description="Full corrected argument set, when one can be inferred"
    )


@dataclass
class ValidationSettings:
    enabled: bool = VALIDATION_ENABLED
    flags: dict[str, bool] = field(
        default_factory=lambda: {
            "create_appointment": VALIDATE_BOOKINGS,
            "update_appointment": VALIDATE_RESCHEDULES,
            "cancel_appointment": VALIDATE_CANCELLATIONS,
            "create_patient": VALIDATE_PATIENT_CREATION,
        }
    )
    # Operation types that are blocked when the validator is unreachable
    fail_closed: frozenset[str] = field(
        default_factory=lambda: frozenset(VALIDATOR_FAIL_CLOSED_OPERATIONS)
    )


def _build_validator_llm() -> ChatAnthropic:
    """Build the independent reviewer model."""
    return ChatAnthropic(
        model=VALIDATOR_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=1024,
        timeout=ROUND_TRIP_TIMEOUT_SECONDS,
        max_retries=1,
    )


def _render_transcript(history: list[Any], limit: int = TRANSCRIPT_MESSAGES) -> str:
    lines = []
    for message in history[-limit:]:
        if isinstance(message, UserText):
            if not message.synthetic:
                lines.append(f"Caller: {message.text}")
        elif isinstance(message, AssistantText):
            lines.append(f"Assistant: {message.text}")
        elif isinstance(message, FunctionCall):
            lines.append(f"Call {message.name}({json.dumps(message.arguments, default=str)})")
        elif isinstance(message, FunctionResult):
            body = message.payload if message.ok else {"error": message.error}
            lines.append(f"  -> {json.dumps(body, default=str)[:500]}")
    return "\n".join(lines) or "(no conversation yet)"


class ValidationLayer:
    """Review mutating calls and record every verdict."""

    def __init__(
        self,
        llm=None,
        *,
        settings: ValidationSettings | None = None,
        incident_log: IncidentLog | None = None,
    ):
        self._llm = llm
        self._reviewer = None
        self.settings = settings or ValidationSettings()
        self.incident_log = incident_log or IncidentLog()

    def _get_reviewer(self):
        if self._reviewer is None:
            llm = self._llm or _build_validator_llm()
            self._reviewer = llm.with_structured_output(VerdictPayload)
        return self._reviewer

    def should_validate(self, spec: OperationSpec) -> bool:
        if not self.settings.enabled or not spec.mutating or spec.operation_type is None:
            return False
        return self.settings.flags.get(spec.operation_type, True)

    def validate(
        self,
        session_id: str,
        call: FunctionCall,
        spec: OperationSpec,
        history: list[Any],
    ) -> ValidationVerdict:
        """Return a verdict for *call*; the result is always logged."""
        operation_type = spec.operation_type or spec.name
        missing = [name for name in spec.identifier_fields if is_placeholder(call.arguments.get(name))]

        if missing:
            verdict = ValidationVerdict(
                call_id=call.call_id,
                operation_type=operation_type,
                valid=False,
                severity="critical",
                reasoning=(
                    f"Required identifier {', '.join(missing)} is missing or empty "
                    f"(missing_parameter); {spec.name} cannot run without it."
                ),
            )
        else:
            verdict = self._review(call, spec, operation_type, history)

        self._record(session_id, call, verdict)
        return verdict

    def _review(
        self,
        call: FunctionCall,
        spec: OperationSpec,
        operation_type: str,
        history: list[Any],
    ) -> ValidationVerdict:
        prompt = VALIDATOR_PROMPT.format(
            operation_type=operation_type,
            name=spec.name,
            arguments=json.dumps(call.arguments, indent=2, default=str),
            transcript=_render_transcript(history),
        )
        try:
            with metrics.timed("anthropic", "validator_review"):
                raw = self._get_reviewer().invoke([HumanMessage(content=prompt)])
            payload = raw if isinstance(raw, VerdictPayload) else VerdictPayload.model_validate(raw)
        except Exception as exc:
            return self._unavailable(call, operation_type, exc)

        severity = payload.severity
        if payload.valid:
            severity = "none"
        elif severity == "none":
            severity = "low"
        reasoning = payload.reasoning
        if not payload.valid and payload.hallucination_type != "none":
            reasoning = f"{reasoning} ({payload.hallucination_type})"
        return ValidationVerdict(
            call_id=call.call_id,
            operation_type=operation_type,
            valid=payload.valid,
            severity=severity,
            reasoning=reasoning,
            corrected_arguments=payload.corrected_arguments,
        )

    def _unavailable(self, call: FunctionCall, operation_type: str, exc: Exception) -> ValidationVerdict:
        if operation_type in self.settings.fail_closed:
            logger.warning(
                "Validator unavailable (%s); blocking %s (fail-closed)",
                type(exc).__name__, operation_type,
            )
            return ValidationVerdict(
                call_id=call.call_id,
                operation_type=operation_type,
                valid=False,
                severity="critical",
                reasoning=f"Validator unavailable ({type(exc).__name__}); {operation_type} is fail-closed.",
                validator_available=False,
            )
        logger.warning(
            "Validator unavailable (%s); allowing %s without review (fail-open)",
            type(exc).__name__, operation_type,
        )
        return ValidationVerdict(
            call_id=call.call_id,
            operation_type=operation_type,
            valid=True,
            severity="none",
            reasoning=f"Validator unavailable ({type(exc).__name__}); proceeding without review.",
            validator_available=False,
        )

    def _record(self, session_id: str, call: FunctionCall, verdict: ValidationVerdict) -> None:
        if not verdict.validator_available:
            label = "unavailable"
        else:
            label = "valid" if verdict.valid else "invalid"
        self.incident_log.record(
            session_id=session_id,
            operation_type=verdict.operation_type,
            verdict=label,
            severity=verdict.severity,
            reasoning=verdict.reasoning,
            original_arguments=call.arguments,
            corrected_arguments=verdict.corrected_arguments,
            action="blocked" if verdict.blocks else "allowed",
        )
