"""Core data model: sessions, messages, requests, verdicts and workflows.

``Message`` is a tagged union discriminated on ``kind``.  History is an
ordered list of messages in which every ``FunctionCall`` is immediately
followed by the ``FunctionResult`` carrying the same ``call_id``.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from pydantic import BaseModel, ConfigDict, Field

from dental_voice.errors import PairingViolation

Severity = Literal["none", "low", "high", "critical"]
Channel = Literal["voice", "text"]


# ── Messages ────────────────────────────────────────────────────────


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class UserText(_Frozen):
    kind: Literal["user_text"] = "user_text"
    text: str
    # Prompt injected by the system (the greeting trigger), not caller speech
    synthetic: bool = False


class AssistantText(_Frozen):
    kind: Literal["assistant_text"] = "assistant_text"
    text: str


class FunctionCall(_Frozen):
    kind: Literal["function_call"] = "function_call"
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    call_id: str


class FunctionResult(_Frozen):
    kind: Literal["function_result"] = "function_result"
    call_id: str
    payload: Any = None
    error: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


Message = Annotated[
    Union[UserText, AssistantText, FunctionCall, FunctionResult],
    Field(discriminator="kind"),
]


class MessageList(BaseModel):
    """Wrapper used to (de)serialise a history as JSON."""

    messages: list[Message] = Field(default_factory=list)


def check_pairing(messages: list[Any]) -> None:
    """Raise ``PairingViolation`` unless every call is directly followed by its result."""
    for index, message in enumerate(messages):
        if isinstance(message, FunctionCall):
            following = messages[index + 1] if index + 1 < len(messages) else None
            if not isinstance(following, FunctionResult) or following.call_id != message.call_id:
                raise PairingViolation(
                    f"FunctionCall {message.call_id} is not immediately followed by its result"
                )
        elif isinstance(message, FunctionResult):
            previous = messages[index - 1] if index > 0 else None
            if not isinstance(previous, FunctionCall) or previous.call_id != message.call_id:
                raise PairingViolation(
                    f"FunctionResult {message.call_id} has no matching FunctionCall before it"
                )


# ── Session ─────────────────────────────────────────────────────────


@dataclass
class Session:
    """One conversation.  Owned by the conversation store."""

    session_id: str
    channel: Channel = "voice"
    history: list[Any] = field(default_factory=list)
    # Latest provider transcript (``[{"role": ..., "content": ...}]``)
    transcript: list[dict[str, str]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)

    @property
    def is_first_turn(self) -> bool:
        return not self.history


# ── Orchestration request ───────────────────────────────────────────


class ToolSpec(_Frozen):
    """One external operation the model may request."""

    name: str
    description: str = ""
    json_schema: dict[str, Any]

    def to_tool_definition(self) -> dict[str, Any]:
        """Anthropic tool format, accepted by ``ChatAnthropic.bind_tools``."""
        return {"name": self.name, "description": self.description, "input_schema": self.json_schema}


class OrchestrationRequest(BaseModel):
    """Built fresh for every round trip; never persisted."""

    session_id: str
    instructions: str
    tools: list[ToolSpec] = Field(default_factory=list)
    input: list[Message] = Field(default_factory=list)

    def to_langchain_messages(self) -> list[BaseMessage]:
        """Translate the request into LangChain messages for the chat model."""
        converted: list[BaseMessage] = [SystemMessage(content=self.instructions)]
        for message in self.input:
            if isinstance(message, UserText):
                converted.append(HumanMessage(content=message.text))
            elif isinstance(message, AssistantText):
                converted.append(AIMessage(content=message.text))
            elif isinstance(message, FunctionCall):
                converted.append(
                    AIMessage(
                        content="",
                        tool_calls=[
                            {"name": message.name, "args": message.arguments, "id": message.call_id},
                        ],
                    )
                )
            elif isinstance(message, FunctionResult):
                body = message.payload if message.ok else {"error": message.error}
                converted.append(
                    ToolMessage(
                        content=json.dumps(body, default=str),
                        tool_call_id=message.call_id,
                        status="success" if message.ok else "error",
                    )
                )
        return converted


# ── Validation ──────────────────────────────────────────────────────


class ValidationVerdict(_Frozen):
    call_id: str
    operation_type: str
    valid: bool
    severity: Severity = "none"
    reasoning: str = ""
    corrected_arguments: dict[str, Any] | None = None
    # False when the verdict was produced without reaching the validator model
    validator_available: bool = True

    @property
    def blocks(self) -> bool:
        return not self.valid and self.severity == "critical"


class IncidentEntry(_Frozen):
    """Immutable audit record for a validation verdict or workflow arbitration."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    session_id: str
    operation_type: str
    verdict: str
    severity: Severity = "none"
    reasoning: str = ""
    original_arguments: dict[str, Any] = Field(default_factory=dict)
    corrected_arguments: dict[str, Any] | None = None
    action: str = "allowed"


# ── Workflows ───────────────────────────────────────────────────────


class WorkflowStep(_Frozen):
    function_name: str = Field(..., description="Operation to call, or AskUser / ConfirmWithUser")
    input_mapping: dict[str, str] = Field(
        default_factory=dict,
        description="Operation argument name -> source value (user input or earlier output)",
    )
    output_as: str | None = Field(None, description="Name under which the step's result is kept")


class WorkflowDefinition(_Frozen):
    intent: str
    steps: list[WorkflowStep] = Field(..., min_length=1)
    required_user_inputs: list[str] = Field(default_factory=list)

    def render(self) -> str:
        """Plain-text plan appended to the instructions for a turn."""
        lines = [f"Suggested plan for intent '{self.intent}':"]
        for number, step in enumerate(self.steps, start=1):
            mapping = ", ".join(f"{arg} <- {src}" for arg, src in step.input_mapping.items())
            lines.append(f"  {number}. {step.function_name}" + (f" ({mapping})" if mapping else ""))
        if self.required_user_inputs:
            lines.append("Collect from the caller: " + ", ".join(self.required_user_inputs))
        return "\n".join(lines)
