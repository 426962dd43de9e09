"""Instruction text and fixed prompts for the dental voice core.

The conversation instructions are operator configuration: they are read from
``INSTRUCTIONS_PATH`` when set and otherwise fall back to a short built-in
default.  The only templating applied is the current date and time.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from dental_voice.config import INSTRUCTIONS_PATH

logger = logging.getLogger(__name__)

# ── Fixed texts spoken to the caller ────────────────────────────────

GREETING_TRIGGER = "Start the conversation with the greeting."
CAP_FALLBACK_TEXT = "I need a moment, please try again."
UPSTREAM_FAILURE_TEXT = (
    "I'm sorry, I'm having trouble reaching our system right now. Could you say that again?"
)
GENERIC_APOLOGY_TEXT = "I'm sorry, something went wrong on my end. Could you please repeat that?"
HOLD_ANNOUNCEMENT_TEXT = "Still working on it, just a moment longer."
TURN_TIMEOUT_TEXT = (
    "I'm sorry, that is taking longer than expected. Let me keep working on it; "
    "could you give me a moment?"
)

DEFAULT_INSTRUCTIONS = """You are the receptionist for a dental practice, speaking with a caller on the phone.

Today is {current_date} ({current_day_of_week}); the time is {current_time} UTC.

- Keep replies short and natural; this is a voice call.
- Before booking, find the patient with GetMultiplePatients. Only call CreatePatient when no match exists.
- Always check GetAvailableSlots before CreateAppointment and book only a slot it returned.
- Use the PatNum and AptNum values returned by earlier calls; never invent identifiers.
- Confirm the date and time with the caller before booking, rescheduling or cancelling.
- If a call returns an error, explain briefly and offer an alternative instead of repeating it.
"""


def _render(template: str) -> str:
    now = datetime.now(UTC)
    return (
        template.replace("{current_date}", now.strftime("%A, %B %d, %Y"))
        .replace("{current_day_of_week}", now.strftime("%A"))
        .replace("{current_time}", now.strftime("%H:%M"))
        .replace("{current_datetime}", now.strftime("%Y-%m-%d %H:%M"))
    )


def load_instructions(path: str | None = None) -> str:
    """Return rendered conversation instructions.

    Placeholders are substituted with ``str.replace`` rather than
    ``str.format`` because operator-supplied text may contain JSON braces.
    """
    source = path or INSTRUCTIONS_PATH
    template = DEFAULT_INSTRUCTIONS
    if source:
        try:
            template = Path(source).read_text(encoding="utf-8")
        except OSError:
            logger.exception("Could not read instructions from %s; using defaults", source)
    return _render(template)


# ── Intent router ───────────────────────────────────────────────────

ROUTER_PROMPT = (
    "Classify what the caller of a dental practice wants. "
    "Reply with exactly one snake_case label and nothing else.\n\n"
    "Known labels: book_appointment, reschedule_appointment, cancel_appointment, "
    "general_question, greeting, other. If none fits, invent a short, specific "
    "snake_case label (for example update_insurance_details).\n\n"
    "IMPORTANT: If the recent conversation shows an ongoing booking, rescheduling "
    "or cancelling flow, the caller's reply belongs to that flow.\n\n"
    "{context}Latest message: {message}\n\n"
    "Label:"
)

# ── Validation layer ────────────────────────────────────────────────

VALIDATOR_PROMPT = """You review an operation an AI receptionist is about to run against a live dental practice system.

Operation type: {operation_type}
Operation: {name}
Arguments:
{arguments}

Conversation so far (most recent last):
{transcript}

Decide whether the arguments are supported by the conversation. Look for:
- missing_parameter: a required value is absent or empty
- invalid_value: a value has the wrong format or is impossible
- fabricated_data: a name, date, time, or identifier the caller never gave and no earlier result returned
- logic_error: the operation contradicts what the caller asked for

Severity: "none" when valid; "low" for cosmetic issues; "high" for likely mistakes the
caller could still confirm; "critical" when running the operation would act on wrong or
invented data. If you can see the correct arguments, return them as corrected_arguments.
"""

# ── Workflow synthesis ──────────────────────────────────────────────

GENERATOR_PROMPT = """Design a step-by-step workflow an AI receptionist should follow for the intent "{intent}".

Available operations (name: description):
{operations}

Besides those operations, a step may be "AskUser" (collect information from the caller)
or "ConfirmWithUser" (read details back and get a yes before a change).

Each step names function_name, an input_mapping from argument name to its source
("user.<field>" for caller input or "<output_as>.<field>" for an earlier step's output),
and output_as when a later step needs its result. List required_user_inputs.
Confirm with the caller before any step that creates, changes or cancels data.
{exclusions}"""

ARBITER_PROMPT = """Two workflows were proposed for the intent "{intent}".

Candidate A:
{candidate_a}

Candidate B:
{candidate_b}

Available operations: {operation_names}

Judge each candidate on its own against five criteria, scoring 1-5: correctness,
logical soundness, completeness, safety (confirms before changes, never invents
identifiers), efficiency. Decide whether each candidate is individually correct.
Then choose exactly one correct candidate ("a" or "b"), or "none" if neither is
correct. Never combine steps from both candidates.
"""
