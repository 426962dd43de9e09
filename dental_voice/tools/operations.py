"""Catalogue of practice-management operations the model may request.

Each entry pairs a pydantic argument model (the declared schema the
executor validates against, and the JSON schema the model is shown) with
the metadata the orchestrator needs: whether the operation mutates state,
which validation operation type it maps to, which identifier fields it
consumes and which identifier a successful result creates.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dental_voice.models import FunctionCall, FunctionResult, ToolSpec

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")

# RFC 5322-ish pattern, covers the vast majority of real-world emails
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

IDENTIFIER_FIELDS = ("PatNum", "AptNum")


def _check_date(value: str | None) -> str | None:
    if value is None:
        return value
    value = value.strip()
    if not _DATE_RE.match(value):
        raise ValueError("must be a date in YYYY-MM-DD format")
    try:
        date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError("is not a real calendar date") from exc
    return value


def _check_datetime(value: str | None) -> str | None:
    if value is None:
        return value
    value = value.strip()
    if not _DATETIME_RE.match(value):
        raise ValueError("must be in YYYY-MM-DD HH:MM:SS format")
    try:
        datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
    except ValueError as exc:
        raise ValueError("is not a real date and time") from exc
    return value


# ── Argument models ─────────────────────────────────────────────────


class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NoArgs(_Args):
    pass


class GetMultiplePatientsArgs(_Args):
    LName: str | None = Field(None, description="Last name (partial match)")
    FName: str | None = Field(None, description="First name (partial match)")
    Phone: str | None = Field(None, description="Phone number, digits only")
    PatNum: int | None = Field(None, description="Patient id")

    @model_validator(mode="after")
    def needs_a_criterion(self):
        if not any(v not in (None, "") for v in (self.LName, self.FName, self.Phone, self.PatNum)):
            raise ValueError("provide at least one of LName, FName, Phone or PatNum")
        return self


class GetPatientArgs(_Args):
    PatNum: int = Field(..., gt=0, description="Patient id")


class CreatePatientArgs(_Args):
    FName: str = Field(..., min_length=1, description="First name")
    LName: str = Field(..., min_length=1, description="Last name")
    Birthdate: str = Field(..., description="Date of birth, YYYY-MM-DD")
    WirelessPhone: str = Field(..., description="Mobile phone number, 10 digits")
    Email: str | None = Field(None, description="Email address")

    @field_validator("Birthdate")
    @classmethod
    def check_birthdate(cls, value: str) -> str:
        value = _check_date(value)
        year = int(value[:4])
        if not 1900 <= year <= date.today().year:
            raise ValueError(f"year must be between 1900 and {date.today().year}")
        return value

    @field_validator("WirelessPhone")
    @classmethod
    def normalise_phone(cls, value: str) -> str:
        digits = re.sub(r"\D", "", value)
        if len(digits) == 11 and digits.startswith("1"):
            digits = digits[1:]
        if len(digits) != 10:
            raise ValueError("must contain exactly 10 digits")
        return digits

    @field_validator("Email")
    @classmethod
    def check_email(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        value = value.strip()
        if not _EMAIL_RE.match(value):
            raise ValueError("does not look like a valid email address")
        return value


class GetAppointmentsArgs(_Args):
    PatNum: int | None = Field(None, description="Only this patient's appointments")
    DateStart: str | None = Field(None, description="YYYY-MM-DD")
    DateEnd: str | None = Field(None, description="YYYY-MM-DD")
    ProvNum: int | None = None
    OpNum: int | None = None

    @field_validator("DateStart", "DateEnd")
    @classmethod
    def check_dates(cls, value: str | None) -> str | None:
        return _check_date(value)


class GetAvailableSlotsArgs(_Args):
    dateStart: str = Field(..., description="First day to search, YYYY-MM-DD")
    dateEnd: str = Field(..., description="Last day to search, YYYY-MM-DD")
    ProvNum: int | None = Field(None, description="Restrict to one provider")
    OpNum: int | None = Field(None, description="Restrict to one operatory")
    lengthMinutes: int | None = Field(None, gt=0, le=480, description="Appointment length")

    @field_validator("dateStart", "dateEnd")
    @classmethod
    def check_dates(cls, value: str) -> str:
        return _check_date(value)

    @model_validator(mode="after")
    def check_order(self):
        if self.dateEnd < self.dateStart:
            raise ValueError("dateEnd must not be before dateStart")
        return self


class CreateAppointmentArgs(_Args):
    PatNum: int = Field(..., gt=0, description="Patient id (from GetMultiplePatients or CreatePatient)")
    AptDateTime: str = Field(..., description="Start time, YYYY-MM-DD HH:MM:SS")
    ProvNum: int = Field(..., gt=0, description="Provider id (from GetAvailableSlots)")
    Op: int = Field(..., gt=0, description="Operatory id (from GetAvailableSlots)")
    Note: str | None = Field(None, description="Reason for the visit")

    @field_validator("AptDateTime")
    @classmethod
    def check_when(cls, value: str | None) -> str | None:
        return _check_datetime(value)


class UpdateAppointmentArgs(_Args):
    AptNum: int = Field(..., gt=0, description="Appointment id")
    AptDateTime: str | None = Field(None, description="New start time, YYYY-MM-DD HH:MM:SS")
    ProvNum: int | None = Field(None, gt=0)
    Op: int | None = Field(None, gt=0)
    AptStatus: Literal["Scheduled", "Complete", "Broken", "UnschedList"] | None = None
    Note: str | None = None

    @field_validator("AptDateTime")
    @classmethod
    def check_when(cls, value: str | None) -> str | None:
        return _check_datetime(value)


class BreakAppointmentArgs(_Args):
    AptNum: int = Field(..., gt=0, description="Appointment id")
    sendToUnscheduledList: bool = True


# ── Operation specs ─────────────────────────────────────────────────


@dataclass(frozen=True)
class OperationSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    mutating: bool = False
    # Validation-layer category; ``None`` for reads
    operation_type: str | None = None
    # Identifier fields the model must not invent or leave empty
    identifier_fields: tuple[str, ...] = field(default_factory=tuple)
    # Identifier a successful result carries back (e.g. ``PatNum``)
    creates_identifier: str | None = None

    def to_tool_spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            json_schema=self.args_model.model_json_schema(),
        )


OPERATIONS: dict[str, OperationSpec] = {
    spec.name: spec
    for spec in (
        OperationSpec(
            "GetMultiplePatients",
            "Search patients by last name, first name, phone or id.",
            GetMultiplePatientsArgs,
        ),
        OperationSpec("GetPatient", "Fetch one patient by PatNum.", GetPatientArgs),
        OperationSpec(
            "CreatePatient",
            "Register a new patient. Only call after searching found no match.",
            CreatePatientArgs,
            mutating=True,
            operation_type="create_patient",
            creates_identifier="PatNum",
        ),
        OperationSpec(
            "GetAppointments",
            "List appointments, optionally for one patient and date range.",
            GetAppointmentsArgs,
        ),
        OperationSpec(
            "GetAvailableSlots",
            "Find open appointment slots between two dates.",
            GetAvailableSlotsArgs,
        ),
        OperationSpec(
            "CreateAppointment",
            "Book an appointment in a slot returned by GetAvailableSlots.",
            CreateAppointmentArgs,
            mutating=True,
            operation_type="create_appointment",
            identifier_fields=("PatNum",),
            creates_identifier="AptNum",
        ),
        OperationSpec(
            "UpdateAppointment",
            "Reschedule or otherwise change an existing appointment.",
            UpdateAppointmentArgs,
            mutating=True,
            operation_type="update_appointment",
            identifier_fields=("AptNum",),
        ),
        OperationSpec(
            "BreakAppointment",
            "Cancel an existing appointment.",
            BreakAppointmentArgs,
            mutating=True,
            operation_type="cancel_appointment",
            identifier_fields=("AptNum",),
        ),
        OperationSpec("GetProviders", "List the practice's providers.", NoArgs),
        OperationSpec("GetOperatories", "List the practice's operatories.", NoArgs),
    )
}


def tool_specs(operations: dict[str, OperationSpec] | None = None) -> list[ToolSpec]:
    """Tool definitions for every operation, in catalogue order."""
    return [spec.to_tool_spec() for spec in (operations or OPERATIONS).values()]


# ── Identifier propagation ──────────────────────────────────────────


def is_placeholder(value: Any) -> bool:
    """True for values that cannot be a real identifier (``None``, ``""``, ``"<PatNum>"``)."""
    if value is None or isinstance(value, bool):
        return True
    if isinstance(value, int):
        return value <= 0
    if isinstance(value, str):
        return not value.strip().isdigit()
    return True


def propagate_identifiers(
    spec: OperationSpec,
    arguments: dict[str, Any],
    created_ids: dict[str, Any],
) -> dict[str, Any]:
    """Fill identifier arguments the model left empty with ids created earlier.

    Only fields the operation declares in ``identifier_fields`` or requires
    are candidates.  A candidate is filled when it is missing and required,
    or when it holds a placeholder such as ``"<PatNum>"``.  An explicit
    ``None`` on an optional field means "no filter" and is kept.  Real ids
    supplied by the model are never overwritten.  Returns a new dict;
    *arguments* is left untouched.
    """
    filled = dict(arguments)
    model_fields = spec.args_model.model_fields
    for name in IDENTIFIER_FIELDS:
        if name not in model_fields or name not in created_ids:
            continue
        required = model_fields[name].is_required()
        if not (required or name in spec.identifier_fields):
            continue
        if name not in filled:
            if required:
                filled[name] = created_ids[name]
        elif filled[name] is None:
            if required:
                filled[name] = created_ids[name]
        elif is_placeholder(filled[name]):
            filled[name] = created_ids[name]
    return filled


def extract_created_ids(spec: OperationSpec, payload: Any) -> dict[str, Any]:
    """Return ``{identifier: value}`` for the id a creating operation returned."""
    key = spec.creates_identifier
    if not key or not isinstance(payload, dict):
        return {}
    value = payload.get(key)
    if value is None and isinstance(payload.get("data"), dict):
        value = payload["data"].get(key)
    if is_placeholder(value):
        return {}
    return {key: int(value)}


def collect_created_ids(
    history: list[Any],
    operations: dict[str, OperationSpec] | None = None,
) -> dict[str, Any]:
    """Recover ids created earlier in the session from paired results."""
    operations = operations or OPERATIONS
    created: dict[str, Any] = {}
    for call, result in zip(history, history[1:]):
        if not (isinstance(call, FunctionCall) and isinstance(result, FunctionResult)):
            continue
        spec = operations.get(call.name)
        if spec is not None and result.ok:
            created.update(extract_created_ids(spec, result.payload))
    return created
