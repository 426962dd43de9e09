"""Centralized configuration for the dental voice booking core.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/dental-voice/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/dental-voice/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /dental-voice/{name} (AWS)."
    )


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")

# Cheap model for intent classification, independent models for review
ROUTER_MODEL_NAME: str = os.getenv("ROUTER_MODEL_NAME", "claude-haiku-4-5")
VALIDATOR_MODEL_NAME: str = os.getenv("VALIDATOR_MODEL_NAME", "claude-sonnet-4-5")
WORKFLOW_MODEL_NAME: str = os.getenv("WORKFLOW_MODEL_NAME", "claude-sonnet-4-5")
WORKFLOW_ALT_MODEL_NAME: str = os.getenv("WORKFLOW_ALT_MODEL_NAME", "claude-haiku-4-5")
ARBITER_MODEL_NAME: str = os.getenv("ARBITER_MODEL_NAME", "claude-opus-4-1")

# ── Practice-management API ─────────────────────────────────────────
PRACTICE_API_KEY: str = _require_env("PRACTICE_API_KEY")
PRACTICE_API_BASE_URL: str = os.getenv("PRACTICE_API_BASE_URL", "http://localhost:3000/api/booking")

# ── Orchestrator ────────────────────────────────────────────────────
MAX_ROUND_TRIPS: int = int(os.getenv("MAX_ROUND_TRIPS", "12"))
ROUND_TRIP_TIMEOUT_SECONDS: float = float(os.getenv("ROUND_TRIP_TIMEOUT_SECONDS", "25"))
MODEL_RETRY_ATTEMPTS: int = int(os.getenv("MODEL_RETRY_ATTEMPTS", "2"))
INSTRUCTIONS_PATH: str | None = os.getenv("INSTRUCTIONS_PATH") or None
INTENT_ROUTING_ENABLED: bool = _env_flag("INTENT_ROUTING_ENABLED", True)

# ── Sessions / voice protocol ───────────────────────────────────────
SESSION_TTL_MINUTES: float = float(os.getenv("SESSION_TTL_MINUTES", "30"))
SESSION_SWEEP_INTERVAL_SECONDS: float = float(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "300"))
TURN_TIMEOUT_SECONDS: float = float(os.getenv("TURN_TIMEOUT_SECONDS", "25"))
HOLD_ANNOUNCEMENT_AFTER_SECONDS: float = float(os.getenv("HOLD_ANNOUNCEMENT_AFTER_SECONDS", "10"))

# ── Validation layer ────────────────────────────────────────────────
VALIDATION_ENABLED: bool = _env_flag("VALIDATION_ENABLED", True)
VALIDATE_BOOKINGS: bool = _env_flag("VALIDATE_BOOKINGS", True)
VALIDATE_RESCHEDULES: bool = _env_flag("VALIDATE_RESCHEDULES", True)
VALIDATE_CANCELLATIONS: bool = _env_flag("VALIDATE_CANCELLATIONS", False)
VALIDATE_PATIENT_CREATION: bool = _env_flag("VALIDATE_PATIENT_CREATION", True)
# Operation types that block (instead of proceeding) when the validator is down
VALIDATOR_FAIL_CLOSED_OPERATIONS: list[str] = _env_list(
    "VALIDATOR_FAIL_CLOSED_OPERATIONS", "create_appointment",
)
INCIDENT_LOG_PATH: str | None = os.getenv("INCIDENT_LOG_PATH") or None

# ── Workflow synthesis ──────────────────────────────────────────────
WORKFLOW_MAX_ATTEMPTS: int = int(os.getenv("WORKFLOW_MAX_ATTEMPTS", "3"))
# No new attempt starts once synthesis has run this long
WORKFLOW_SYNTHESIS_BUDGET_SECONDS: float = float(os.getenv("WORKFLOW_SYNTHESIS_BUDGET_SECONDS", "30"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
