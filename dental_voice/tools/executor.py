"""Dispatch of named operations to the practice-management API.

``ExternalAPIExecutor.execute`` is the only place a model-requested
operation touches the live system.  It looks the name up in a closed
dispatch table, validates the arguments against the operation's declared
schema and normalises the API envelope:

* unknown name            → ``UnknownOperation``
* schema mismatch         → ``InvalidArguments`` (field-level details)
* timeout / 5xx           → ``TransientUpstreamError``
* ``success: false`` / 4xx → ``OperationFailed``
* ``success: true``       → the ``data`` payload
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from dental_voice.errors import (
    InvalidArguments,
    OperationFailed,
    TransientUpstreamError,
    UnknownOperation,
)
from dental_voice.services.practice_client import PracticeAPIClient, PracticeAPIError, get_practice_client
from dental_voice.tools.operations import OPERATIONS, OperationSpec

logger = logging.getLogger(__name__)


def _error_details(exc: ValidationError) -> list[dict[str, str]]:
    """Flatten pydantic errors into ``[{"field": ..., "problem": ...}]``."""
    details = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "arguments"
        message = err.get("msg", "invalid value")
        # pydantic prefixes custom ValueErrors with "Value error, "
        details.append({"field": loc, "problem": message.removeprefix("Value error, ")})
    return details


class ExternalAPIExecutor:
    """Validate and run practice operations by name."""

    def __init__(
        self,
        client: PracticeAPIClient | None = None,
        operations: dict[str, OperationSpec] | None = None,
    ):
        self._client = client
        self._operations = operations or OPERATIONS

    @property
    def client(self) -> PracticeAPIClient:
        if self._client is None:
            self._client = get_practice_client()
        return self._client

    def spec_for(self, name: str) -> OperationSpec:
        spec = self._operations.get(name)
        if spec is None:
            logger.error("Model requested unknown operation %r", name)
            raise UnknownOperation(name)
        return spec

    def validate_arguments(self, spec: OperationSpec, arguments: dict[str, Any]) -> dict[str, Any]:
        """Return the normalised arguments or raise ``InvalidArguments``."""
        try:
            parsed = spec.args_model.model_validate(arguments or {})
        except ValidationError as exc:
            details = _error_details(exc)
            logger.info("Invalid arguments for %s: %s", spec.name, details)
            raise InvalidArguments(spec.name, details) from exc
        return parsed.model_dump(exclude_none=True)

    def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        """Run operation *name* and return its data payload."""
        spec = self.spec_for(name)
        parameters = self.validate_arguments(spec, arguments)

        try:
            envelope = self.client.call(name, parameters, idempotent=not spec.mutating)
        except PracticeAPIError as exc:
            if exc.is_transient:
                raise TransientUpstreamError(
                    f"The practice system did not respond to {name}. Please try again shortly."
                ) from exc
            raise OperationFailed(name, f"http_{exc.status_code}", str(exc)) from exc

        if not isinstance(envelope, dict) or "success" not in envelope:
            # Some read endpoints answer with the bare payload
            return envelope

        if envelope.get("success"):
            logger.info("Operation %s succeeded", name)
            return envelope.get("data")

        error_code = str(envelope.get("errorCode") or "operation_failed")
        message = str(envelope.get("message") or f"{name} failed")
        logger.info("Operation %s failed: %s (%s)", name, message, error_code)
        raise OperationFailed(name, error_code, message)
