"""HTTP client for the practice-management booking API.

Every operation is a single ``POST`` to the booking endpoint with the body
``{"operationName": ..., "parameters": {...}}``.  The API answers with an
envelope, ``{"success": true, "data": ...}`` or
``{"success": false, "errorCode": ..., "message": ...}``.

All requests carry the practice API key as a Bearer token.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from dental_voice.config import PRACTICE_API_BASE_URL, PRACTICE_API_KEY
from dental_voice.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0


class PracticeAPIError(Exception):
    """Raised when a practice API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        """Timeouts, connection failures and 5xx are worth retrying later."""
        return self.status_code is None or self.status_code >= 500


class PracticeAPIClient:
    """Thin wrapper around the booking endpoint.

    **Retry contract**

    Reads (``idempotent=True``) are retried with exponential backoff on
    timeouts, connection errors and 5xx responses.  Mutating operations are
    sent exactly once: a retried ``CreateAppointment`` after a timeout could
    book the same slot twice, so the failure is surfaced instead and the
    orchestrator decides what to tell the caller.
    """

    def __init__(self, api_key: str | None = None, base_url: str | None = None):
        self._api_key = api_key or PRACTICE_API_KEY
        self._base_url = base_url or PRACTICE_API_BASE_URL
        self._client = httpx.Client(
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        response = self._client.request("POST", self._base_url, json=body)
        if response.status_code >= 500:
            raise PracticeAPIError(
                f"Server error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            # The API still answers 4xx with an envelope when it can
            try:
                envelope = response.json()
            except ValueError:
                envelope = None
            if isinstance(envelope, dict) and envelope.get("success") is False:
                return envelope
            raise PracticeAPIError(
                f"Client error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response.json()

    # ── Public API ───────────────────────────────────────────────────

    def call(
        self,
        operation_name: str,
        parameters: dict[str, Any],
        *,
        idempotent: bool = True,
    ) -> dict[str, Any]:
        """Run one named operation and return the response envelope.

        Args:
            operation_name: e.g. ``"GetAvailableSlots"``.
            parameters: Already-validated operation arguments.
            idempotent: ``False`` disables retries (mutating operations).

        Raises:
            PracticeAPIError: on transport failure or a non-envelope 4xx.
        """
        body = {"operationName": operation_name, "parameters": parameters}
        attempts = MAX_RETRIES if idempotent else 1
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            t0 = time.perf_counter()
            try:
                envelope = self._post(body)
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_success("practice_api", operation_name, latency_ms=elapsed)
                return envelope

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure(
                    "practice_api", operation_name,
                    error_type=type(exc).__name__, latency_ms=elapsed,
                )
                last_error = exc
                logger.warning(
                    "Practice API %s attempt %d/%d failed (%s)",
                    operation_name, attempt, attempts, type(exc).__name__,
                )
            except PracticeAPIError as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure(
                    "practice_api", operation_name,
                    error_type=f"{exc.status_code}", latency_ms=elapsed,
                )
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Practice API %s server error on attempt %d/%d",
                        operation_name, attempt, attempts,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < attempts:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        status = last_error.status_code if isinstance(last_error, PracticeAPIError) else None
        raise PracticeAPIError(
            f"Practice API {operation_name} failed after {attempts} attempt(s): {last_error}",
            status_code=status,
        )

    def close(self) -> None:
        self._client.close()


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: PracticeAPIClient | None = None
_client_lock = threading.Lock()


def get_practice_client() -> PracticeAPIClient:
    """Return a module-level PracticeAPIClient singleton.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = PracticeAPIClient()
    return _client
