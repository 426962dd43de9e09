"""Tests for the external API executor."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from dental_voice.errors import (
    InvalidArguments,
    OperationFailed,
    TransientUpstreamError,
    UnknownOperation,
)
from dental_voice.services.practice_client import PracticeAPIError
from dental_voice.tools.executor import ExternalAPIExecutor


def _executor(envelope=None, side_effect=None) -> tuple[ExternalAPIExecutor, MagicMock]:
    client = MagicMock()
    client.call.return_value = envelope
    if side_effect is not None:
        client.call.side_effect = side_effect
    return ExternalAPIExecutor(client=client), client


class TestDispatch:
    def test_unknown_operation_raises(self):
        executor, client = _executor()
        with pytest.raises(UnknownOperation) as exc_info:
            executor.execute("DropAllTables", {})
        assert exc_info.value.to_error()["code"] == "unknown_operation"
        client.call.assert_not_called()

    def test_success_returns_data(self):
        executor, client = _executor({"success": True, "data": [{"ProvNum": 1, "Abbr": "DOC1"}]})
        assert executor.execute("GetProviders", {}) == [{"ProvNum": 1, "Abbr": "DOC1"}]
        client.call.assert_called_once_with("GetProviders", {}, idempotent=True)

    def test_mutating_operation_is_not_idempotent(self):
        executor, client = _executor({"success": True, "data": {"AptNum": 9}})
        executor.execute("BreakAppointment", {"AptNum": 9})
        assert client.call.call_args[1]["idempotent"] is False

    def test_arguments_are_normalised_before_dispatch(self):
        executor, client = _executor({"success": True, "data": {"PatNum": 5}})
        executor.execute(
            "CreatePatient",
            {"FName": "Ana", "LName": "Lopez", "Birthdate": "1990-04-12", "WirelessPhone": "555.123.4567"},
        )
        sent = client.call.call_args[0][1]
        assert sent["WirelessPhone"] == "5551234567"
        assert "Email" not in sent

    def test_bare_payload_is_passed_through(self):
        executor, _ = _executor([{"OperatoryNum": 1}])
        assert executor.execute("GetOperatories", {}) == [{"OperatoryNum": 1}]


class TestInvalidArguments:
    def test_missing_fields_reported_per_field(self):
        executor, client = _executor()
        with pytest.raises(InvalidArguments) as exc_info:
            executor.execute("CreateAppointment", {"PatNum": 4})

        fields = {d["field"] for d in exc_info.value.details}
        assert fields == {"AptDateTime", "ProvNum", "Op"}
        client.call.assert_not_called()

    def test_error_payload_carries_details_and_hint(self):
        executor, _ = _executor()
        with pytest.raises(InvalidArguments) as exc_info:
            executor.execute("CreateAppointment", {"PatNum": 4, "AptDateTime": "tomorrow 9am", "ProvNum": 1, "Op": 1})

        error = exc_info.value.to_error()
        assert error["code"] == "invalid_arguments"
        assert error["details"][0]["field"] == "AptDateTime"
        assert "YYYY-MM-DD HH:MM:SS" in error["details"][0]["problem"]
        assert "CreateAppointment" in error["hint"]


class TestErrorClassification:
    def test_failure_envelope_becomes_operation_failed(self):
        executor, _ = _executor({"success": False, "errorCode": "SLOT_TAKEN", "message": "Time slot conflict"})
        with pytest.raises(OperationFailed) as exc_info:
            executor.execute(
                "CreateAppointment",
                {"PatNum": 4, "AptDateTime": "2026-03-02 09:00:00", "ProvNum": 1, "Op": 1},
            )
        error = exc_info.value.to_error()
        assert error["errorCode"] == "SLOT_TAKEN"
        assert error["message"] == "Time slot conflict"

    def test_server_error_is_transient(self):
        executor, _ = _executor(side_effect=PracticeAPIError("down", status_code=502))
        with pytest.raises(TransientUpstreamError) as exc_info:
            executor.execute("GetProviders", {})
        assert exc_info.value.to_error()["retryable"] is True

    def test_client_error_is_operation_failed(self):
        executor, _ = _executor(side_effect=PracticeAPIError("nope", status_code=403))
        with pytest.raises(OperationFailed) as exc_info:
            executor.execute("GetProviders", {})
        assert exc_info.value.error_code == "http_403"
