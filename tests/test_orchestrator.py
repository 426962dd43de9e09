"""Tests for the LangGraph tool-call orchestrator.

The conversation model, router and practice API are all mocked; the graph,
store, executor and validation layer are real.
"""

from __future__ import annotations

import itertools
import threading
from unittest.mock import MagicMock, patch

import pytest
from langchain_core.messages import AIMessage, SystemMessage, ToolMessage

from dental_voice.config import ROUND_TRIP_TIMEOUT_SECONDS
from dental_voice.errors import SessionBusyError, SessionEvictedError, TransientUpstreamError
from dental_voice.models import AssistantText, FunctionCall, FunctionResult, UserText
from dental_voice.orchestrator import Orchestrator, _build_router_llm, _normalise_intent, _text_of
from dental_voice.prompts import (
    CAP_FALLBACK_TEXT,
    GENERIC_APOLOGY_TEXT,
    GREETING_TRIGGER,
    UPSTREAM_FAILURE_TEXT,
)
from dental_voice.tools.executor import ExternalAPIExecutor
from dental_voice.validator import ValidationLayer, ValidationSettings
from dental_voice.workflows import WorkflowRegistry

INSTRUCTIONS = "You are the receptionist for a test dental practice."

# ── Helpers ──────────────────────────────────────────────────────────


def _tool_call(name: str, args: dict | None = None, call_id: str = "toolu_1") -> AIMessage:
    return AIMessage(content="", tool_calls=[{"name": name, "args": args or {}, "id": call_id}])


def _practice_client(*envelopes) -> MagicMock:
    client = MagicMock()
    client.call.side_effect = list(envelopes)
    return client


def _orchestrator(store, llm, client=None, **kwargs) -> Orchestrator:
    executor = ExternalAPIExecutor(client=client or MagicMock())
    kwargs.setdefault("retry_backoff_seconds", 0)
    return Orchestrator(store, executor, llm=llm, instructions=INSTRUCTIONS, **kwargs)


# ── TestTextTurns ────────────────────────────────────────────────────


class TestTextTurns:
    def test_plain_answer(self, store):
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content="We open at 8 on weekdays.")
        orch = _orchestrator(store, llm)

        result = orch.orchestrate("s1", "When do you open?")

        assert result.text == "We open at 8 on weekdays."
        assert result.error is None
        assert result.round_trips == 1
        assert store.history("s1") == [
            UserText(text="When do you open?"),
            AssistantText(text="We open at 8 on weekdays."),
        ]

    def test_instructions_are_sent_as_system_message(self, store):
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content="Hello!")
        _orchestrator(store, llm).orchestrate("s1", "hi")

        messages = llm.invoke.call_args[0][0]
        assert isinstance(messages[0], SystemMessage)
        assert messages[0].content == INSTRUCTIONS

    def test_content_blocks_are_joined(self):
        message = AIMessage(content=[{"type": "text", "text": "Sure, "}, {"type": "text", "text": "Monday works."}])
        assert _text_of(message) == "Sure, Monday works."

    @pytest.mark.parametrize(
        "raw, expected",
        [("book_appointment", "book_appointment"), ("  Cancel-Appointment\n", "cancel_appointment"), ("", "other")],
    )
    def test_normalise_intent(self, raw, expected):
        assert _normalise_intent(raw) == expected


# ── TestToolLoop ─────────────────────────────────────────────────────


class TestToolLoop:
    def test_call_and_result_are_paired_in_history(self, store):
        llm = MagicMock()
        llm.invoke.side_effect = [
            _tool_call("GetAvailableSlots", {"dateStart": "2026-03-02", "dateEnd": "2026-03-02"}),
            AIMessage(content="I have 9 AM or 2 PM on Monday."),
        ]
        client = _practice_client({"success": True, "data": [{"DateTimeStart": "2026-03-02 09:00:00"}]})
        orch = _orchestrator(store, llm, client)

        result = orch.orchestrate("s1", "Anything Monday?")

        assert result.text == "I have 9 AM or 2 PM on Monday."
        assert result.round_trips == 2
        history = store.history("s1")
        assert [m.kind for m in history] == ["user_text", "function_call", "function_result", "assistant_text"]
        assert history[1].call_id == history[2].call_id == "toolu_1"
        assert history[2].payload == [{"DateTimeStart": "2026-03-02 09:00:00"}]

        second_request = llm.invoke.call_args_list[1][0][0]
        assert isinstance(second_request[-1], ToolMessage)
        assert second_request[-1].tool_call_id == "toolu_1"

    def test_operation_error_is_returned_to_the_model(self, store):
        llm = MagicMock()
        llm.invoke.side_effect = [
            _tool_call("GetPatient", {"PatNum": 12}),
            AIMessage(content="I couldn't find that record."),
        ]
        client = _practice_client({"success": False, "errorCode": "NOT_FOUND", "message": "No such patient"})
        orch = _orchestrator(store, llm, client)

        result = orch.orchestrate("s1", "I'm patient 12")

        assert result.error is None
        stored = store.history("s1")[2]
        assert isinstance(stored, FunctionResult)
        assert stored.error["code"] == "operation_failed"
        assert stored.error["errorCode"] == "NOT_FOUND"

    def test_unknown_operation_becomes_error_result(self, store):
        llm = MagicMock()
        llm.invoke.side_effect = [
            _tool_call("IssueRefund", {"amount": 100}),
            AIMessage(content="I can't do refunds, sorry."),
        ]
        client = MagicMock()
        orch = _orchestrator(store, llm, client)

        orch.orchestrate("s1", "refund me")

        assert store.history("s1")[2].error["code"] == "unknown_operation"
        client.call.assert_not_called()

    def test_invalid_arguments_are_not_sent(self, store):
        llm = MagicMock()
        llm.invoke.side_effect = [
            _tool_call("GetAvailableSlots", {"dateStart": "next monday", "dateEnd": "2026-03-02"}),
            AIMessage(content="Which date did you mean?"),
        ]
        client = MagicMock()
        orch = _orchestrator(store, llm, client)

        orch.orchestrate("s1", "next monday")

        error = store.history("s1")[2].error
        assert error["code"] == "invalid_arguments"
        assert error["details"][0]["field"] == "dateStart"
        client.call.assert_not_called()

    def test_round_trip_cap(self, store):
        ids = itertools.count()
        llm = MagicMock()
        llm.invoke.side_effect = lambda messages: _tool_call("GetProviders", call_id=f"toolu_{next(ids)}")
        client = MagicMock()
        client.call.return_value = {"success": True, "data": []}
        orch = _orchestrator(store, llm, client, max_round_trips=3)

        result = orch.orchestrate("s1", "loop forever")

        assert llm.invoke.call_count == 3
        assert client.call.call_count == 2
        assert result.text == CAP_FALLBACK_TEXT
        assert result.error["code"] == "iteration_cap_exceeded"
        assert result.outcome == "cap_exceeded"
        history = store.history("s1")
        assert history[-1] == AssistantText(text=CAP_FALLBACK_TEXT)
        assert sum(isinstance(m, FunctionCall) for m in history) == 2


# ── TestIdentifiersAndValidation ─────────────────────────────────────


class TestIdentifiersAndValidation:
    def test_created_patient_id_flows_into_booking(self, store):
        llm = MagicMock()
        llm.invoke.side_effect = [
            _tool_call(
                "CreatePatient",
                {"FName": "Ana", "LName": "Lopez", "Birthdate": "1990-04-12", "WirelessPhone": "5551234567"},
                call_id="toolu_p",
            ),
            _tool_call(
                "CreateAppointment",
                {"PatNum": "<PatNum from CreatePatient>", "AptDateTime": "2026-03-02 09:00:00", "ProvNum": 1, "Op": 2},
                call_id="toolu_a",
            ),
            AIMessage(content="You're booked for Monday at 9."),
        ]
        client = _practice_client(
            {"success": True, "data": {"PatNum": 77}},
            {"success": True, "data": {"AptNum": 501}},
        )
        orch = _orchestrator(store, llm, client)

        orch.orchestrate("s1", "New patient, book Monday 9am")

        booking_args = client.call.call_args_list[1][0][1]
        assert booking_args["PatNum"] == 77
        stored_call = store.history("s1")[3]
        assert stored_call.name == "CreateAppointment"
        assert stored_call.arguments["PatNum"] == 77

    def test_ids_from_earlier_turns_are_reused(self, store):
        store.get_or_create("s1")
        store.append("s1", UserText(text="register me"))
        store.append_pair(
            "s1",
            FunctionCall(name="CreatePatient", arguments={}, call_id="old"),
            FunctionResult(call_id="old", payload={"PatNum": 88}),
        )
        llm = MagicMock()
        llm.invoke.side_effect = [
            _tool_call("CreateAppointment", {"AptDateTime": "2026-03-02 09:00:00", "ProvNum": 1, "Op": 2}),
            AIMessage(content="Booked."),
        ]
        client = _practice_client({"success": True, "data": {"AptNum": 9}})
        _orchestrator(store, llm, client).orchestrate("s1", "now book me")

        assert client.call.call_args[0][1]["PatNum"] == 88

    def test_null_filter_on_a_search_stays_unfiltered(self, store):
        store.get_or_create("s1")
        store.append("s1", UserText(text="register me"))
        store.append_pair(
            "s1",
            FunctionCall(name="CreatePatient", arguments={}, call_id="old"),
            FunctionResult(call_id="old", payload={"PatNum": 77}),
        )
        llm = MagicMock()
        llm.invoke.side_effect = [
            _tool_call("GetMultiplePatients", {"LName": "Smith", "FName": "John", "PatNum": None}),
            AIMessage(content="I found John Smith."),
        ]
        client = _practice_client({"success": True, "data": [{"PatNum": 12, "LName": "Smith"}]})

        _orchestrator(store, llm, client).orchestrate("s1", "look up John Smith for me")

        sent = client.call.call_args[0][1]
        assert sent == {"LName": "Smith", "FName": "John"}
        stored_call = store.history("s1")[-3]
        assert stored_call.arguments["PatNum"] is None

    def test_blocked_call_is_never_executed(self, store, incident_log):
        llm = MagicMock()
        llm.invoke.side_effect = [
            _tool_call(
                "CreateAppointment",
                {"PatNum": "<PatNum>", "AptDateTime": "2026-03-02 09:00:00", "ProvNum": 1, "Op": 2},
            ),
            AIMessage(content="Could I get your name first?"),
        ]
        client = MagicMock()
        validator = ValidationLayer(MagicMock(), incident_log=incident_log)
        orch = _orchestrator(store, llm, client, validator=validator)

        result = orch.orchestrate("s1", "book me monday at 9")

        client.call.assert_not_called()
        error = store.history("s1")[2].error
        assert error["code"] == "validation_blocked"
        assert error["severity"] == "critical"
        assert result.text == "Could I get your name first?"
        assert incident_log.entries("s1")[0].action == "blocked"

    def _unreachable_validator(self, incident_log, fail_closed) -> ValidationLayer:
        reviewer = MagicMock()
        reviewer.with_structured_output.return_value.invoke.side_effect = ConnectionError("validator down")
        settings = ValidationSettings(
            enabled=True, flags={"create_appointment": True}, fail_closed=frozenset(fail_closed),
        )
        return ValidationLayer(reviewer, settings=settings, incident_log=incident_log)

    def _booking_turn(self) -> MagicMock:
        llm = MagicMock()
        llm.invoke.side_effect = [
            _tool_call("CreateAppointment", {"PatNum": 12, "AptDateTime": "2026-03-02 09:00:00", "ProvNum": 1, "Op": 2}),
            AIMessage(content="Done."),
        ]
        return llm

    def test_unreachable_validator_blocks_fail_closed_booking(self, store, incident_log):
        client = MagicMock()
        validator = self._unreachable_validator(incident_log, {"create_appointment"})
        orch = _orchestrator(store, self._booking_turn(), client, validator=validator)

        orch.orchestrate("s1", "book me Monday at 9")

        client.call.assert_not_called()
        result = store.history("s1")[2]
        assert isinstance(result, FunctionResult)
        assert result.error["code"] == "transient_upstream_error"
        assert result.error["retryable"] is True
        entry = incident_log.entries("s1")[0]
        assert (entry.verdict, entry.action) == ("unavailable", "blocked")

    def test_unreachable_validator_lets_fail_open_booking_run(self, store, incident_log):
        client = _practice_client({"success": True, "data": {"AptNum": 501}})
        validator = self._unreachable_validator(incident_log, set())
        orch = _orchestrator(store, self._booking_turn(), client, validator=validator)

        orch.orchestrate("s1", "book me Monday at 9")

        assert client.call.call_count == 1
        assert store.history("s1")[2].payload == {"AptNum": 501}
        entry = incident_log.entries("s1")[0]
        assert (entry.verdict, entry.action) == ("unavailable", "allowed")

    def test_reads_skip_the_validator(self, store):
        llm = MagicMock()
        llm.invoke.side_effect = [_tool_call("GetProviders"), AIMessage(content="Dr. Smith is in.")]
        validator = MagicMock()
        validator.should_validate.return_value = False
        client = _practice_client({"success": True, "data": [{"ProvNum": 1}]})

        _orchestrator(store, llm, client, validator=validator).orchestrate("s1", "who is in?")

        validator.validate.assert_not_called()
        assert client.call.call_count == 1


# ── TestFailures ─────────────────────────────────────────────────────


class TestFailures:
    def test_transient_model_error_is_retried(self, store):
        llm = MagicMock()
        llm.invoke.side_effect = [TransientUpstreamError("overloaded"), AIMessage(content="Hi there.")]
        orch = _orchestrator(store, llm, retry_attempts=2)

        result = orch.orchestrate("s1", "hello")

        assert result.text == "Hi there."
        assert llm.invoke.call_count == 2

    def test_model_unavailable_gives_upstream_reply(self, store):
        llm = MagicMock()
        llm.invoke.side_effect = TransientUpstreamError("down")
        orch = _orchestrator(store, llm, retry_attempts=1)

        result = orch.orchestrate("s1", "hello")

        assert llm.invoke.call_count == 2
        assert result.text == UPSTREAM_FAILURE_TEXT
        assert result.error["code"] == "transient_upstream_error"
        assert store.history("s1")[-1] == AssistantText(text=UPSTREAM_FAILURE_TEXT)

    def test_unexpected_error_gives_apology(self, store):
        llm = MagicMock()
        llm.invoke.side_effect = ValueError("malformed response")
        result = _orchestrator(store, llm).orchestrate("s1", "hello")

        assert result.text == GENERIC_APOLOGY_TEXT
        assert result.error["code"] == "internal_error"
        assert store.history("s1")[-1] == AssistantText(text=GENERIC_APOLOGY_TEXT)

    def test_concurrent_turn_is_rejected(self, store):
        llm = MagicMock()
        orch = _orchestrator(store, llm)
        store.get_or_create("s1")

        with store.turn_lock("s1"):
            with pytest.raises(SessionBusyError):
                orch.orchestrate("s1", "second utterance")

        llm.invoke.assert_not_called()
        assert store.history("s1") == []

    def test_waiting_turn_runs_after_the_first(self, store):
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content="ok")
        orch = _orchestrator(store, llm)
        store.get_or_create("s1")
        lock = store.turn_lock("s1")
        lock.acquire()

        results = []
        worker = threading.Thread(target=lambda: results.append(orch.orchestrate("s1", "queued", wait=True)))
        worker.start()
        worker.join(timeout=0.1)
        assert results == []
        lock.release()
        worker.join(timeout=2)

        assert results[0].text == "ok"

    def test_turn_waiting_on_an_evicted_session_is_rejected(self, store):
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content="ok")
        orch = _orchestrator(store, llm)
        store.get_or_create("s1")
        lock = store.turn_lock("s1")
        lock.acquire()

        errors = []

        def queued_turn():
            try:
                orch.orchestrate("s1", "queued", wait=True)
            except SessionEvictedError as exc:
                errors.append(exc)

        worker = threading.Thread(target=queued_turn)
        worker.start()
        worker.join(timeout=0.1)
        store.evict("s1", wait_for_turn=False)
        lock.release()
        worker.join(timeout=2)

        assert len(errors) == 1
        llm.invoke.assert_not_called()
        assert store.get("s1") is None

    def test_reply_callback_decides_what_is_stored(self, store):
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content="You're booked for Monday.")
        heard = []

        def on_reply(text):
            heard.append(text)
            return "Sorry, that is taking a while."

        result = _orchestrator(store, llm).orchestrate("s1", "book Monday", on_reply=on_reply)

        assert heard == ["You're booked for Monday."]
        assert result.text == "Sorry, that is taking a while."
        assert store.history("s1")[-1] == AssistantText(text="Sorry, that is taking a while.")


# ── TestRouting ──────────────────────────────────────────────────────


class TestRouting:
    def test_plan_is_added_to_instructions(self, store):
        router = MagicMock()
        router.invoke.return_value = AIMessage(content="cancel_appointment")
        synthesizer = MagicMock()
        synthesizer.resolve.return_value = WorkflowRegistry().get("cancel_appointment")
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content="Sure, what's your last name?")
        orch = _orchestrator(store, llm, router_llm=router, synthesizer=synthesizer)

        result = orch.orchestrate("s1", "I need to cancel")

        assert result.intent == "cancel_appointment"
        synthesizer.resolve.assert_called_once_with("cancel_appointment", "s1")
        system = llm.invoke.call_args[0][0][0].content
        assert system.startswith(INSTRUCTIONS)
        assert "Suggested plan for intent 'cancel_appointment'" in system

    def test_greeting_skips_the_router(self, store):
        router = MagicMock()
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content="Thanks for calling, how can I help?")
        orch = _orchestrator(store, llm, router_llm=router, synthesizer=MagicMock())

        result = orch.orchestrate("s1", GREETING_TRIGGER, channel="voice")

        router.invoke.assert_not_called()
        assert result.intent == "greeting"

    def test_greeting_trigger_is_not_caller_speech(self, store):
        router = MagicMock()
        router.invoke.return_value = AIMessage(content="book_appointment")
        llm = MagicMock()
        llm.invoke.side_effect = [AIMessage(content="Thanks for calling!"), AIMessage(content="Sure.")]
        orch = _orchestrator(store, llm, router_llm=router)

        orch.orchestrate("s1", GREETING_TRIGGER, channel="voice")
        orch.orchestrate("s1", "I'd like to book a cleaning")

        assert store.history("s1")[0] == UserText(text=GREETING_TRIGGER, synthetic=True)
        assert store.history("s1")[2] == UserText(text="I'd like to book a cleaning")
        router_prompt = router.invoke.call_args[0][0][0].content
        assert GREETING_TRIGGER not in router_prompt
        assert "Assistant: Thanks for calling!" in router_prompt

    def test_router_failure_does_not_break_the_turn(self, store):
        router = MagicMock()
        router.invoke.side_effect = ConnectionError("router down")
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content="How can I help?")
        orch = _orchestrator(store, llm, router_llm=router, synthesizer=MagicMock())

        result = orch.orchestrate("s1", "hi")

        assert result.intent == "other"
        assert result.text == "How can I help?"
        assert llm.invoke.call_args[0][0][0].content == INSTRUCTIONS

    def test_router_client_is_bounded(self):
        with patch("dental_voice.orchestrator.ChatAnthropic") as chat:
            _build_router_llm()
        kwargs = chat.call_args.kwargs
        assert kwargs["timeout"] == ROUND_TRIP_TIMEOUT_SECONDS
        assert kwargs["max_retries"] == 0
