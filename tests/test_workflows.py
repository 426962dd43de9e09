"""Tests for the workflow registry, synthesizer and arbitration."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from dental_voice.config import ROUND_TRIP_TIMEOUT_SECONDS
from dental_voice.errors import WorkflowSynthesisError
from dental_voice.models import WorkflowStep
from dental_voice.workflows import (
    CANNED_WORKFLOWS,
    ArbitrationVerdict,
    CriteriaScores,
    WorkflowRegistry,
    WorkflowSynthesizer,
    _build_arbiter_llm,
    _build_generator_llm,
    _Candidate,
    schema_problems,
)

# ── Helpers ──────────────────────────────────────────────────────────


def _candidate(*names: str) -> _Candidate:
    return _Candidate(steps=[WorkflowStep(function_name=n) for n in names])


def _generator(*candidates) -> MagicMock:
    llm = MagicMock()
    llm.with_structured_output.return_value.invoke.side_effect = list(candidates)
    return llm


def _scores(value: int = 4) -> CriteriaScores:
    return CriteriaScores(
        correctness=value, logical_soundness=value, completeness=value, safety=value, efficiency=value,
    )


def _verdict(a_ok: bool, b_ok: bool, chosen: str, reasoning: str = "judged") -> ArbitrationVerdict:
    return ArbitrationVerdict(
        candidate_a_correct=a_ok,
        candidate_b_correct=b_ok,
        scores_a=_scores(5 if a_ok else 2),
        scores_b=_scores(5 if b_ok else 2),
        chosen=chosen,
        reasoning=reasoning,
    )


def _arbiter(*verdicts) -> MagicMock:
    llm = MagicMock()
    llm.with_structured_output.return_value.invoke.side_effect = list(verdicts)
    return llm


def _synthesizer(primary, secondary, arbiter, incident_log, max_attempts=3) -> WorkflowSynthesizer:
    return WorkflowSynthesizer(
        primary, secondary, arbiter, incident_log=incident_log, max_attempts=max_attempts,
    )


LOOKUP = ("GetMultiplePatients", "GetAppointments")
LOOKUP_WITH_CONFIRM = ("GetMultiplePatients", "ConfirmWithUser", "GetAppointments")


# ── TestRegistry ─────────────────────────────────────────────────────


class TestRegistry:
    def test_canned_intents(self):
        registry = WorkflowRegistry()
        assert registry.intents() == ["book_appointment", "cancel_appointment", "reschedule_appointment"]

    def test_canned_workflows_fit_the_catalogue(self):
        for workflow in CANNED_WORKFLOWS:
            assert schema_problems(workflow) == []

    def test_resolve_uses_registry_without_generation(self, incident_log):
        primary, secondary, arbiter = MagicMock(), MagicMock(), MagicMock()
        synth = _synthesizer(primary, secondary, arbiter, incident_log)

        workflow = synth.resolve("book_appointment")

        assert workflow.intent == "book_appointment"
        primary.with_structured_output.assert_not_called()
        assert len(incident_log) == 0

    @pytest.mark.parametrize("intent", ["general_question", "greeting", "other"])
    def test_conversational_intents_have_no_plan(self, intent, incident_log):
        synth = _synthesizer(MagicMock(), MagicMock(), MagicMock(), incident_log)
        assert synth.resolve(intent) is None

    def test_render_lists_steps(self):
        text = WorkflowRegistry().get("cancel_appointment").render()
        assert "1. GetMultiplePatients" in text
        assert "BreakAppointment" in text


# ── TestArbitration ──────────────────────────────────────────────────


class TestArbitration:
    def test_picks_one_candidate_outright(self, incident_log):
        synth = _synthesizer(
            _generator(_candidate(*LOOKUP)),
            _generator(_candidate(*LOOKUP_WITH_CONFIRM)),
            _arbiter(_verdict(True, True, "b")),
            incident_log,
        )

        workflow = synth.resolve("check_appointments", "s1")

        assert [s.function_name for s in workflow.steps] == list(LOOKUP_WITH_CONFIRM)
        assert synth.registry.get("check_appointments") == workflow
        entry = incident_log.entries()[0]
        assert entry.operation_type == "workflow_arbitration"
        assert entry.verdict == "both_correct"
        assert entry.action == "chosen"
        assert entry.original_arguments["chosen"] == "b"
        assert entry.original_arguments["scores_a"]["correctness"] == 5

    def test_identical_candidates_are_both_correct(self, incident_log):
        synth = _synthesizer(
            _generator(_candidate(*LOOKUP)),
            _generator(_candidate(*LOOKUP)),
            _arbiter(_verdict(True, False, "b")),
            incident_log,
        )

        workflow = synth.resolve("check_appointments", "s1")

        assert [s.function_name for s in workflow.steps] == list(LOOKUP)
        entry = incident_log.entries()[0]
        assert entry.verdict == "both_correct"
        assert entry.original_arguments["chosen"] == "a"
        assert entry.original_arguments["scores_a"] == entry.original_arguments["scores_b"]

    def test_incorrect_pick_falls_back_to_correct_candidate(self, incident_log):
        synth = _synthesizer(
            _generator(_candidate(*LOOKUP)),
            _generator(_candidate(*LOOKUP_WITH_CONFIRM)),
            _arbiter(_verdict(False, True, "a")),
            incident_log,
        )

        workflow = synth.resolve("check_appointments")

        assert [s.function_name for s in workflow.steps] == list(LOOKUP_WITH_CONFIRM)
        assert incident_log.entries()[0].verdict == "one_correct"

    def test_resolve_caches_synthesized_workflow(self, incident_log):
        primary = _generator(_candidate(*LOOKUP))
        synth = _synthesizer(
            primary, _generator(_candidate(*LOOKUP_WITH_CONFIRM)), _arbiter(_verdict(True, True, "a")), incident_log,
        )

        first = synth.resolve("check_appointments")
        second = synth.resolve("check_appointments")

        assert first is second
        assert primary.with_structured_output.return_value.invoke.call_count == 1


# ── TestRetries ──────────────────────────────────────────────────────


class TestRetries:
    def test_rejected_candidates_are_excluded_on_retry(self, incident_log):
        fresh = ("GetPatient", "GetAppointments")
        arbiter = _arbiter(_verdict(False, False, "none"), _verdict(True, True, "a"))
        synth = _synthesizer(
            # Generator a repeats its rejected plan on the second attempt
            _generator(_candidate(*LOOKUP), _candidate(*LOOKUP)),
            _generator(_candidate(*LOOKUP_WITH_CONFIRM), _candidate(*fresh)),
            arbiter,
            incident_log,
        )

        workflow = synth.resolve("check_appointments")

        assert [s.function_name for s in workflow.steps] == list(fresh)
        second_prompt = arbiter.with_structured_output.return_value.invoke.call_args[0][0][0].content
        assert "1. GetPatient" in second_prompt
        assert [e.verdict for e in incident_log.entries()] == ["none_correct", "both_correct"]

    def test_schema_invalid_candidates_never_reach_the_arbiter(self, incident_log):
        arbiter = _arbiter()
        synth = _synthesizer(
            _generator(_candidate("DeleteEverything"), _candidate("DeleteEverything")),
            _generator(_candidate("RefundPatient"), _candidate("RefundPatient")),
            arbiter,
            incident_log,
            max_attempts=2,
        )

        with pytest.raises(WorkflowSynthesisError):
            synth.synthesize("refund", "s1")

        arbiter.with_structured_output.return_value.invoke.assert_not_called()
        assert [e.action for e in incident_log.entries()] == ["failed", "failed"]

    def test_gives_up_after_max_attempts(self, incident_log):
        synth = _synthesizer(
            _generator(_candidate("GetPatient"), _candidate("GetProviders")),
            _generator(_candidate("GetOperatories"), _candidate("GetAppointments")),
            _arbiter(_verdict(False, False, "none"), _verdict(False, False, "none")),
            incident_log,
            max_attempts=2,
        )

        with pytest.raises(WorkflowSynthesisError):
            synth.resolve("ambiguous")

        assert synth.registry.get("ambiguous") is None
        assert len(incident_log) == 2

    def test_single_surviving_candidate_is_still_judged(self, incident_log):
        failing = MagicMock()
        failing.with_structured_output.return_value.invoke.side_effect = TimeoutError()
        synth = _synthesizer(
            failing, _generator(_candidate(*LOOKUP)), _arbiter(_verdict(True, True, "a")), incident_log,
        )

        workflow = synth.resolve("check_appointments")

        assert [s.function_name for s in workflow.steps] == list(LOOKUP)
        assert incident_log.entries()[0].action == "chosen"

    def test_no_new_attempt_once_budget_is_spent(self, incident_log):
        arbiter = _arbiter(_verdict(False, False, "none"))
        synth = WorkflowSynthesizer(
            _generator(_candidate("GetPatient")),
            _generator(_candidate("GetProviders")),
            arbiter,
            incident_log=incident_log,
            max_attempts=3,
            budget_seconds=0,
        )

        with pytest.raises(WorkflowSynthesisError, match="after 1 attempt"):
            synth.synthesize("ambiguous", "s1")

        assert arbiter.with_structured_output.return_value.invoke.call_count == 1
        assert len(incident_log) == 1


# ── TestModelClients ─────────────────────────────────────────────────


class TestModelClients:
    @pytest.mark.parametrize("build", [lambda: _build_generator_llm("gen-model"), _build_arbiter_llm])
    def test_calls_are_bounded_and_not_retried_by_the_sdk(self, build):
        with patch("dental_voice.workflows.ChatAnthropic") as chat:
            build()
        kwargs = chat.call_args.kwargs
        assert kwargs["timeout"] == ROUND_TRIP_TIMEOUT_SECONDS
        assert kwargs["max_retries"] == 0
