"""
Tests for supervised transformation attempts.
"""

import pytest

from refgate.audit import Ledger
from refgate.errors import (
    AttemptImmutable,
    OperationCancelled,
    OperationFailed,
    RefgateError,
    RollbackFailed,
)
from refgate.models.attempt import AttemptOutcome, PointStatus
from refgate.models.audit_entry import EventType
from refgate.models.phase import PhaseStatus
from refgate.orchestrator import Orchestrator
from refgate.procedures import CallableOperation, CallableProcedure


ATTEMPT_STEPS = [
    "attempt.created",
    "attempt.prechecked",
    "rollback_point.captured",
    "attempt.executed",
    "attempt.postchecked",
    "attempt.resolved",
]


def attempt_of(orch, result):
    return orch.state.attempts[result.data["attempt"]["attempt_id"]]


def event_types(orch, after):
    return [e.event_type for e in orch.log.entries(after + 1)]


class TestSuccessfulAttempt:
    """Tests for the happy path."""

    def test_attempt_succeeds_and_releases_point(self, transforming, system):
        result = transforming.run_operation("Transformation", system.operation(coverage=92))
        assert result.exit_code == 0
        attempt = attempt_of(transforming, result)
        assert attempt.outcome == AttemptOutcome.SUCCEEDED
        assert attempt.executed is True
        assert transforming.state.points[attempt.point_id].status == PointStatus.RELEASED

    def test_each_step_appends_one_entry(self, transforming, system):
        before = transforming.log.last_sequence()
        transforming.run_operation("Transformation", system.operation(coverage=92))
        assert event_types(transforming, before) == ATTEMPT_STEPS

    def test_resolved_attempt_is_immutable(self, transforming, system):
        result = transforming.run_operation("Transformation", system.operation())
        attempt = attempt_of(transforming, result)
        with pytest.raises(AttemptImmutable):
            attempt.record_execution("late error")


class TestRolledBackAttempt:
    """Tests for the rollback path."""

    def test_coverage_drop_rolls_back(self, transforming, system):
        result = transforming.run_operation("Transformation", system.operation(coverage=88))
        assert result.exit_code == 2
        attempt = attempt_of(transforming, result)
        assert attempt.outcome == AttemptOutcome.ROLLED_BACK
        assert "CoverageAtLeast(90): 88 < 90" in attempt.reason
        assert system.state["coverage"] == 91

        rollback = transforming.state.rollback_results[attempt.point_id]
        assert rollback.success and rollback.verified_healthy
        assert transforming.state.points[attempt.point_id].status == PointStatus.RESTORED
        assert transforming.state.instance("Transformation").status == PhaseStatus.ACTIVE

    def test_operation_error_skips_postcheck(self, transforming, system):
        before = transforming.log.last_sequence()
        op = system.operation(coverage=50, error=OperationFailed("extract failed"))
        result = transforming.run_operation("Transformation", op)
        assert result.exit_code == 2
        attempt = attempt_of(transforming, result)
        assert attempt.error == "extract failed"
        assert attempt.outcome == AttemptOutcome.ROLLED_BACK
        assert "attempt.postchecked" not in event_types(transforming, before)
        assert system.state["coverage"] == 91

    def test_unexpected_exception_is_an_operation_failure(self, transforming, system):
        op = system.operation(error=RuntimeError("segfault"))
        result = transforming.run_operation("Transformation", op)
        assert attempt_of(transforming, result).error == "RuntimeError: segfault"
        assert result.exit_code == 2

    def test_cancellation_takes_rollback_path(self, transforming, system):
        op = system.operation(coverage=70, error=OperationCancelled("stopped by operator"))
        result = transforming.run_operation("Transformation", op)
        attempt = attempt_of(transforming, result)
        assert attempt.outcome == AttemptOutcome.ROLLED_BACK
        assert attempt.error.startswith("cancelled")

    def test_keyboard_interrupt_rolls_back_then_propagates(self, transforming, system):
        with pytest.raises(KeyboardInterrupt):
            transforming.run_operation("Transformation", system.operation(coverage=60,
                                                                          error=KeyboardInterrupt()))
        (attempt,) = transforming.state.attempts.values()
        assert attempt.outcome == AttemptOutcome.ROLLED_BACK
        assert system.state["coverage"] == 91


class TestAbortedAttempt:
    """Tests for attempts that never execute."""

    def test_precheck_failure_aborts_without_side_effects(self, transforming, store, system):
        store.publish("coverage", {"line": 85})
        ran = []
        op = CallableOperation("refactor", lambda: ran.append(True), system.procedure())

        result = transforming.run_operation("Transformation", op)
        assert result.exit_code == 1
        attempt = attempt_of(transforming, result)
        assert attempt.outcome == AttemptOutcome.ABORTED
        assert attempt.reason == "pre-check failed: CoverageAtLeast(90): 85 < 90"
        assert attempt.point_id is None
        assert ran == []
        assert system.saved == {}

    def test_capture_failure_aborts(self, transforming):
        def capture(point_id):
            raise OSError("no space left for snapshot")

        ran = []
        op = CallableOperation("refactor", lambda: ran.append(True),
                               CallableProcedure(capture, lambda ref: None))
        result = transforming.run_operation("Transformation", op)
        attempt = attempt_of(transforming, result)
        assert attempt.outcome == AttemptOutcome.ABORTED
        assert "capture failed" in attempt.reason
        assert ran == []

    def test_rejected_when_phase_not_active(self, orch, system):
        result = orch.run_operation("Validation", system.operation())
        assert result.exit_code == 1
        assert "Validation#1 is Locked" in result.detail
        assert orch.log.entries()[-1].event_type == "attempt.rejected"
        assert orch.state.attempts == {}

    def test_second_attempt_while_one_is_in_flight(self, transforming, system):
        transforming.ledger.record(EventType.ATTEMPT_CREATED, {
            "attempt_id": "att-open", "instance_id": "Transformation#1",
            "operation": {"name": "other"},
        })
        result = transforming.run_operation("Transformation", system.operation())
        assert result.exit_code == 1
        assert result.data["details"] == ["attempt att-open is still in flight"]


class TestRollbackFailure:
    """Tests for escalation when a rollback cannot be verified."""

    def test_failed_restore_fails_phase_and_halts(self, transforming, system):
        system.fail_restore = True
        with pytest.raises(RollbackFailed) as exc:
            transforming.run_operation("Transformation", system.operation(coverage=88))
        assert exc.value.phase == "Transformation"

        (attempt,) = transforming.state.attempts.values()
        assert attempt.outcome == AttemptOutcome.ABORTED
        assert "rollback failed" in attempt.reason
        inst = transforming.state.instance("Transformation")
        assert inst.status == PhaseStatus.FAILED
        assert transforming.state.points[attempt.point_id].status == PointStatus.FAILED

        with pytest.raises(RefgateError, match="halted"):
            transforming.status()

    def test_unhealthy_restore_is_not_success(self, transforming, system):
        system.break_on_restore = True
        with pytest.raises(RollbackFailed):
            transforming.run_operation("Transformation", system.operation(coverage=88))
        (result,) = transforming.state.rollback_results.values()
        assert result.success is True
        assert result.verified_healthy is False
        assert "TestsPassing: 3 failing" in result.detail


class TestResumability:
    """State rebuilt from the log matches the live state."""

    def test_replayed_state_equals_live_state(self, transforming, system):
        transforming.run_operation("Transformation", system.operation(coverage=92))
        transforming.run_operation("Transformation", system.operation(coverage=80))
        transforming.run_operation("Transformation", system.operation(error=OperationFailed("x")))

        replayed = Ledger(transforming.log)
        replayed.load()
        assert replayed.state.to_dict() == transforming.state.to_dict()


class TestUnreadableReports:
    """Report read failures after execution take the rollback path."""

    def test_refresh_error_rolls_back(self, transforming, system, monkeypatch):
        def broken_refresh():
            raise OSError("reports volume unmounted")

        monkeypatch.setattr(transforming.supervisor, "refresh", broken_refresh)
        result = transforming.run_operation("Transformation", system.operation(coverage=92))

        assert result.exit_code == 2
        attempt = attempt_of(transforming, result)
        assert attempt.outcome == AttemptOutcome.ROLLED_BACK
        assert "ReportStore: unreadable (OSError: reports volume unmounted)" in attempt.reason
        assert system.state["coverage"] == 91
        assert transforming.state.unresolved_attempts() == []

    def test_corrupt_report_file_rolls_back(self, tmp_path, config, healthy_reports):
        with Orchestrator(str(tmp_path), config=config) as orch:
            for kind, doc in healthy_reports.items():
                orch.store.publish(kind, doc)
            for name in ("Assessment", "SafetyNet"):
                assert orch.enter_phase(name).ok
                assert orch.complete_phase(name).ok
            assert orch.enter_phase("Transformation").ok

            def corrupt():
                (orch.store.path / "coverage.json").write_text('{"line": 9')

            def restore(reference):
                orch.store.publish("coverage", {"line": 91})

            procedure = CallableProcedure(lambda point_id: point_id, restore)
            result = orch.run_operation("Transformation",
                                        CallableOperation("refactor", corrupt, procedure))

            assert result.exit_code == 2
            attempt = attempt_of(orch, result)
            assert attempt.outcome == AttemptOutcome.ROLLED_BACK
            assert "CoverageAtLeast(90): report coverage unreadable (coverage.json:" in attempt.reason
            assert orch.store.get_report("coverage") == {"line": 91}

            follow_up = orch.run_operation("Transformation",
                                           CallableOperation("noop", lambda: None, procedure))
            assert follow_up.exit_code == 0
