"""
Transformation supervisor for refgate.

Wraps one opaque operation in a guarded attempt. Each step appends exactly
one audit entry:

    1. attempt.created          phase must be Active
    2. attempt.prechecked       entry criteria re-evaluated, abort on failure
    3. rollback_point.captured  through the operation's rollback procedure
    4. attempt.executed         the operation itself
    5. attempt.postchecked      reports refreshed, post-check evaluated
    6. attempt.resolved         Succeeded, RolledBack or Aborted

A failed execution or post-check takes the rollback path. Attempts run one
at a time; an attempt left unresolved by a crash is recovered on startup
before anything else may run.
"""

from datetime import datetime
from typing import List, Optional
import logging
import uuid

from refgate.audit import Ledger
from refgate.criteria import evaluate_all
from refgate.errors import (
    GateBlocked,
    OperationCancelled,
    OperationFailed,
    PhaseNotActive,
    RollbackFailed,
)
from refgate.gates import PhaseGateEngine
from refgate.models.attempt import AttemptOutcome, TransformationAttempt
from refgate.models.audit_entry import EventType
from refgate.models.phase import EvalResult, PhaseDefinition, all_satisfied, unmet_details
from refgate.procedures import Operation
from refgate.reports import ReportStore
from refgate.rollback import Refresher, RollbackController, no_refresh, store_failure
from refgate.workflow import WorkflowDefinition

logger = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    return f"{prefix}-{datetime.now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6]}"


def _dedupe(names: List[str]) -> List[str]:
    seen = set()
    result = []
    for name in names:
        if name not in seen:
            seen.add(name)
            result.append(name)
    return result


class TransformationSupervisor:
    """Runs operations inside the Active phase with rollback protection."""

    def __init__(
        self,
        ledger: Ledger,
        engine: PhaseGateEngine,
        controller: RollbackController,
        store: ReportStore,
        workflow: WorkflowDefinition,
        refresh: Optional[Refresher] = None,
    ):
        self.ledger = ledger
        self.engine = engine
        self.controller = controller
        self.store = store
        self.workflow = workflow
        self.refresh = refresh or no_refresh

    @property
    def state(self):
        return self.ledger.state

    def run(self, phase_name: str, operation: Operation) -> TransformationAttempt:
        """Run one operation as a supervised attempt.

        Returns the resolved attempt; its outcome says what happened.

        Raises:
            GateBlocked: Another attempt is in flight, or the phase is unknown
            PhaseNotActive: The phase is not Active (recorded as rejected)
            RollbackFailed: The rollback after a failure could not be verified
            KeyboardInterrupt: Re-raised after the interrupted attempt rolled back
        """
        definition = self.engine.definition(phase_name)

        in_flight = self.state.unresolved_attempts()
        if in_flight:
            raise GateBlocked("Attempt in flight", [
                f"attempt {in_flight[0].attempt_id} is still in flight",
            ])

        descriptor = operation.describe()
        try:
            inst = self.engine.require_active(phase_name)
        except PhaseNotActive as e:
            self.ledger.record(EventType.ATTEMPT_REJECTED, {
                "phase": phase_name,
                "operation": descriptor.to_dict(),
                "reason": str(e),
            })
            raise

        # 1. created
        attempt_id = new_id("att")
        self.ledger.record(EventType.ATTEMPT_CREATED, {
            "attempt_id": attempt_id,
            "instance_id": inst.instance_id,
            "operation": descriptor.to_dict(),
        })
        attempt = self.state.attempts[attempt_id]
        logger.info("Attempt %s: %s in %s", attempt_id, descriptor.name, inst.instance_id)

        # 2. prechecked
        try:
            snapshot = self.store.snapshot()
        except Exception as e:
            precheck, pre_snapshot = [store_failure(e)], ""
        else:
            precheck = evaluate_all(definition.entry_criteria, snapshot)
            pre_snapshot = snapshot.fingerprint
        self.ledger.record(EventType.ATTEMPT_PRECHECKED, {
            "attempt_id": attempt_id,
            "results": [r.to_dict() for r in precheck],
            "snapshot": pre_snapshot,
        })
        if not all_satisfied(precheck):
            return self._resolve(attempt, AttemptOutcome.ABORTED,
                                 "pre-check failed: " + "; ".join(unmet_details(precheck)))

        # 3. rollback point
        point_id = new_id("pt")
        try:
            procedure = operation.rollback_procedure()
            reference = procedure.capture(point_id)
        except Exception as e:
            return self._resolve(attempt, AttemptOutcome.ABORTED,
                                 f"rollback point capture failed: {e}")
        self.controller.register(point_id, procedure)
        self.ledger.record(EventType.POINT_CAPTURED, {
            "point_id": point_id,
            "attempt_id": attempt_id,
            "procedure": procedure.name,
            "reference": reference,
            "params": procedure.params(),
        })

        # 4. execute
        interrupted = None
        error = ""
        try:
            operation.execute()
        except OperationCancelled as e:
            error = f"cancelled: {e}"
        except KeyboardInterrupt as e:
            error = "cancelled: interrupted"
            interrupted = e
        except OperationFailed as e:
            error = str(e)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        self.ledger.record(EventType.ATTEMPT_EXECUTED, {
            "attempt_id": attempt_id,
            "ok": not error,
            "error": error,
        })

        if error:
            logger.warning("Attempt %s failed: %s", attempt_id, error)
            self._roll_back(attempt, f"operation failed: {error}")
            if interrupted is not None:
                raise interrupted
            return attempt

        # 5. post-check
        postcheck, post_snapshot = self._postcheck(definition, precheck)
        self.ledger.record(EventType.ATTEMPT_POSTCHECKED, {
            "attempt_id": attempt_id,
            "results": [r.to_dict() for r in postcheck],
            "snapshot": post_snapshot,
        })

        # 6. resolve
        if all_satisfied(postcheck):
            return self._resolve(attempt, AttemptOutcome.SUCCEEDED, "post-check passed")
        self._roll_back(attempt, "post-check failed: " + "; ".join(unmet_details(postcheck)))
        return attempt

    def _postcheck(self, definition: PhaseDefinition, precheck: List[EvalResult]):
        """Refresh reports, then evaluate post-check and no-regression criteria.

        The operation has already run, so a refresh or read that raises is an
        unmet result and leads to rollback.
        """
        criteria = _dedupe(
            list(definition.post_check)
            + list(self.workflow.post_check)
            + [r.criterion for r in precheck if r.satisfied]
        )
        try:
            failed_collectors = self.refresh()
            snapshot = self.store.snapshot()
        except Exception as e:
            logger.error("Cannot read reports for post-check: %s", e)
            return [store_failure(e)], ""
        return evaluate_all(criteria, snapshot) + failed_collectors, snapshot.fingerprint

    def _resolve(self, attempt: TransformationAttempt, outcome: AttemptOutcome,
                 reason: str) -> TransformationAttempt:
        self.ledger.record(EventType.ATTEMPT_RESOLVED, {
            "attempt_id": attempt.attempt_id,
            "outcome": outcome.value,
            "reason": reason,
        })
        logger.info("Attempt %s resolved %s: %s", attempt.attempt_id, outcome.value, reason)
        return attempt

    def _roll_back(self, attempt: TransformationAttempt, reason: str) -> TransformationAttempt:
        result = self.controller.rollback(attempt.point_id, reason)
        if result.ok:
            return self._resolve(attempt, AttemptOutcome.ROLLED_BACK, reason)

        self._resolve(attempt, AttemptOutcome.ABORTED,
                      f"{reason}; rollback failed: {result.detail}")
        inst = self.state.instances.get(attempt.phase_instance)
        raise RollbackFailed(
            f"Rollback of attempt {attempt.attempt_id} failed: {result.detail}",
            point_id=attempt.point_id or "",
            phase=inst.name if inst else "",
        )

    def recover(self) -> List[TransformationAttempt]:
        """Resolve attempts a crash left open. Runs before any command."""
        recovered = []
        for attempt in self.state.unresolved_attempts():
            logger.warning("Recovering interrupted attempt %s", attempt.attempt_id)
            if attempt.point_id:
                self._roll_back(attempt, "interrupted before resolution")
            else:
                self._resolve(attempt, AttemptOutcome.ABORTED,
                              "interrupted before a rollback point was captured")
            recovered.append(attempt)
        return recovered
