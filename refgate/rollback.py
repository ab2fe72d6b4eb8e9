"""
Rollback controller for refgate.

Restores a rollback point through its registered procedure and then
verifies the system against the workflow's integrity criteria. A restore
that cannot be verified is never reported as a success; it escalates the
owning phase to Failed instead.

Results are stored in the audit log, so rolling back the same point twice
(in the same process or after a restart) returns the stored result without
touching the system again.
"""

from typing import Callable, Dict, List, Optional
import logging

from refgate.audit import Ledger
from refgate.criteria import evaluate_all
from refgate.errors import GateBlocked, RollbackFailed
from refgate.gates import PhaseGateEngine
from refgate.models.attempt import AttemptOutcome, RollbackPoint, RollbackResult
from refgate.models.audit_entry import EventType
from refgate.models.phase import EvalResult, PhaseStatus, all_satisfied
from refgate.procedures import ProcedureContext, RollbackProcedure, build_procedure
from refgate.reports import ReportStore
from refgate.workflow import WorkflowDefinition

logger = logging.getLogger(__name__)

Refresher = Callable[[], List[EvalResult]]


def no_refresh() -> List[EvalResult]:
    return []


def store_failure(error: Exception) -> EvalResult:
    """Unmet result for a report refresh or read that raised."""
    return EvalResult("ReportStore", False,
                      f"ReportStore: unreadable ({type(error).__name__}: {error})")


class RollbackController:
    """Restores rollback points and verifies the result."""

    def __init__(
        self,
        ledger: Ledger,
        engine: PhaseGateEngine,
        store: ReportStore,
        workflow: WorkflowDefinition,
        context: ProcedureContext,
        refresh: Optional[Refresher] = None,
    ):
        self.ledger = ledger
        self.engine = engine
        self.store = store
        self.workflow = workflow
        self.context = context
        self.refresh = refresh or no_refresh
        self._live: Dict[str, RollbackProcedure] = {}

    @property
    def state(self):
        return self.ledger.state

    def register(self, point_id: str, procedure: RollbackProcedure) -> None:
        """Keep the live procedure that captured a point."""
        self._live[point_id] = procedure

    def procedure_for(self, point: RollbackPoint) -> RollbackProcedure:
        live = self._live.get(point.point_id)
        if live is not None:
            return live
        return build_procedure(point.procedure, point.params, self.context)

    def verify(self) -> List[EvalResult]:
        """Refresh reports and evaluate the integrity criteria.

        A store that cannot be read counts as unhealthy.
        """
        try:
            failed_collectors = self.refresh()
            snapshot = self.store.snapshot()
        except Exception as e:
            logger.error("Cannot read reports to verify health: %s", e)
            return [store_failure(e)]
        return evaluate_all(self.workflow.integrity, snapshot) + failed_collectors

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(self, point_id: str, reason: str = "") -> RollbackResult:
        """Restore a point and verify health. Idempotent per point."""
        stored = self.state.rollback_results.get(point_id)
        if stored is not None:
            logger.info("Rollback of %s already ran; returning stored result", point_id)
            if not stored.ok:
                self._escalate(point_id, stored)
            return stored

        point = self.state.points.get(point_id)
        if point is None:
            raise GateBlocked(f"Unknown rollback point {point_id}",
                              [f"no rollback point {point_id!r} in the audit log"])

        self.ledger.record(EventType.ROLLBACK_STARTED, {
            "point_id": point_id,
            "attempt_id": point.attempt_id,
            "procedure": point.procedure,
            "reference": point.reference,
            "reason": reason,
        })
        logger.warning("Rolling back %s (%s): %s", point.attempt_id, point.procedure, reason)

        try:
            self.procedure_for(point).restore(point.reference)
        except Exception as e:
            result = RollbackResult(point_id, success=False, verified_healthy=False,
                                    detail=f"restore failed: {e}")
        else:
            health = self.verify()
            healthy = all_satisfied(health)
            detail = "restored and verified" if healthy else (
                "restored but unhealthy: " + "; ".join(r.detail for r in health if not r.satisfied)
            )
            result = RollbackResult(point_id, success=True, verified_healthy=healthy,
                                    detail=detail, health=health)

        self.ledger.record(EventType.ROLLBACK_COMPLETED, {
            "point_id": point_id,
            "attempt_id": point.attempt_id,
            "result": result.to_dict(),
        })
        if not result.ok:
            logger.error("Rollback of %s failed: %s", point_id, result.detail)
            self._escalate(point_id, result)
        return self.state.rollback_results[point_id]

    def _escalate(self, point_id: str, result: RollbackResult) -> None:
        """Fail the phase that owns the point, if it is still Active."""
        point = self.state.points.get(point_id)
        attempt = self.state.attempts.get(point.attempt_id) if point else None
        if attempt is None:
            return
        inst = self.state.instances.get(attempt.phase_instance)
        if inst is not None and inst.status == PhaseStatus.ACTIVE:
            self.engine.fail(inst, f"rollback of {point_id} failed: {result.detail}")

    # ------------------------------------------------------------------
    # Operator revert
    # ------------------------------------------------------------------

    def revert(self, attempt_id: str, reason: str = "operator request") -> RollbackResult:
        """Undo a Succeeded attempt of the active phase, newest first.

        Raises:
            GateBlocked: If the attempt is unknown, not Succeeded, not in the
                active phase, or not the most recently applied attempt
            RollbackFailed: If the restore could not be verified
        """
        attempt = self.state.attempts.get(attempt_id)
        if attempt is None:
            raise GateBlocked(f"Unknown attempt {attempt_id}",
                              [f"no attempt {attempt_id!r} in the audit log"])

        if attempt_id in self.state.reverted:
            return self.state.rollback_results[attempt.point_id]

        if attempt.outcome != AttemptOutcome.SUCCEEDED:
            state = attempt.outcome.value if attempt.outcome else "unresolved"
            raise GateBlocked(f"Attempt {attempt_id} cannot be reverted",
                              [f"attempt {attempt_id} is {state}; only Succeeded attempts can be reverted"])

        inst = self.state.instances.get(attempt.phase_instance)
        if inst is None or inst.status != PhaseStatus.ACTIVE:
            status = inst.status.value if inst else "missing"
            raise GateBlocked(f"Phase of {attempt_id} is not Active",
                              [f"{attempt.phase_instance} is {status}, not Active"])

        applied = self.state.applied_attempts(inst.instance_id)
        latest = applied[-1] if applied else None
        if latest is None or latest.attempt_id != attempt_id:
            raise GateBlocked(f"Attempt {attempt_id} is not the latest", [
                f"attempt {latest.attempt_id} was applied after {attempt_id}; revert it first"
                if latest else f"attempt {attempt_id} has nothing left to revert",
            ])

        result = self.rollback(attempt.point_id, reason)
        if not result.ok:
            raise RollbackFailed(
                f"Revert of {attempt_id} failed: {result.detail}",
                point_id=attempt.point_id,
                phase=inst.name,
            )
        self.ledger.record(EventType.ATTEMPT_REVERTED, {
            "attempt_id": attempt_id,
            "point_id": attempt.point_id,
            "reason": reason,
        })
        return result
