"""
Phase gate engine for refgate.

Holds the ordered phases and decides when each may start and finish:

    Locked -> Ready -> Active -> Completed
                       Active -> Failed

- Locked/Ready is re-derived on every poll from the entry criteria and
  the status of the preceding phases.
- Entering a phase re-evaluates its gate from scratch; an approval is
  never reused.
- Only one phase may be Active, and phases complete in ordinal order.
- Completed and Failed are terminal. A failed phase is retried by
  instantiating the next generation of the same definition.

Every check and transition goes through the ledger, so the engine's view
after a restart is exactly what the audit log says.
"""

from typing import Dict, List, Optional
import logging

from refgate.audit import Ledger
from refgate.criteria import evaluate_all, report_kinds
from refgate.errors import GateBlocked, PhaseNotActive
from refgate.models.audit_entry import EventType
from refgate.models.phase import (
    EvalResult,
    PhaseDefinition,
    PhaseInstance,
    PhaseStatus,
    all_satisfied,
    unmet_details,
)
from refgate.reports import ReportSnapshot
from refgate.workflow import WorkflowDefinition

logger = logging.getLogger(__name__)


class PhaseGateEngine:
    """State machine over the workflow's phase instances."""

    def __init__(self, workflow: WorkflowDefinition, ledger: Ledger):
        self.workflow = workflow
        self.ledger = ledger

    @property
    def state(self):
        return self.ledger.state

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def definition(self, name: str) -> PhaseDefinition:
        definition = self.workflow.phase(name)
        if definition is None:
            raise GateBlocked(
                f"Unknown phase: {name}",
                [f"unknown phase {name!r}; phases are {', '.join(self.workflow.names())}"],
            )
        return definition

    def instance(self, name: str) -> PhaseInstance:
        self.definition(name)
        inst = self.state.instance(name)
        if inst is None:
            raise GateBlocked(f"Phase {name} has no instance", [f"phase {name!r} is not instantiated"])
        return inst

    def ensure_instances(self) -> List[PhaseInstance]:
        """Instantiate generation 1 of every phase the log does not know yet."""
        created = []
        for definition in self.workflow.ordered():
            if self.state.instance(definition.name) is None:
                self.ledger.record(EventType.PHASE_INSTANTIATED, {
                    "instance_id": f"{definition.name}#1",
                    "name": definition.name,
                    "ordinal": definition.ordinal,
                    "generation": 1,
                })
                created.append(self.state.instance(definition.name))
        return created

    def require_active(self, name: str) -> PhaseInstance:
        inst = self.instance(name)
        if inst.status != PhaseStatus.ACTIVE:
            raise PhaseNotActive(
                f"Phase {name} is not Active",
                [f"PhaseNotActive: {inst.instance_id} is {inst.status.value}"],
            )
        return inst

    # ------------------------------------------------------------------
    # Gate evaluation
    # ------------------------------------------------------------------

    def ordering_results(self, name: str) -> List[EvalResult]:
        """One unsatisfied result per preceding phase that is not Completed."""
        results = []
        for pred in self.workflow.predecessors(name):
            inst = self.state.instance(pred.name)
            status = inst.status.value if inst else "missing"
            if inst is None or inst.status != PhaseStatus.COMPLETED:
                results.append(EvalResult(
                    "PhaseOrder", False,
                    f"PhaseOrder: {pred.name} is {status}, must be Completed",
                ))
        return results

    def _record_check(
        self,
        inst: PhaseInstance,
        gate: str,
        criteria: List[str],
        results: List[EvalResult],
        snapshot: ReportSnapshot,
    ) -> bool:
        satisfied = all_satisfied(results)
        self.ledger.record(EventType.GATE_CHECKED, {
            "instance_id": inst.instance_id,
            "gate": gate,
            "results": [r.to_dict() for r in results],
            "satisfied": satisfied,
            "snapshot": snapshot.fingerprint,
            "inputs": snapshot.fingerprints(report_kinds(criteria)),
        })
        return satisfied

    def _transition(self, inst: PhaseInstance, target: PhaseStatus, reason: str) -> None:
        previous = inst.status
        self.ledger.record(EventType.PHASE_TRANSITIONED, {
            "instance_id": inst.instance_id,
            "from": previous.value,
            "to": target.value,
            "reason": reason,
        })
        logger.info("%s: %s -> %s (%s)", inst.instance_id, previous.value, target.value, reason)

    def poll(self, snapshot: ReportSnapshot) -> Dict[str, List[EvalResult]]:
        """Re-derive Locked/Ready for every waiting phase."""
        checked = {}
        for definition in self.workflow.ordered():
            inst = self.state.instance(definition.name)
            if inst is None or inst.status.is_terminal or inst.status == PhaseStatus.ACTIVE:
                continue
            results = self.ordering_results(definition.name)
            results += evaluate_all(definition.entry_criteria, snapshot)
            ready = self._record_check(inst, "poll", definition.entry_criteria, results, snapshot)
            if ready and inst.status == PhaseStatus.LOCKED:
                self._transition(inst, PhaseStatus.READY, "entry gate satisfied")
            elif not ready and inst.status == PhaseStatus.READY:
                self._transition(inst, PhaseStatus.LOCKED, "; ".join(unmet_details(results)))
            checked[definition.name] = results
        return checked

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self, name: str, snapshot: ReportSnapshot) -> PhaseInstance:
        """Activate a phase after a fresh entry-gate check.

        Re-entering the phase that is already Active is a no-op.

        Raises:
            GateBlocked: With one detail line per unmet condition
        """
        definition = self.definition(name)
        inst = self.instance(name)

        if inst.status == PhaseStatus.ACTIVE:
            logger.info("%s is already Active", inst.instance_id)
            return inst
        if inst.status == PhaseStatus.COMPLETED:
            raise GateBlocked(f"Phase {name} is Completed",
                              [f"{inst.instance_id} is already Completed"])
        if inst.status == PhaseStatus.FAILED:
            raise GateBlocked(f"Phase {name} is Failed", [
                f"{inst.instance_id} is Failed ({inst.failure_reason}); "
                "retry the phase to create a new instance",
            ])

        active = self.state.active_instance()
        if active is not None:
            raise GateBlocked(f"Phase {active.name} is Active",
                              [f"{active.instance_id} is already Active"])

        results = self.ordering_results(name)
        results += evaluate_all(definition.entry_criteria, snapshot)
        if not self._record_check(inst, "entry", definition.entry_criteria, results, snapshot):
            raise GateBlocked(f"Entry gate for {name} is closed", unmet_details(results))

        if inst.status == PhaseStatus.LOCKED:
            self._transition(inst, PhaseStatus.READY, "entry gate satisfied")
        self._transition(inst, PhaseStatus.ACTIVE, "start requested")
        return inst

    def complete(self, name: str, snapshot: ReportSnapshot) -> PhaseInstance:
        """Complete the Active phase once its exit gate holds.

        Raises:
            GateBlocked: If not Active, an exit criterion is unmet, or an
                attempt of this instance is still unresolved
        """
        definition = self.definition(name)
        inst = self.instance(name)
        if inst.status != PhaseStatus.ACTIVE:
            raise GateBlocked(f"Phase {name} is not Active",
                              [f"{inst.instance_id} is {inst.status.value}, not Active"])

        results = evaluate_all(definition.exit_criteria, snapshot)
        for attempt in self.state.unresolved_attempts(inst.instance_id):
            results.append(EvalResult(
                "AttemptsResolved", False,
                f"AttemptsResolved: attempt {attempt.attempt_id} is unresolved",
            ))
        if not self._record_check(inst, "exit", definition.exit_criteria, results, snapshot):
            raise GateBlocked(f"Exit gate for {name} is closed", unmet_details(results))

        self._transition(inst, PhaseStatus.COMPLETED, "exit gate satisfied")
        return inst

    def fail(self, inst: PhaseInstance, reason: str) -> PhaseInstance:
        """Move an Active instance to Failed."""
        if inst.status != PhaseStatus.ACTIVE:
            raise GateBlocked(f"Phase {inst.name} is not Active",
                              [f"{inst.instance_id} is {inst.status.value}, not Active"])
        self._transition(inst, PhaseStatus.FAILED, reason)
        return inst

    def abort(self, name: str, reason: str) -> PhaseInstance:
        """Operator-declared abort of the Active phase."""
        return self.fail(self.instance(name), f"aborted: {reason}")

    def retry(self, name: str) -> PhaseInstance:
        """Create the next generation of a Failed phase."""
        definition = self.definition(name)
        inst = self.instance(name)
        if inst.status != PhaseStatus.FAILED:
            raise GateBlocked(f"Phase {name} is not Failed",
                              [f"{inst.instance_id} is {inst.status.value}; only Failed phases can be retried"])
        generation = inst.generation + 1
        self.ledger.record(EventType.PHASE_INSTANTIATED, {
            "instance_id": f"{definition.name}#{generation}",
            "name": definition.name,
            "ordinal": definition.ordinal,
            "generation": generation,
            "inherits": inst.instance_id,
        })
        return self.state.instance(name)
