"""
Workflow state reduced from the audit log.

The orchestrator never mutates this state directly. It appends an
AuditEntry and applies it here, so the live state and the state rebuilt by
replaying the log from sequence 0 are the same object graph.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from refgate.models.attempt import (
    AttemptOutcome,
    OperationDescriptor,
    PointStatus,
    RollbackPoint,
    RollbackResult,
    TransformationAttempt,
)
from refgate.models.audit_entry import AuditEntry, EventType
from refgate.models.phase import EvalResult, PhaseInstance, PhaseStatus


def _results(payload: Dict[str, Any]) -> List[EvalResult]:
    return [EvalResult.from_dict(r) for r in payload.get("results", [])]


@dataclass
class WorkflowState:
    """Phase instances, attempts and rollback bookkeeping."""
    instances: Dict[str, PhaseInstance] = field(default_factory=dict)
    current: Dict[str, str] = field(default_factory=dict)  # phase name -> instance_id
    attempts: Dict[str, TransformationAttempt] = field(default_factory=dict)
    points: Dict[str, RollbackPoint] = field(default_factory=dict)
    rollback_results: Dict[str, RollbackResult] = field(default_factory=dict)
    reverted: Set[str] = field(default_factory=set)  # attempt ids
    last_sequence: int = -1

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def instance(self, name: str) -> Optional[PhaseInstance]:
        """Current instance of a phase, by phase name."""
        instance_id = self.current.get(name)
        return self.instances.get(instance_id) if instance_id else None

    def current_instances(self) -> List[PhaseInstance]:
        return sorted(
            (self.instances[i] for i in self.current.values()),
            key=lambda p: p.ordinal,
        )

    def active_instance(self) -> Optional[PhaseInstance]:
        for inst in self.instances.values():
            if inst.status == PhaseStatus.ACTIVE:
                return inst
        return None

    def attempts_for(self, instance_id: str) -> List[TransformationAttempt]:
        return [a for a in self.attempts.values() if a.phase_instance == instance_id]

    def unresolved_attempts(self, instance_id: Optional[str] = None) -> List[TransformationAttempt]:
        return [
            a for a in self.attempts.values()
            if not a.is_resolved and (instance_id is None or a.phase_instance == instance_id)
        ]

    def applied_attempts(self, instance_id: str) -> List[TransformationAttempt]:
        """Succeeded attempts not yet reverted, oldest first."""
        return [
            a for a in self.attempts_for(instance_id)
            if a.outcome == AttemptOutcome.SUCCEEDED and a.attempt_id not in self.reverted
        ]

    # ------------------------------------------------------------------
    # Reducer
    # ------------------------------------------------------------------

    def apply(self, entry: AuditEntry) -> None:
        """Fold one audit entry into the state."""
        handler = _HANDLERS.get(entry.event_type)
        if handler is not None:
            handler(self, entry)
        self.last_sequence = entry.sequence

    def _on_instantiated(self, entry: AuditEntry) -> None:
        p = entry.payload
        inst = PhaseInstance(
            name=p["name"],
            ordinal=int(p["ordinal"]),
            generation=int(p.get("generation", 1)),
        )
        self.instances[inst.instance_id] = inst
        self.current[inst.name] = inst.instance_id

    def _on_gate_checked(self, entry: AuditEntry) -> None:
        p = entry.payload
        inst = self.instances.get(p.get("instance_id", ""))
        if inst is None:
            return
        if p.get("gate") == "exit":
            inst.last_exit_check = _results(p)
        else:
            inst.last_gate_check = _results(p)

    def _on_transitioned(self, entry: AuditEntry) -> None:
        p = entry.payload
        inst = self.instances[p["instance_id"]]
        inst.transition(PhaseStatus(p["to"]), entry.timestamp, p.get("reason", ""))

    def _on_attempt_created(self, entry: AuditEntry) -> None:
        p = entry.payload
        attempt = TransformationAttempt(
            attempt_id=p["attempt_id"],
            phase_instance=p["instance_id"],
            operation=OperationDescriptor.from_dict(p.get("operation", {})),
            started_at=entry.timestamp,
        )
        self.attempts[attempt.attempt_id] = attempt

    def _on_prechecked(self, entry: AuditEntry) -> None:
        self.attempts[entry.payload["attempt_id"]].record_precheck(_results(entry.payload))

    def _on_point_captured(self, entry: AuditEntry) -> None:
        p = entry.payload
        point = RollbackPoint(
            point_id=p["point_id"],
            attempt_id=p["attempt_id"],
            procedure=p.get("procedure", ""),
            reference=p.get("reference", ""),
            params=dict(p.get("params") or {}),
            created_at=entry.timestamp,
        )
        self.points[point.point_id] = point
        self.attempts[point.attempt_id].attach_point(point.point_id)

    def _on_executed(self, entry: AuditEntry) -> None:
        p = entry.payload
        self.attempts[p["attempt_id"]].record_execution(p.get("error", ""))

    def _on_postchecked(self, entry: AuditEntry) -> None:
        self.attempts[entry.payload["attempt_id"]].record_postcheck(_results(entry.payload))

    def _on_resolved(self, entry: AuditEntry) -> None:
        p = entry.payload
        attempt = self.attempts[p["attempt_id"]]
        outcome = AttemptOutcome(p["outcome"])
        attempt.resolve(outcome, entry.timestamp, p.get("reason", ""))
        if outcome == AttemptOutcome.SUCCEEDED and attempt.point_id:
            self.points[attempt.point_id].status = PointStatus.RELEASED

    def _on_rollback_completed(self, entry: AuditEntry) -> None:
        result = RollbackResult.from_dict(entry.payload["result"])
        self.rollback_results[result.point_id] = result
        point = self.points.get(result.point_id)
        if point is not None:
            point.status = PointStatus.RESTORED if result.ok else PointStatus.FAILED

    def _on_reverted(self, entry: AuditEntry) -> None:
        self.reverted.add(entry.payload["attempt_id"])

    # ------------------------------------------------------------------
    # Serialization (status cache, comparisons)
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_sequence": self.last_sequence,
            "phases": [i.to_dict() for i in sorted(
                self.instances.values(), key=lambda i: (i.ordinal, i.generation))],
            "current": dict(sorted(self.current.items())),
            "attempts": [a.to_dict() for a in self.attempts.values()],
            "points": [p.to_dict() for p in self.points.values()],
            "rollback_results": [r.to_dict() for r in self.rollback_results.values()],
            "reverted": sorted(self.reverted),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowState":
        state = cls(last_sequence=data.get("last_sequence", -1))
        for raw in data.get("phases", []):
            inst = PhaseInstance.from_dict(raw)
            state.instances[inst.instance_id] = inst
        state.current = dict(data.get("current", {}))
        for raw in data.get("attempts", []):
            attempt = TransformationAttempt.from_dict(raw)
            state.attempts[attempt.attempt_id] = attempt
        for raw in data.get("points", []):
            point = RollbackPoint.from_dict(raw)
            state.points[point.point_id] = point
        for raw in data.get("rollback_results", []):
            result = RollbackResult.from_dict(raw)
            state.rollback_results[result.point_id] = result
        state.reverted = set(data.get("reverted", []))
        return state


_HANDLERS = {
    EventType.PHASE_INSTANTIATED.value: WorkflowState._on_instantiated,
    EventType.GATE_CHECKED.value: WorkflowState._on_gate_checked,
    EventType.PHASE_TRANSITIONED.value: WorkflowState._on_transitioned,
    EventType.ATTEMPT_CREATED.value: WorkflowState._on_attempt_created,
    EventType.ATTEMPT_PRECHECKED.value: WorkflowState._on_prechecked,
    EventType.POINT_CAPTURED.value: WorkflowState._on_point_captured,
    EventType.ATTEMPT_EXECUTED.value: WorkflowState._on_executed,
    EventType.ATTEMPT_POSTCHECKED.value: WorkflowState._on_postchecked,
    EventType.ATTEMPT_RESOLVED.value: WorkflowState._on_resolved,
    EventType.ROLLBACK_COMPLETED.value: WorkflowState._on_rollback_completed,
    EventType.ATTEMPT_REVERTED.value: WorkflowState._on_reverted,
}
