"""
Transformation attempt and rollback point models.

An attempt is created when a phase requests an operation and is frozen
once its outcome is set. A rollback point belongs to exactly one attempt
and is never deleted: it is released on success and retained on rollback.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from refgate.errors import AttemptImmutable
from refgate.models.phase import EvalResult


class AttemptOutcome(Enum):
    """Terminal outcome of a transformation attempt."""
    SUCCEEDED = "Succeeded"
    ROLLED_BACK = "RolledBack"
    ABORTED = "Aborted"


class PointStatus(Enum):
    """Status of a rollback point."""
    CAPTURED = "captured"
    RELEASED = "released"   # attempt succeeded; kept, marked obsolete
    RESTORED = "restored"   # rollback ran and was verified
    FAILED = "failed"       # rollback ran but could not be verified


@dataclass
class OperationDescriptor:
    """Serializable description of an opaque operation."""
    name: str
    kind: str = "callable"
    rollback: Dict[str, Any] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "rollback": dict(self.rollback),
            "params": dict(self.params),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationDescriptor":
        return cls(
            name=data.get("name", ""),
            kind=data.get("kind", "callable"),
            rollback=dict(data.get("rollback") or {}),
            params=dict(data.get("params") or {}),
        )


@dataclass
class TransformationAttempt:
    """One supervised execution of an operation inside an active phase."""
    attempt_id: str
    phase_instance: str
    operation: OperationDescriptor
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    precheck: List[EvalResult] = field(default_factory=list)
    postcheck: List[EvalResult] = field(default_factory=list)
    point_id: Optional[str] = None
    executed: bool = False
    error: str = ""
    outcome: Optional[AttemptOutcome] = None
    reason: str = ""

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not None

    def _check_mutable(self) -> None:
        if self.outcome is not None:
            raise AttemptImmutable(
                f"Attempt {self.attempt_id} is resolved ({self.outcome.value}); "
                "corrections require a new attempt"
            )

    def record_precheck(self, results: List[EvalResult]) -> None:
        self._check_mutable()
        self.precheck = list(results)

    def attach_point(self, point_id: str) -> None:
        self._check_mutable()
        self.point_id = point_id

    def record_execution(self, error: str = "") -> None:
        self._check_mutable()
        self.executed = True
        self.error = error

    def record_postcheck(self, results: List[EvalResult]) -> None:
        self._check_mutable()
        self.postcheck = list(results)

    def resolve(self, outcome: AttemptOutcome, timestamp: str, reason: str = "") -> None:
        self._check_mutable()
        self.outcome = outcome
        self.finished_at = timestamp
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "phase_instance": self.phase_instance,
            "operation": self.operation.to_dict(),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "precheck": [r.to_dict() for r in self.precheck],
            "postcheck": [r.to_dict() for r in self.postcheck],
            "point_id": self.point_id,
            "executed": self.executed,
            "error": self.error,
            "outcome": self.outcome.value if self.outcome else None,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformationAttempt":
        outcome = data.get("outcome")
        return cls(
            attempt_id=data.get("attempt_id", ""),
            phase_instance=data.get("phase_instance", ""),
            operation=OperationDescriptor.from_dict(data.get("operation", {})),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            precheck=[EvalResult.from_dict(r) for r in data.get("precheck", [])],
            postcheck=[EvalResult.from_dict(r) for r in data.get("postcheck", [])],
            point_id=data.get("point_id"),
            executed=data.get("executed", False),
            error=data.get("error", ""),
            outcome=AttemptOutcome(outcome) if outcome else None,
            reason=data.get("reason", ""),
        )


@dataclass
class RollbackPoint:
    """Reference to system state captured right before an attempt ran."""
    point_id: str
    attempt_id: str
    procedure: str
    reference: str
    params: Dict[str, Any] = field(default_factory=dict)
    status: PointStatus = PointStatus.CAPTURED
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "point_id": self.point_id,
            "attempt_id": self.attempt_id,
            "procedure": self.procedure,
            "reference": self.reference,
            "params": dict(self.params),
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackPoint":
        return cls(
            point_id=data.get("point_id", ""),
            attempt_id=data.get("attempt_id", ""),
            procedure=data.get("procedure", ""),
            reference=data.get("reference", ""),
            params=dict(data.get("params") or {}),
            status=PointStatus(data.get("status", "captured")),
            created_at=data.get("created_at"),
        )


@dataclass
class RollbackResult:
    """Result of restoring a rollback point and re-verifying health."""
    point_id: str
    success: bool
    verified_healthy: bool
    detail: str = ""
    health: List[EvalResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.success and self.verified_healthy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "point_id": self.point_id,
            "success": self.success,
            "verified_healthy": self.verified_healthy,
            "detail": self.detail,
            "health": [r.to_dict() for r in self.health],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackResult":
        return cls(
            point_id=data.get("point_id", ""),
            success=bool(data.get("success", False)),
            verified_healthy=bool(data.get("verified_healthy", False)),
            detail=data.get("detail", ""),
            health=[EvalResult.from_dict(r) for r in data.get("health", [])],
        )
