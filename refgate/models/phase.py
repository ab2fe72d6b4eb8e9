"""
Phase models.

A PhaseDefinition is the static description of a stage (its ordinal and
gate criteria). A PhaseInstance is one concrete run of that definition.
A failed instance is never revived; retrying creates the next generation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class PhaseStatus(Enum):
    """Lifecycle status of a phase instance."""
    LOCKED = "Locked"
    READY = "Ready"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PhaseStatus.COMPLETED, PhaseStatus.FAILED)


# from-status -> allowed to-statuses
ALLOWED_TRANSITIONS = {
    PhaseStatus.LOCKED: {PhaseStatus.READY},
    PhaseStatus.READY: {PhaseStatus.LOCKED, PhaseStatus.ACTIVE},
    PhaseStatus.ACTIVE: {PhaseStatus.COMPLETED, PhaseStatus.FAILED},
    PhaseStatus.COMPLETED: set(),
    PhaseStatus.FAILED: set(),
}


@dataclass
class EvalResult:
    """Outcome of evaluating one criterion against a report snapshot."""
    criterion: str
    satisfied: bool
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "criterion": self.criterion,
            "satisfied": self.satisfied,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvalResult":
        return cls(
            criterion=data.get("criterion", ""),
            satisfied=bool(data.get("satisfied", False)),
            detail=data.get("detail", ""),
        )


def all_satisfied(results: List[EvalResult]) -> bool:
    """True when every result is satisfied (vacuously true for none)."""
    return all(r.satisfied for r in results)


def unmet_details(results: List[EvalResult]) -> List[str]:
    """Detail lines for every unsatisfied result."""
    return [r.detail or r.criterion for r in results if not r.satisfied]


@dataclass
class PhaseDefinition:
    """Static definition of a workflow phase."""
    name: str
    ordinal: int
    entry_criteria: List[str] = field(default_factory=list)
    exit_criteria: List[str] = field(default_factory=list)
    post_check: List[str] = field(default_factory=list)
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ordinal": self.ordinal,
            "entry_criteria": list(self.entry_criteria),
            "exit_criteria": list(self.exit_criteria),
            "post_check": list(self.post_check),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseDefinition":
        return cls(
            name=data.get("name", ""),
            ordinal=int(data.get("ordinal", 0)),
            entry_criteria=list(data.get("entry_criteria") or data.get("entry") or []),
            exit_criteria=list(data.get("exit_criteria") or data.get("exit") or []),
            post_check=list(data.get("post_check") or []),
            description=data.get("description", ""),
        )


@dataclass
class PhaseInstance:
    """One run of a phase definition."""
    name: str
    ordinal: int
    generation: int = 1
    status: PhaseStatus = PhaseStatus.LOCKED
    entered_at: Optional[str] = None
    finished_at: Optional[str] = None
    failure_reason: str = ""
    last_gate_check: List[EvalResult] = field(default_factory=list)
    last_exit_check: List[EvalResult] = field(default_factory=list)

    @property
    def instance_id(self) -> str:
        return f"{self.name}#{self.generation}"

    def transition(self, target: PhaseStatus, timestamp: str, reason: str = "") -> None:
        """Move to `target`, enforcing the allowed transition table."""
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal transition for {self.instance_id}: "
                f"{self.status.value} -> {target.value}"
            )
        self.status = target
        if target == PhaseStatus.ACTIVE:
            self.entered_at = timestamp
        elif target.is_terminal:
            self.finished_at = timestamp
            if target == PhaseStatus.FAILED:
                self.failure_reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "name": self.name,
            "ordinal": self.ordinal,
            "generation": self.generation,
            "status": self.status.value,
            "entered_at": self.entered_at,
            "finished_at": self.finished_at,
            "failure_reason": self.failure_reason,
            "last_gate_check": [r.to_dict() for r in self.last_gate_check],
            "last_exit_check": [r.to_dict() for r in self.last_exit_check],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseInstance":
        try:
            status = PhaseStatus(data.get("status", "Locked"))
        except ValueError:
            status = PhaseStatus.LOCKED
        return cls(
            name=data.get("name", ""),
            ordinal=int(data.get("ordinal", 0)),
            generation=int(data.get("generation", 1)),
            status=status,
            entered_at=data.get("entered_at"),
            finished_at=data.get("finished_at"),
            failure_reason=data.get("failure_reason", ""),
            last_gate_check=[EvalResult.from_dict(r) for r in data.get("last_gate_check", [])],
            last_exit_check=[EvalResult.from_dict(r) for r in data.get("last_exit_check", [])],
        )
