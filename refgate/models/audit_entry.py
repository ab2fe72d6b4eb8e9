"""
Audit entry model.

Entries are chained: each digest covers the entry body and the digest of
the entry before it, so a deleted or reordered line breaks the chain.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict
import hashlib
import json


GENESIS_DIGEST = "0" * 64
ACTOR = "orchestrator"


class EventType(Enum):
    """Every kind of event the orchestrator records."""
    PHASE_INSTANTIATED = "phase.instantiated"
    GATE_CHECKED = "gate.checked"
    PHASE_TRANSITIONED = "phase.transitioned"
    ATTEMPT_REJECTED = "attempt.rejected"
    ATTEMPT_CREATED = "attempt.created"
    ATTEMPT_PRECHECKED = "attempt.prechecked"
    POINT_CAPTURED = "rollback_point.captured"
    ATTEMPT_EXECUTED = "attempt.executed"
    ATTEMPT_POSTCHECKED = "attempt.postchecked"
    ATTEMPT_RESOLVED = "attempt.resolved"
    ATTEMPT_REVERTED = "attempt.reverted"
    ROLLBACK_STARTED = "rollback.started"
    ROLLBACK_COMPLETED = "rollback.completed"
    ROLLBACK_REQUESTED = "rollback.requested"
    ROLLBACK_REQUEST_IGNORED = "rollback.request_ignored"


def canonical_json(data: Any) -> str:
    """Stable JSON encoding used for digests and fingerprints."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class AuditEntry:
    """One record in the append-only audit log."""
    sequence: int
    timestamp: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    actor: str = ACTOR
    digest: str = ""

    def body(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "event_type": self.event_type,
            "payload": self.payload,
        }

    def compute_digest(self, previous: str) -> str:
        return hashlib.sha256((previous + canonical_json(self.body())).encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = self.body()
        data["digest"] = self.digest
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            sequence=int(data["sequence"]),
            timestamp=data.get("timestamp", ""),
            event_type=data.get("event_type", ""),
            payload=data.get("payload") or {},
            actor=data.get("actor", ACTOR),
            digest=data.get("digest", ""),
        )

    def format_line(self) -> str:
        """One-line human readable rendering."""
        summary = ""
        p = self.payload
        for key in ("instance_id", "attempt_id", "point_id"):
            if key in p:
                summary = p[key]
                break
        extra = ""
        if "to" in p:
            extra = f" {p.get('from', '?')} -> {p['to']}"
        elif "outcome" in p:
            extra = f" {p['outcome']}"
        elif "satisfied" in p:
            extra = " satisfied" if p["satisfied"] else " blocked"
        return f"{self.sequence:>5}  {self.timestamp}  {self.event_type:<26} {summary}{extra}"
