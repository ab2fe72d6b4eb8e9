"""
refgate models - data structures for the gated workflow.

This module provides dataclasses and enums for:
- Phase definitions, instances and gate evaluation results
- Transformation attempts and rollback points
- Audit entries and the state reduced from them
"""

from refgate.models.phase import (
    EvalResult,
    PhaseDefinition,
    PhaseInstance,
    PhaseStatus,
    all_satisfied,
    unmet_details,
)
from refgate.models.attempt import (
    AttemptOutcome,
    OperationDescriptor,
    PointStatus,
    RollbackPoint,
    RollbackResult,
    TransformationAttempt,
)
from refgate.models.audit_entry import AuditEntry, EventType, canonical_json
from refgate.models.state import WorkflowState

__all__ = [
    # Phase
    "EvalResult", "PhaseDefinition", "PhaseInstance", "PhaseStatus",
    "all_satisfied", "unmet_details",
    # Attempt
    "AttemptOutcome", "OperationDescriptor", "PointStatus", "RollbackPoint",
    "RollbackResult", "TransformationAttempt",
    # Audit
    "AuditEntry", "EventType", "canonical_json",
    # State
    "WorkflowState",
]
