"""
refgate - Gated transformation workflow for legacy-code modernization.

Decides whether refactoring work may start, whether it succeeded, and
what happens when it did not:
- Ordered phases guarded by entry and exit criteria over analysis reports
- Supervised transformation attempts with rollback points
- Verified rollback with escalation when health cannot be restored
- Hash-chained append-only audit log, replayed to resume after a crash

External tools (coverage, scanners, risk assessment) only publish reports;
refactorings are opaque operations.
"""

__version__ = "0.1.0"

from refgate.errors import (
    GateBlocked,
    OperationFailed,
    RefgateError,
    RollbackFailed,
    AuditWriteFailed,
)
from refgate.orchestrator import CommandResult, Orchestrator
from refgate.procedures import (
    CallableOperation,
    GitTagProcedure,
    ShellOperation,
    SnapshotProcedure,
)
from refgate.reports import DirectoryReportStore, MemoryReportStore

__all__ = [
    "__version__",
    # Errors
    "RefgateError", "GateBlocked", "OperationFailed", "RollbackFailed", "AuditWriteFailed",
    # Orchestrator
    "Orchestrator", "CommandResult",
    # Operations and procedures
    "CallableOperation", "ShellOperation", "GitTagProcedure", "SnapshotProcedure",
    # Reports
    "DirectoryReportStore", "MemoryReportStore",
]
