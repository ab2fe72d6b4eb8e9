"""
Error taxonomy for refgate.

Recoverable:
- GateBlocked: a precondition is unmet. Fix it and retry.
- OperationFailed: the wrapped transformation errored. Triggers rollback.

Fatal (propagate to the top level and stop the control loop):
- RollbackFailed: restoration could not restore or could not verify health.
- AuditWriteFailed: the audit log could not be written durably.
"""

from typing import List, Optional


# Process exit codes for the command surface
EXIT_OK = 0
EXIT_BLOCKED = 1
EXIT_ROLLED_BACK = 2
EXIT_FATAL = 3


class RefgateError(Exception):
    """Base class for all refgate errors."""
    exit_code = EXIT_FATAL


class ConfigError(RefgateError):
    """Invalid configuration or workflow definition."""

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        self.problems = problems or []
        if self.problems:
            message = message + ": " + "; ".join(self.problems)
        super().__init__(message)


class GateBlocked(RefgateError):
    """A gate precondition is not satisfied.

    `details` carries one line per unmet criterion or ordering rule.
    """
    exit_code = EXIT_BLOCKED

    def __init__(self, message: str, details: Optional[List[str]] = None):
        self.details = details or []
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return "; ".join(self.details)
        return super().__str__()


class PhaseNotActive(GateBlocked):
    """Operation requested for a phase that is not Active."""


class OperationFailed(RefgateError):
    """The transformation operation itself errored."""
    exit_code = EXIT_ROLLED_BACK


class OperationCancelled(OperationFailed):
    """The in-flight operation was cancelled. Handled like a failure."""


class RollbackFailed(RefgateError):
    """Restoration failed or the restored system could not be verified."""
    exit_code = EXIT_FATAL

    def __init__(self, message: str, point_id: str = "", phase: str = ""):
        self.point_id = point_id
        self.phase = phase
        super().__init__(message)


class AuditWriteFailed(RefgateError):
    """The audit log could not be appended to. Fatal."""
    exit_code = EXIT_FATAL


class AuditIntegrityError(RefgateError):
    """The audit log has a gap, a reordering, or a broken digest chain."""
    exit_code = EXIT_FATAL


class ReportUnreadable(RefgateError):
    """A stored report document could not be read or parsed."""

    def __init__(self, kind: str, reason: str):
        self.kind = kind
        self.reason = reason
        super().__init__(f"Report {kind} is unreadable: {reason}")


class AttemptImmutable(RefgateError):
    """A resolved TransformationAttempt was about to be mutated."""


class OrchestratorBusy(RefgateError):
    """Another process holds the audit writer lock."""
