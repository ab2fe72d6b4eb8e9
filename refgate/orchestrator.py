"""
Orchestrator for refgate.

The single control loop. Owns the report store, the audit log, the gate
engine, the supervisor and the rollback controller, and exposes the
command surface. Commands return a CommandResult:

    exit 0  success
    exit 1  blocked by a gate
    exit 2  the operation was rolled back
    exit 3  fatal (RollbackFailed, AuditWriteFailed): propagates and halts

Usage:
    with Orchestrator(project_path) as orch:
        orch.assess()
        orch.enter_phase("SafetyNet", wait=60)
        orch.run_operation("Transformation", operation)
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import logging
import queue
import threading
import time

from refgate.audit import AuditLog, Ledger
from refgate.config import ProjectConfig, get_state_dir, load_config
from refgate.criteria import evaluate_all
from refgate.errors import (
    EXIT_BLOCKED,
    EXIT_OK,
    EXIT_ROLLED_BACK,
    AuditWriteFailed,
    GateBlocked,
    RefgateError,
    RollbackFailed,
)
from refgate.gates import PhaseGateEngine
from refgate.health import HealthMonitor, RollbackRequest
from refgate.models.attempt import AttemptOutcome
from refgate.models.audit_entry import EventType
from refgate.models.phase import EvalResult, PhaseStatus
from refgate.models.state import WorkflowState
from refgate.procedures import Operation, ProcedureContext
from refgate.reports import DirectoryReportStore, ReportSnapshot, ReportStore, run_collectors
from refgate.rollback import RollbackController
from refgate.status import format_status, load_status, save_status, status_data
from refgate.supervisor import TransformationSupervisor
from refgate.workflow import WorkflowDefinition, load_workflow

logger = logging.getLogger(__name__)

# Results recorded by the engine itself rather than by a registered criterion
PSEUDO_CRITERIA = ("PhaseOrder", "AttemptsResolved")


@dataclass
class CommandResult:
    """Structured outcome of one command."""
    command: str
    exit_code: int = EXIT_OK
    ok: bool = True
    detail: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "ok": self.ok,
            "detail": self.detail,
            "data": self.data,
        }


def audit_path(state_dir: Path) -> Path:
    return state_dir / "audit.jsonl"


def read_state(project_path: str) -> WorkflowState:
    """Current state without taking the writer lock.

    Served from the status cache when it matches the audit log tail,
    otherwise rebuilt by replaying the log.
    """
    state_dir = get_state_dir(project_path)
    log = AuditLog(str(audit_path(state_dir)))
    cached = load_status(str(state_dir), log.last_sequence())
    if cached is not None:
        return cached
    state = WorkflowState()
    for entry in log.replay():
        state.apply(entry)
    return state


class Orchestrator:
    """Control loop and command surface over one project."""

    def __init__(
        self,
        project_path: str,
        store: Optional[ReportStore] = None,
        config: Optional[ProjectConfig] = None,
        workflow: Optional[WorkflowDefinition] = None,
    ):
        self.project_path = str(project_path)
        self.state_dir = get_state_dir(self.project_path)
        self.config = config or load_config(self.project_path)
        self.workflow = workflow or load_workflow(self.project_path)
        self.store = store or DirectoryReportStore(str(self.state_dir / "reports"))

        self.log = AuditLog(str(audit_path(self.state_dir)))
        self.ledger = Ledger(self.log)
        self.engine = PhaseGateEngine(self.workflow, self.ledger)
        self.context = ProcedureContext(self.project_path, str(self.state_dir))
        self.controller = RollbackController(
            self.ledger, self.engine, self.store, self.workflow, self.context,
            refresh=self.refresh_reports,
        )
        self.supervisor = TransformationSupervisor(
            self.ledger, self.engine, self.controller, self.store, self.workflow,
            refresh=self.refresh_reports,
        )
        self.requests: "queue.Queue[RollbackRequest]" = queue.Queue()
        self.halted = ""
        self._opened = False

    @property
    def state(self) -> WorkflowState:
        return self.ledger.state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "Orchestrator":
        """Take the writer lock, replay the log and recover open attempts.

        No command is accepted before this has completed.
        """
        if self._opened:
            return self
        self.log.open()
        try:
            count = self.ledger.load()
            logger.debug("Replayed %d audit entries", count)
            self.engine.ensure_instances()
            recovered = self.supervisor.recover()
            if recovered:
                logger.warning("Recovered %d interrupted attempt(s)", len(recovered))
        except BaseException:
            self.log.close()
            raise
        self._opened = True
        save_status(str(self.state_dir), self.state)
        return self

    def close(self) -> None:
        if self._opened:
            save_status(str(self.state_dir), self.state)
        self.log.close()
        self._opened = False

    def __enter__(self) -> "Orchestrator":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    def _execute(self, command: str, fn: Callable[[], CommandResult]) -> CommandResult:
        """Run one command, mapping gate blocks to results and halting on fatal errors."""
        if not self._opened:
            raise RefgateError("Orchestrator is not open")
        if self.halted:
            raise RefgateError(f"Orchestrator halted: {self.halted}")
        try:
            result = fn()
        except GateBlocked as e:
            logger.info("%s blocked: %s", command, e)
            result = CommandResult(command, EXIT_BLOCKED, False, str(e), {"details": e.details})
        except (RollbackFailed, AuditWriteFailed) as e:
            self.halted = str(e)
            logger.error("%s: fatal: %s", command, e)
            raise
        save_status(str(self.state_dir), self.state)
        return result

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def refresh_reports(self) -> List[EvalResult]:
        """Run the configured collectors. Failed collectors come back as unmet results."""
        failures = []
        for result in run_collectors(self.store, self.config.collectors, self.project_path):
            if not result.ok:
                failures.append(EvalResult(
                    f"Collector({result.kind})", False,
                    f"Collector({result.kind}): {result.detail}",
                ))
        return failures

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def assess(self) -> CommandResult:
        """Refresh reports and re-derive Locked/Ready for every waiting phase."""
        def run() -> CommandResult:
            failures = self.refresh_reports()
            checked = self.engine.poll(self.store.snapshot())
            ready = [inst.name for inst in self.state.current_instances()
                     if inst.status == PhaseStatus.READY]
            detail = f"Ready: {', '.join(ready)}" if ready else "No phase is Ready"
            return CommandResult("assess", detail=detail, data={
                "phases": {name: [r.to_dict() for r in results] for name, results in checked.items()},
                "collectors": [r.to_dict() for r in failures],
                "status": status_data(self.state),
            })
        return self._execute("assess", run)

    def enter_phase(
        self,
        name: str,
        wait: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult:
        """Activate a phase, optionally polling until its gate opens.

        `wait` is the polling budget in seconds (config gate_timeout when
        None, 0 to check once). A set `cancel` event ends the wait early.
        """
        budget = self.config.gate_timeout if wait is None else wait

        def run() -> CommandResult:
            deadline = time.monotonic() + budget
            while True:
                try:
                    inst = self.engine.start(name, self.store.snapshot())
                except GateBlocked:
                    inst = self.state.instance(name)
                    waitable = inst is not None and inst.status in (PhaseStatus.LOCKED, PhaseStatus.READY)
                    remaining = deadline - time.monotonic()
                    if not waitable or remaining <= 0 or (cancel is not None and cancel.is_set()):
                        raise
                    pause = min(self.config.poll_interval, remaining)
                    logger.debug("Gate for %s closed; polling again in %.1fs", name, pause)
                    if cancel is not None:
                        cancel.wait(pause)
                    else:
                        time.sleep(pause)
                    continue
                return CommandResult("enter-phase", detail=f"{inst.instance_id} is Active",
                                     data={"instance": inst.to_dict()})
        return self._execute("enter-phase", run)

    def run_operation(self, phase_name: str, operation: Operation) -> CommandResult:
        """Run one supervised transformation attempt."""
        def run() -> CommandResult:
            attempt = self.supervisor.run(phase_name, operation)
            data = {"attempt": attempt.to_dict()}
            if attempt.outcome == AttemptOutcome.SUCCEEDED:
                return CommandResult("run-operation", EXIT_OK, True,
                                     f"{attempt.attempt_id} succeeded", data)
            if attempt.outcome == AttemptOutcome.ROLLED_BACK:
                return CommandResult("run-operation", EXIT_ROLLED_BACK, False,
                                     f"{attempt.attempt_id} rolled back: {attempt.reason}", data)
            return CommandResult("run-operation", EXIT_BLOCKED, False,
                                 f"{attempt.attempt_id} aborted: {attempt.reason}", data)
        return self._execute("run-operation", run)

    def status(self) -> CommandResult:
        def run() -> CommandResult:
            return CommandResult("status", detail=format_status(self.state),
                                 data=status_data(self.state))
        return self._execute("status", run)

    def rollback(self, attempt_id: str, reason: str = "operator request") -> CommandResult:
        """Revert the most recent applied attempt of the active phase."""
        def run() -> CommandResult:
            result = self.controller.revert(attempt_id, reason)
            return CommandResult("rollback", detail=f"{attempt_id} reverted: {result.detail}",
                                 data={"result": result.to_dict()})
        return self._execute("rollback", run)

    def complete_phase(self, name: str) -> CommandResult:
        def run() -> CommandResult:
            inst = self.engine.complete(name, self.store.snapshot())
            return CommandResult("complete-phase", detail=f"{inst.instance_id} is Completed",
                                 data={"instance": inst.to_dict()})
        return self._execute("complete-phase", run)

    def abort_phase(self, name: str, reason: str) -> CommandResult:
        def run() -> CommandResult:
            inst = self.engine.abort(name, reason)
            return CommandResult("abort-phase", detail=f"{inst.instance_id} is Failed",
                                 data={"instance": inst.to_dict()})
        return self._execute("abort-phase", run)

    def retry_phase(self, name: str) -> CommandResult:
        def run() -> CommandResult:
            inst = self.engine.retry(name)
            return CommandResult("retry-phase", detail=f"{inst.instance_id} created",
                                 data={"instance": inst.to_dict()})
        return self._execute("retry-phase", run)

    def explain(self, sequence: int) -> CommandResult:
        """Re-evaluate a recorded gate check against the report objects it saw."""
        def run() -> CommandResult:
            return explain_entry(self.log, self.store, sequence)
        return self._execute("explain", run)

    # ------------------------------------------------------------------
    # Health requests
    # ------------------------------------------------------------------

    def request_rollback(self, request: RollbackRequest) -> None:
        """Thread-safe: called by the health monitor."""
        self.requests.put(request)

    def process_requests(self) -> List[CommandResult]:
        """Drain queued rollback requests inside the control loop."""
        results = []
        while True:
            try:
                request = self.requests.get_nowait()
            except queue.Empty:
                break
            results.append(self._execute("rollback-request", lambda: self._handle_request(request)))
        return results

    def _handle_request(self, request: RollbackRequest) -> CommandResult:
        self.ledger.record(EventType.ROLLBACK_REQUESTED, request.to_dict())
        active = self.state.active_instance()
        applied = self.state.applied_attempts(active.instance_id) if active else []
        if not applied:
            self.ledger.record(EventType.ROLLBACK_REQUEST_IGNORED, {
                "reason": request.reason,
                "detail": "no applied attempt to revert",
            })
            return CommandResult("rollback-request", detail="nothing to revert")
        latest = applied[-1]
        result = self.controller.revert(latest.attempt_id, request.reason)
        return CommandResult("rollback-request", detail=f"{latest.attempt_id} reverted",
                             data={"result": result.to_dict()})

    def monitor(
        self,
        stop: threading.Event,
        on_result: Optional[Callable[[CommandResult], None]] = None,
    ) -> None:
        """Run the health monitor and serve its requests until `stop` is set."""
        health = HealthMonitor(self.store, self.workflow.integrity, self.request_rollback,
                               interval=self.config.health_interval)
        health.start()
        try:
            while not stop.is_set():
                for result in self.process_requests():
                    if on_result is not None:
                        on_result(result)
                stop.wait(self.config.poll_interval)
        finally:
            health.stop(timeout=self.config.poll_interval)


def explain_entry(log: AuditLog, store: ReportStore, sequence: int) -> CommandResult:
    """Replay one gate.checked entry against its content-addressed reports."""
    entry = log.get(sequence)
    if entry is None:
        raise GateBlocked(f"No audit entry {sequence}", [f"audit entry {sequence} does not exist"])
    if entry.event_type != EventType.GATE_CHECKED.value:
        raise GateBlocked(f"Entry {sequence} is not a gate check",
                          [f"audit entry {sequence} is {entry.event_type}, not gate.checked"])

    payload = entry.payload
    reports = {}
    missing = []
    for kind, digest in sorted(payload.get("inputs", {}).items()):
        document = store.load_object(digest)
        if document is None:
            missing.append(kind)
        else:
            reports[kind] = document

    recorded = [EvalResult.from_dict(r) for r in payload.get("results", [])]
    criteria = [r.criterion for r in recorded if r.criterion not in PSEUDO_CRITERIA]
    replayed = evaluate_all(criteria, ReportSnapshot(reports))
    comparable = [r for r in recorded if r.criterion not in PSEUDO_CRITERIA]
    matches = not missing and [r.to_dict() for r in comparable] == [r.to_dict() for r in replayed]

    lines = [f"#{entry.sequence} {payload.get('gate')} check of {payload.get('instance_id')}: "
             + ("satisfied" if payload.get("satisfied") else "blocked")]
    for r in recorded:
        lines.append(f"  {'ok ' if r.satisfied else 'NO '} {r.detail}")
    if missing:
        lines.append(f"  report objects missing: {', '.join(missing)}")
    lines.append("  replay matches" if matches else "  replay differs")
    return CommandResult("explain", detail="\n".join(lines), data={
        "sequence": entry.sequence,
        "instance_id": payload.get("instance_id"),
        "gate": payload.get("gate"),
        "recorded": [r.to_dict() for r in recorded],
        "replayed": [r.to_dict() for r in replayed],
        "missing_objects": missing,
        "matches": matches,
    })
