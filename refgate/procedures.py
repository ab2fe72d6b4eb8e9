"""
Rollback procedures and transformation operations.

A transformation operation is an opaque unit of code change. refgate only
needs two things from it: `execute()` either returns or raises, and
`rollback_procedure()` names how to undo it. Every kind of undo (git tag,
directory snapshot, user commands) is one RollbackProcedure, so the
supervisor and the rollback controller treat them all the same way.

Procedures are registered by name. A rollback point stores the name and
params, which lets a restarted orchestrator rebuild the procedure and
restore a point captured before the crash.

Operation descriptor (YAML or JSON):

    name: extract-billing-service
    command: ./scripts/extract_billing.sh
    timeout: 600
    rollback:
      procedure: git-tag
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import logging
import os
import shutil
import subprocess
import threading
import time

import yaml

from refgate.errors import ConfigError, OperationCancelled, OperationFailed
from refgate.models.attempt import OperationDescriptor

logger = logging.getLogger(__name__)


@dataclass
class ProcedureContext:
    """Paths a procedure may need."""
    project_path: str
    state_dir: str

    @property
    def snapshots_dir(self) -> Path:
        return Path(self.state_dir) / "snapshots"


class ProcedureError(Exception):
    """A capture or restore step failed."""


class RollbackProcedure:
    """Captures a reference to system state and restores it on demand."""
    name = ""

    def capture(self, point_id: str) -> str:
        """Capture state; return the reference stored on the rollback point."""
        raise NotImplementedError

    def restore(self, reference: str) -> None:
        """Bring the system back to the captured reference."""
        raise NotImplementedError

    def params(self) -> Dict[str, Any]:
        return {}


def _run(args: Any, cwd: str, timeout: int = 120, env: Optional[Dict[str, str]] = None,
         shell: bool = False) -> subprocess.CompletedProcess:
    try:
        process = subprocess.run(
            args,
            cwd=cwd,
            shell=shell,
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, **(env or {})},
        )
    except subprocess.TimeoutExpired:
        raise ProcedureError(f"{args!r} timed out after {timeout} seconds")
    except OSError as e:
        raise ProcedureError(f"{args!r} could not run: {e}")
    if process.returncode != 0:
        err = process.stderr.strip() or process.stdout.strip()
        raise ProcedureError(f"{args!r} exited {process.returncode}: {err[:500]}")
    return process


class GitTagProcedure(RollbackProcedure):
    """Tag HEAD before the change; hard-reset to the tag to undo it."""
    name = "git-tag"

    def __init__(self, repo: str, tag_prefix: str = "refgate/", clean: bool = True):
        self.repo = repo
        self.tag_prefix = tag_prefix
        self.clean = clean

    def capture(self, point_id: str) -> str:
        status = _run(["git", "status", "--porcelain", "--untracked-files=no"], self.repo)
        if status.stdout.strip():
            raise ProcedureError("working tree has uncommitted changes; commit or stash first")
        tag = f"{self.tag_prefix}{point_id}"
        _run(["git", "tag", "-f", tag, "HEAD"], self.repo)
        return tag

    def restore(self, reference: str) -> None:
        _run(["git", "reset", "--hard", reference], self.repo)
        if self.clean:
            _run(["git", "clean", "-fd", "-e", ".refgate"], self.repo)

    def params(self) -> Dict[str, Any]:
        return {"repo": self.repo, "tag_prefix": self.tag_prefix, "clean": self.clean}


class SnapshotProcedure(RollbackProcedure):
    """Copy a directory tree aside and copy it back to undo."""
    name = "snapshot"

    DEFAULT_EXCLUDE = [".refgate", ".git", "__pycache__"]

    def __init__(self, path: str, snapshots_dir: str, exclude: Optional[List[str]] = None):
        self.path = Path(path)
        self.snapshots_dir = Path(snapshots_dir)
        self.exclude = list(exclude) if exclude is not None else list(self.DEFAULT_EXCLUDE)

    def capture(self, point_id: str) -> str:
        target = self.snapshots_dir / point_id
        if target.exists():
            shutil.rmtree(target)
        shutil.copytree(self.path, target, ignore=shutil.ignore_patterns(*self.exclude))
        return str(target)

    def restore(self, reference: str) -> None:
        source = Path(reference)
        if not source.is_dir():
            raise ProcedureError(f"snapshot {reference} is missing")
        for child in self.path.iterdir():
            if child.name in self.exclude:
                continue
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        shutil.copytree(source, self.path, dirs_exist_ok=True)

    def params(self) -> Dict[str, Any]:
        return {"path": str(self.path), "exclude": self.exclude}


class CommandProcedure(RollbackProcedure):
    """User-supplied capture and restore shell commands.

    The capture command sees REFGATE_POINT_ID and prints the reference on
    stdout (the point id is used when it prints nothing). The restore
    command sees REFGATE_REFERENCE.
    """
    name = "command"

    def __init__(self, capture: str, restore: str, cwd: str, timeout: int = 300):
        self.capture_command = capture
        self.restore_command = restore
        self.cwd = cwd
        self.timeout = timeout

    def capture(self, point_id: str) -> str:
        process = _run(self.capture_command, self.cwd, self.timeout,
                       env={"REFGATE_POINT_ID": point_id}, shell=True)
        return process.stdout.strip() or point_id

    def restore(self, reference: str) -> None:
        _run(self.restore_command, self.cwd, self.timeout,
             env={"REFGATE_REFERENCE": reference}, shell=True)

    def params(self) -> Dict[str, Any]:
        return {
            "capture": self.capture_command,
            "restore": self.restore_command,
            "timeout": self.timeout,
        }


class CallableProcedure(RollbackProcedure):
    """In-process procedure. Cannot be rebuilt after a restart."""
    name = "callable"

    def __init__(self, capture: Callable[[str], str], restore: Callable[[str], None]):
        self._capture = capture
        self._restore = restore

    def capture(self, point_id: str) -> str:
        return self._capture(point_id)

    def restore(self, reference: str) -> None:
        self._restore(reference)


# =============================================================================
# Registry
# =============================================================================

ProcedureFactory = Callable[[Dict[str, Any], ProcedureContext], RollbackProcedure]

_PROCEDURES: Dict[str, ProcedureFactory] = {}


def register_procedure(name: str, factory: ProcedureFactory) -> None:
    """Register a factory that rebuilds a procedure from its params."""
    _PROCEDURES[name] = factory


def registered_procedures() -> List[str]:
    return sorted(_PROCEDURES)


def build_procedure(name: str, params: Dict[str, Any], context: ProcedureContext) -> RollbackProcedure:
    """Rebuild a procedure by name.

    Raises:
        ConfigError: If no factory is registered under `name`
    """
    factory = _PROCEDURES.get(name)
    if factory is None:
        raise ConfigError(f"Unknown rollback procedure: {name!r}")
    return factory(params, context)


def _resolve(path: str, base: str) -> str:
    return path if os.path.isabs(path) else os.path.join(base, path)


register_procedure("git-tag", lambda params, ctx: GitTagProcedure(
    repo=_resolve(params.get("repo", "."), ctx.project_path),
    tag_prefix=params.get("tag_prefix", "refgate/"),
    clean=params.get("clean", True),
))
register_procedure("snapshot", lambda params, ctx: SnapshotProcedure(
    path=_resolve(params.get("path", "."), ctx.project_path),
    snapshots_dir=str(ctx.snapshots_dir),
    exclude=params.get("exclude"),
))
register_procedure("command", lambda params, ctx: CommandProcedure(
    capture=params.get("capture", "true"),
    restore=params["restore"],
    cwd=ctx.project_path,
    timeout=params.get("timeout", 300),
))


# =============================================================================
# Operations
# =============================================================================

class Operation:
    """Opaque transformation: execute() returns or raises."""
    name = ""
    kind = "operation"

    def execute(self) -> None:
        raise NotImplementedError

    def rollback_procedure(self) -> RollbackProcedure:
        raise NotImplementedError

    def params(self) -> Dict[str, Any]:
        return {}

    def describe(self) -> OperationDescriptor:
        procedure = self.rollback_procedure()
        return OperationDescriptor(
            name=self.name,
            kind=self.kind,
            rollback={"procedure": procedure.name, "params": procedure.params()},
            params=self.params(),
        )


class CallableOperation(Operation):
    """Operation backed by Python callables."""
    kind = "callable"

    def __init__(self, name: str, fn: Callable[[], Any], procedure: RollbackProcedure):
        self.name = name
        self._fn = fn
        self._procedure = procedure

    def execute(self) -> None:
        self._fn()

    def rollback_procedure(self) -> RollbackProcedure:
        return self._procedure


class ShellOperation(Operation):
    """Run a shell command as the transformation."""
    kind = "shell"

    def __init__(
        self,
        name: str,
        command: str,
        procedure: RollbackProcedure,
        cwd: str,
        timeout: int = 1800,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.name = name
        self.command = command
        self.cwd = cwd
        self.timeout = timeout
        self.cancel_event = cancel_event
        self._procedure = procedure

    def execute(self) -> None:
        logger.info("Executing %s: %s", self.name, self.command)
        try:
            process = subprocess.Popen(
                self.command,
                shell=True,
                cwd=self.cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise OperationFailed(f"{self.name}: cannot start: {e}")

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                stdout, stderr = process.communicate(timeout=0.2)
                break
            except subprocess.TimeoutExpired:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    process.kill()
                    process.communicate()
                    raise OperationCancelled(f"{self.name}: cancelled")
                if time.monotonic() > deadline:
                    process.kill()
                    process.communicate()
                    raise OperationFailed(f"{self.name}: timed out after {self.timeout} seconds")

        if process.returncode != 0:
            tail = (stderr.strip() or stdout.strip()).splitlines()[-5:]
            raise OperationFailed(
                f"{self.name}: exit {process.returncode}" + (": " + " | ".join(tail) if tail else "")
            )

    def rollback_procedure(self) -> RollbackProcedure:
        return self._procedure

    def params(self) -> Dict[str, Any]:
        return {"command": self.command, "timeout": self.timeout, "cwd": self.cwd}


def load_operation(
    path: str,
    context: ProcedureContext,
    default_timeout: int = 1800,
    cancel_event: Optional[threading.Event] = None,
) -> ShellOperation:
    """Build a ShellOperation from a YAML/JSON descriptor file.

    Raises:
        ConfigError: If the descriptor is unreadable or incomplete
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read operation descriptor {path}: {e}")
    return operation_from_dict(data, context, default_timeout, cancel_event)


def operation_from_dict(
    data: Dict[str, Any],
    context: ProcedureContext,
    default_timeout: int = 1800,
    cancel_event: Optional[threading.Event] = None,
) -> ShellOperation:
    problems = []
    if not isinstance(data, dict):
        raise ConfigError("Operation descriptor must be a mapping")
    if not data.get("name"):
        problems.append("name is required")
    if not data.get("command"):
        problems.append("command is required")
    if problems:
        raise ConfigError("Invalid operation descriptor", problems)

    rollback = dict(data.get("rollback") or {"procedure": "git-tag"})
    procedure_name = rollback.pop("procedure", "git-tag")
    if procedure_name == "command" and not rollback.get("restore"):
        raise ConfigError("Invalid operation descriptor",
                          ["rollback.restore is required for procedure 'command'"])
    procedure = build_procedure(procedure_name, rollback, context)

    cwd = _resolve(data.get("working_dir", "."), context.project_path)
    return ShellOperation(
        name=data["name"],
        command=data["command"],
        procedure=procedure,
        cwd=cwd,
        timeout=int(data.get("timeout", default_timeout)),
        cancel_event=cancel_event,
    )
