"""
Append-only audit log for refgate.

The log is the sole source of truth for resuming an interrupted run.
Every gate check, attempt step and rollback is one JSON line:

    {"sequence": 0, "timestamp": "...", "actor": "orchestrator",
     "event_type": "phase.instantiated", "payload": {...}, "digest": "..."}

Sequences start at 0 and are gap-free. Each digest chains to the previous
entry. A write that cannot be made durable raises AuditWriteFailed, which
is fatal: the orchestrator must stop rather than act without a record.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union
import fcntl
import json
import logging
import os
import threading

from refgate.errors import AuditIntegrityError, AuditWriteFailed, OrchestratorBusy
from refgate.models.audit_entry import GENESIS_DIGEST, AuditEntry, EventType
from refgate.models.state import WorkflowState

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditLog:
    """Single-writer JSON Lines audit log.

    Usage:
        with AuditLog(".refgate/audit.jsonl") as log:
            log.append(EventType.GATE_CHECKED, {...})
            for entry in log.replay():
                ...
    """

    def __init__(self, path: str, lock_path: Optional[str] = None):
        self.path = Path(path)
        self.lock_path = Path(lock_path) if lock_path else self.path.with_suffix(".lock")
        self._lock = threading.Lock()
        self._lock_file = None
        self._next_sequence = 0
        self._last_digest = GENESIS_DIGEST
        self._opened = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "AuditLog":
        """Take the writer lock, repair a torn tail and load the chain head."""
        if self._opened:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)

        self._lock_file = open(self.lock_path, "a")
        try:
            fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            self._lock_file.close()
            self._lock_file = None
            raise OrchestratorBusy(f"Audit log {self.path} is held by another process")

        self._repair_tail()
        last = None
        for entry in self.replay():
            last = entry
        if last is not None:
            self._next_sequence = last.sequence + 1
            self._last_digest = last.digest
        self._opened = True
        return self

    def close(self) -> None:
        if self._lock_file is not None:
            fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
            self._lock_file.close()
            self._lock_file = None
        self._opened = False

    def __enter__(self) -> "AuditLog":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    def _repair_tail(self) -> None:
        """Drop a final line that was torn by a crash mid-write."""
        if not self.path.exists():
            return
        with open(self.path, "rb") as f:
            data = f.read()
        if not data or data.endswith(b"\n"):
            return
        cut = data.rfind(b"\n") + 1
        logger.warning(
            "Audit log %s ends with a partial entry (%d bytes); truncating",
            self.path, len(data) - cut,
        )
        with open(self.path, "r+b") as f:
            f.truncate(cut)
            f.flush()
            os.fsync(f.fileno())

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    @property
    def next_sequence(self) -> int:
        return self._next_sequence

    def append(self, event_type: Union[EventType, str], payload: Dict[str, Any]) -> AuditEntry:
        """Durably append one entry. Raises AuditWriteFailed on any failure."""
        if not self._opened:
            raise AuditWriteFailed("Audit log is not open for writing")
        kind = event_type.value if isinstance(event_type, EventType) else event_type

        with self._lock:
            entry = AuditEntry(
                sequence=self._next_sequence,
                timestamp=_now(),
                event_type=kind,
                payload=payload,
            )
            entry.digest = entry.compute_digest(self._last_digest)
            try:
                line = json.dumps(entry.to_dict(), sort_keys=True)
            except (TypeError, ValueError) as e:
                raise AuditWriteFailed(f"Cannot encode audit entry {kind}: {e}")
            try:
                self._write_line(line)
            except OSError as e:
                raise AuditWriteFailed(f"Cannot write audit log {self.path}: {e}")
            self._next_sequence += 1
            self._last_digest = entry.digest

        logger.debug("audit %d %s", entry.sequence, kind)
        return entry

    def _write_line(self, line: str) -> None:
        with open(self.path, "a") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def replay(self, from_sequence: int = 0) -> Iterator[AuditEntry]:
        """Yield entries with sequence >= from_sequence, verifying the chain.

        The whole prefix is always verified, so a tampered early entry is
        detected even when replaying from a later sequence.
        """
        if not self.path.exists():
            return
        expected = 0
        previous = GENESIS_DIGEST
        with open(self.path) as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entry = AuditEntry.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    raise AuditIntegrityError(f"{self.path}:{lineno}: unreadable entry ({e})")
                if entry.sequence != expected:
                    raise AuditIntegrityError(
                        f"{self.path}:{lineno}: sequence {entry.sequence}, expected {expected}"
                    )
                if entry.compute_digest(previous) != entry.digest:
                    raise AuditIntegrityError(
                        f"{self.path}:{lineno}: digest mismatch at sequence {entry.sequence}"
                    )
                previous = entry.digest
                expected += 1
                if entry.sequence >= from_sequence:
                    yield entry

    def entries(self, from_sequence: int = 0) -> List[AuditEntry]:
        return list(self.replay(from_sequence))

    def get(self, sequence: int) -> Optional[AuditEntry]:
        for entry in self.replay(sequence):
            return entry if entry.sequence == sequence else None
        return None

    def last_sequence(self) -> int:
        """Sequence of the final entry (-1 for an empty log), read from the tail."""
        if self._opened:
            return self._next_sequence - 1
        if not self.path.exists():
            return -1
        with open(self.path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - 65536))
            tail = f.read().splitlines()
        for raw in reversed(tail):
            try:
                return int(json.loads(raw)["sequence"])
            except (ValueError, KeyError):
                continue
        return -1


class Ledger:
    """Couples the audit log with the state reduced from it.

    `record()` is the only way state changes: the entry is made durable
    first and then applied, so a crash can never leave state the log does
    not explain.
    """

    def __init__(self, log: AuditLog, state: Optional[WorkflowState] = None):
        self.log = log
        self.state = state if state is not None else WorkflowState()

    def load(self) -> int:
        """Replay the whole log into state. Returns the number of entries."""
        count = 0
        for entry in self.log.replay():
            self.state.apply(entry)
            count += 1
        return count

    def record(self, event_type: Union[EventType, str], payload: Dict[str, Any]) -> AuditEntry:
        entry = self.log.append(event_type, payload)
        self.state.apply(entry)
        return entry
