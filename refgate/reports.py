"""
Report store for refgate.

External analysis tools (coverage, risk assessment, antipattern inventory,
security scanners) produce structured documents. The orchestrator reads
them only through immutable snapshots so a gate check always sees one
consistent view.

Storage structure:
    .refgate/reports/
        <kind>.json         # latest document for a report kind
        <kind>.yaml         # (alternative format, read-only)
        objects/<sha>.json  # content-addressed copies of every published document

Usage:
    store = DirectoryReportStore(".refgate/reports")
    store.publish("coverage", {"line": 91.0})
    snap = store.snapshot()
    snap.get("coverage")["line"]
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional
import copy
import hashlib
import json
import logging
import os
import subprocess
import threading

import yaml

from refgate.errors import ReportUnreadable
from refgate.models.audit_entry import canonical_json

logger = logging.getLogger(__name__)


def fingerprint(document: Any) -> str:
    """sha256 over the canonical JSON encoding of a document."""
    return hashlib.sha256(canonical_json(document).encode()).hexdigest()


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of the snapshot freeze, for display and serialization."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


class ReportSnapshot:
    """Immutable view of every report at one instant.

    Kinds whose documents could not be read are left out and listed in
    `unreadable` with the reason, so criteria reading them fail closed.
    """

    def __init__(self, reports: Dict[str, Any], unreadable: Optional[Dict[str, str]] = None):
        self._reports = MappingProxyType(
            {kind: _freeze(copy.deepcopy(doc)) for kind, doc in reports.items()}
        )
        self._fingerprints = {kind: fingerprint(doc) for kind, doc in reports.items()}
        self.unreadable = MappingProxyType(dict(unreadable or {}))
        if self.unreadable:
            self.fingerprint = fingerprint({
                "reports": self._fingerprints, "unreadable": sorted(self.unreadable),
            })
        else:
            self.fingerprint = fingerprint(self._fingerprints)

    def get(self, kind: str) -> Optional[Any]:
        """Report document for `kind`, or None when absent."""
        return self._reports.get(kind)

    def __contains__(self, kind: str) -> bool:
        return kind in self._reports

    def kinds(self) -> List[str]:
        return sorted(self._reports)

    def fingerprints(self, kinds: Optional[Iterable[str]] = None) -> Dict[str, str]:
        """Per-kind fingerprints, optionally restricted to `kinds`."""
        if kinds is None:
            return dict(self._fingerprints)
        return {k: self._fingerprints[k] for k in kinds if k in self._fingerprints}

    def to_dict(self) -> Dict[str, Any]:
        return {kind: thaw(doc) for kind, doc in self._reports.items()}


class ReportStore:
    """Read interface consumed by the orchestrator."""

    def get_report(self, kind: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def kinds(self) -> List[str]:
        raise NotImplementedError

    def publish(self, kind: str, document: Dict[str, Any]) -> str:
        """Producer-side write. Returns the document fingerprint."""
        raise NotImplementedError

    def load_object(self, digest: str) -> Optional[Dict[str, Any]]:
        """Historic document by fingerprint, if the backend keeps history."""
        return None

    def snapshot(self) -> ReportSnapshot:
        reports = {}
        unreadable = {}
        for kind in self.kinds():
            try:
                doc = self.get_report(kind)
            except ReportUnreadable as e:
                logger.warning("%s", e)
                unreadable[kind] = e.reason
                continue
            if doc is not None:
                reports[kind] = doc
        return ReportSnapshot(reports, unreadable)


class MemoryReportStore(ReportStore):
    """In-process store. Keeps every published document by fingerprint."""

    def __init__(self, reports: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self._reports: Dict[str, Any] = {}
        self._objects: Dict[str, Any] = {}
        for kind, doc in (reports or {}).items():
            self.publish(kind, doc)

    def get_report(self, kind: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._reports.get(kind)
            return copy.deepcopy(doc) if doc is not None else None

    def kinds(self) -> List[str]:
        with self._lock:
            return sorted(self._reports)

    def publish(self, kind: str, document: Dict[str, Any]) -> str:
        digest = fingerprint(document)
        with self._lock:
            self._reports[kind] = copy.deepcopy(document)
            self._objects[digest] = copy.deepcopy(document)
        return digest

    def remove(self, kind: str) -> None:
        with self._lock:
            self._reports.pop(kind, None)

    def load_object(self, digest: str) -> Optional[Dict[str, Any]]:
        doc = self._objects.get(digest)
        return copy.deepcopy(doc) if doc is not None else None


class DirectoryReportStore(ReportStore):
    """Reports stored as files in a directory."""

    SUFFIXES = (".json", ".yaml", ".yml")

    def __init__(self, path: str):
        self.path = Path(path)

    @property
    def objects_dir(self) -> Path:
        return self.path / "objects"

    def _file_for(self, kind: str) -> Optional[Path]:
        for suffix in self.SUFFIXES:
            candidate = self.path / f"{kind}{suffix}"
            if candidate.exists():
                return candidate
        return None

    def get_report(self, kind: str) -> Optional[Dict[str, Any]]:
        """Current document for `kind`, or None when absent.

        Raises:
            ReportUnreadable: If the file cannot be read or parsed
        """
        report_file = self._file_for(kind)
        if report_file is None:
            return None
        try:
            with open(report_file) as f:
                if report_file.suffix == ".json":
                    return json.load(f)
                return yaml.safe_load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ReportUnreadable(kind, f"{report_file.name}: {e}")

    def kinds(self) -> List[str]:
        if not self.path.exists():
            return []
        return sorted({
            p.stem for p in self.path.iterdir()
            if p.is_file() and p.suffix in self.SUFFIXES
        })

    def publish(self, kind: str, document: Dict[str, Any]) -> str:
        digest = fingerprint(document)
        self.objects_dir.mkdir(parents=True, exist_ok=True)

        object_file = self.objects_dir / f"{digest}.json"
        if not object_file.exists():
            with open(object_file, "w") as f:
                json.dump(document, f, indent=2, sort_keys=True)

        # Replace atomically so readers never see a partial document
        target = self.path / f"{kind}.json"
        tmp = self.path / f".{kind}.json.tmp"
        with open(tmp, "w") as f:
            json.dump(document, f, indent=2, sort_keys=True)
        os.replace(tmp, target)
        for suffix in (".yaml", ".yml"):
            stale = self.path / f"{kind}{suffix}"
            if stale.exists():
                stale.unlink()

        logger.debug("Published report %s (%s)", kind, digest[:12])
        return digest

    def load_object(self, digest: str) -> Optional[Dict[str, Any]]:
        object_file = self.objects_dir / f"{digest}.json"
        if not object_file.exists():
            return None
        try:
            with open(object_file) as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Report object %s is unreadable: %s", digest[:12], e)
            return None


# =============================================================================
# Collectors
# =============================================================================

@dataclass
class CollectorSpec:
    """External command whose stdout is a JSON report document."""
    kind: str
    command: str
    timeout: int = 300
    working_dir: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "command": self.command,
            "timeout": self.timeout,
            "working_dir": self.working_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectorSpec":
        return cls(
            kind=data.get("kind", ""),
            command=data.get("command", ""),
            timeout=data.get("timeout", 300),
            working_dir=data.get("working_dir", ""),
        )


@dataclass
class CollectorResult:
    """Result of running one collector."""
    kind: str
    ok: bool
    detail: str = ""
    digest: str = ""
    started_at: datetime = field(default_factory=datetime.now)


def run_collector(store: ReportStore, spec: CollectorSpec, project_path: str) -> CollectorResult:
    """Run a collector command and publish its JSON output."""
    working_dir = spec.working_dir or project_path
    if not os.path.isabs(working_dir):
        working_dir = os.path.join(project_path, working_dir)

    try:
        process = subprocess.run(
            spec.command,
            shell=True,
            cwd=working_dir,
            capture_output=True,
            text=True,
            timeout=spec.timeout,
        )
    except subprocess.TimeoutExpired:
        return CollectorResult(spec.kind, False, f"timed out after {spec.timeout} seconds")
    except OSError as e:
        return CollectorResult(spec.kind, False, str(e))

    if process.returncode != 0:
        err = process.stderr.strip().splitlines()[-1:] or [""]
        return CollectorResult(spec.kind, False, f"exit {process.returncode}: {err[0]}")

    try:
        document = json.loads(process.stdout)
    except json.JSONDecodeError as e:
        return CollectorResult(spec.kind, False, f"invalid JSON output: {e}")
    if not isinstance(document, dict):
        return CollectorResult(spec.kind, False, "output is not a JSON object")

    try:
        digest = store.publish(spec.kind, document)
    except OSError as e:
        return CollectorResult(spec.kind, False, f"cannot publish: {e}")
    return CollectorResult(spec.kind, True, "published", digest)


def run_collectors(
    store: ReportStore,
    specs: List[CollectorSpec],
    project_path: str,
) -> List[CollectorResult]:
    """Run every collector in order. Failures are returned, never raised."""
    results = []
    for spec in specs:
        result = run_collector(store, spec, project_path)
        if not result.ok:
            logger.warning("Collector %s failed: %s", spec.kind, result.detail)
        results.append(result)
    return results
