"""
Shared fixtures: an in-memory report store, an opened orchestrator, and a
toy "system" whose state the rollback procedures capture and restore.
"""

import pytest

from refgate.config import ProjectConfig
from refgate.orchestrator import Orchestrator
from refgate.procedures import CallableOperation, CallableProcedure
from refgate.reports import MemoryReportStore


HEALTHY_REPORTS = {
    "risk-assessment": {"level": "medium"},
    "antipattern-inventory": {"items": []},
    "dependency-graph": {"nodes": 12},
    "seam-analysis": {"seams": ["billing"]},
    "security-baseline": {"findings": []},
    "coverage": {"line": 91},
    "test-results": {"passed": 120, "failed": 0, "errors": 0},
}


class ToySystem:
    """Mutable state plus reports derived from it.

    Restoring a point restores the state and republishes the reports, the
    way re-running collectors after a real restore would.
    """

    def __init__(self, store: MemoryReportStore):
        self.store = store
        self.state = {"coverage": 91, "tests_failed": 0}
        self.saved = {}
        self.restores = 0
        self.fail_restore = False
        self.break_on_restore = False

    def publish(self) -> None:
        self.store.publish("coverage", {"line": self.state["coverage"]})
        self.store.publish("test-results", {
            "passed": 120, "failed": self.state["tests_failed"], "errors": 0,
        })

    def capture(self, point_id: str) -> str:
        self.saved[point_id] = dict(self.state)
        return point_id

    def restore(self, reference: str) -> None:
        self.restores += 1
        if self.fail_restore:
            raise RuntimeError("restore target unreachable")
        self.state = dict(self.saved[reference])
        if self.break_on_restore:
            self.state["tests_failed"] = 3
        self.publish()

    def procedure(self) -> CallableProcedure:
        return CallableProcedure(self.capture, self.restore)

    def operation(self, name: str = "refactor", coverage=None, tests_failed=None,
                  error=None) -> CallableOperation:
        """Operation that changes the system and republishes its reports."""
        def run():
            if coverage is not None:
                self.state["coverage"] = coverage
            if tests_failed is not None:
                self.state["tests_failed"] = tests_failed
            self.publish()
            if error is not None:
                raise error
        return CallableOperation(name, run, self.procedure())


@pytest.fixture(autouse=True)
def _isolated_state_dir(monkeypatch):
    monkeypatch.delenv("REFGATE_STATE_DIR", raising=False)


@pytest.fixture
def store():
    return MemoryReportStore()


@pytest.fixture
def config():
    return ProjectConfig(poll_interval=0.01, health_interval=0.01)


@pytest.fixture
def orch(tmp_path, store, config):
    orchestrator = Orchestrator(str(tmp_path), store=store, config=config)
    orchestrator.open()
    yield orchestrator
    orchestrator.close()


@pytest.fixture
def system(store):
    return ToySystem(store)


@pytest.fixture
def transforming(orch, store, system):
    """Orchestrator with Assessment and SafetyNet completed and Transformation Active."""
    for kind, doc in HEALTHY_REPORTS.items():
        store.publish(kind, doc)
    system.publish()
    for name in ("Assessment", "SafetyNet"):
        assert orch.enter_phase(name).ok
        assert orch.complete_phase(name).ok
    assert orch.enter_phase("Transformation").ok
    return orch


@pytest.fixture
def healthy_reports():
    return {kind: dict(doc) for kind, doc in HEALTHY_REPORTS.items()}


@pytest.fixture
def publish(store):
    """Publish the healthy report set, with per-kind overrides."""
    def publish_reports(**overrides):
        for kind, doc in HEALTHY_REPORTS.items():
            store.publish(kind, overrides.get(kind.replace("-", "_"), doc))
    return publish_reports
