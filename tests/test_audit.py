"""
Tests for the audit log and the ledger.
"""

import json

import pytest

from refgate.audit import AuditLog, Ledger
from refgate.errors import AuditIntegrityError, AuditWriteFailed, OrchestratorBusy
from refgate.models.audit_entry import GENESIS_DIGEST, EventType


@pytest.fixture
def log(tmp_path):
    audit = AuditLog(str(tmp_path / "audit.jsonl"))
    audit.open()
    yield audit
    audit.close()


def _rewrite(path, lines):
    path.write_text("".join(json.dumps(line, sort_keys=True) + "\n" for line in lines))


class TestAppend:
    """Tests for AuditLog.append."""

    def test_sequences_start_at_zero_and_are_gap_free(self, log):
        entries = [log.append(EventType.GATE_CHECKED, {"n": i}) for i in range(4)]
        assert [e.sequence for e in entries] == [0, 1, 2, 3]
        assert log.last_sequence() == 3

    def test_digests_chain(self, log):
        first = log.append("custom.event", {"a": 1})
        second = log.append("custom.event", {"a": 2})
        assert first.digest == first.compute_digest(GENESIS_DIGEST)
        assert second.digest == second.compute_digest(first.digest)

    def test_actor_is_orchestrator(self, log):
        assert log.append(EventType.GATE_CHECKED, {}).actor == "orchestrator"

    def test_append_requires_open_log(self, tmp_path):
        with pytest.raises(AuditWriteFailed):
            AuditLog(str(tmp_path / "audit.jsonl")).append(EventType.GATE_CHECKED, {})

    def test_write_failure_raises_and_keeps_sequence(self, log, monkeypatch):
        log.append(EventType.GATE_CHECKED, {})

        def broken(line):
            raise OSError("disk full")

        monkeypatch.setattr(log, "_write_line", broken)
        with pytest.raises(AuditWriteFailed, match="disk full"):
            log.append(EventType.GATE_CHECKED, {})
        assert log.next_sequence == 1

    def test_unencodable_payload_raises(self, log):
        with pytest.raises(AuditWriteFailed):
            log.append(EventType.GATE_CHECKED, {"bad": object()})

    def test_sequence_continues_after_reopen(self, tmp_path):
        path = str(tmp_path / "audit.jsonl")
        with AuditLog(path) as first:
            first.append(EventType.GATE_CHECKED, {})
            first.append(EventType.GATE_CHECKED, {})
        with AuditLog(path) as second:
            assert second.append(EventType.GATE_CHECKED, {}).sequence == 2
            assert len(second.entries()) == 3


class TestReplay:
    """Tests for replay verification."""

    def test_replay_from_sequence(self, log):
        for i in range(5):
            log.append(EventType.GATE_CHECKED, {"n": i})
        assert [e.payload["n"] for e in log.replay(3)] == [3, 4]
        assert log.get(2).payload == {"n": 2}
        assert log.get(9) is None

    def test_tampered_payload_detected(self, log):
        for i in range(3):
            log.append(EventType.GATE_CHECKED, {"n": i})
        lines = [json.loads(l) for l in log.path.read_text().splitlines()]
        lines[1]["payload"]["n"] = 42
        _rewrite(log.path, lines)
        with pytest.raises(AuditIntegrityError, match="digest mismatch at sequence 1"):
            log.entries()

    def test_gap_detected(self, log):
        for i in range(3):
            log.append(EventType.GATE_CHECKED, {"n": i})
        lines = [json.loads(l) for l in log.path.read_text().splitlines()]
        _rewrite(log.path, [lines[0], lines[2]])
        with pytest.raises(AuditIntegrityError, match="expected 1"):
            log.entries()

    def test_torn_tail_truncated_on_open(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        with AuditLog(str(path)) as audit:
            audit.append(EventType.GATE_CHECKED, {"n": 0})
        with open(path, "a") as f:
            f.write('{"sequence": 1, "payl')

        with AuditLog(str(path)) as audit:
            assert len(audit.entries()) == 1
            assert audit.append(EventType.GATE_CHECKED, {"n": 1}).sequence == 1
            assert len(audit.entries()) == 2

    def test_last_sequence_without_opening(self, tmp_path):
        path = str(tmp_path / "audit.jsonl")
        assert AuditLog(path).last_sequence() == -1
        with AuditLog(path) as audit:
            audit.append(EventType.GATE_CHECKED, {})
        assert AuditLog(path).last_sequence() == 0


class TestSingleWriter:
    """Tests for the writer lock."""

    def test_second_writer_is_rejected(self, log):
        with pytest.raises(OrchestratorBusy):
            AuditLog(str(log.path)).open()

    def test_lock_released_on_close(self, tmp_path):
        path = str(tmp_path / "audit.jsonl")
        AuditLog(path).open().close()
        with AuditLog(path) as audit:
            audit.append(EventType.GATE_CHECKED, {})


class TestLedger:
    """Tests for Ledger record/replay."""

    def test_record_applies_to_state(self, log):
        ledger = Ledger(log)
        ledger.record(EventType.PHASE_INSTANTIATED, {
            "instance_id": "Assessment#1", "name": "Assessment", "ordinal": 0, "generation": 1,
        })
        assert ledger.state.instance("Assessment").instance_id == "Assessment#1"
        assert ledger.state.last_sequence == 0

    def test_load_rebuilds_identical_state(self, log):
        ledger = Ledger(log)
        ledger.record(EventType.PHASE_INSTANTIATED, {
            "instance_id": "Assessment#1", "name": "Assessment", "ordinal": 0, "generation": 1,
        })
        ledger.record(EventType.PHASE_TRANSITIONED, {
            "instance_id": "Assessment#1", "from": "Locked", "to": "Ready", "reason": "test",
        })

        replayed = Ledger(log)
        assert replayed.load() == 2
        assert replayed.state.to_dict() == ledger.state.to_dict()
