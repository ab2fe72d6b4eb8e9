"""
Tests for rollback procedures and shell operations.
"""

import shutil
import subprocess
import threading

import pytest

from refgate.errors import ConfigError, OperationCancelled, OperationFailed
from refgate.procedures import (
    CommandProcedure,
    GitTagProcedure,
    ProcedureContext,
    ProcedureError,
    ShellOperation,
    SnapshotProcedure,
    build_procedure,
    load_operation,
    registered_procedures,
)


@pytest.fixture
def context(tmp_path):
    return ProcedureContext(project_path=str(tmp_path), state_dir=str(tmp_path / ".refgate"))


@pytest.fixture
def app(tmp_path):
    path = tmp_path / "app"
    path.mkdir()
    (path / "billing.py").write_text("v1")
    (path / "pkg").mkdir()
    (path / "pkg" / "core.py").write_text("core v1")
    return path


class TestSnapshotProcedure:
    """Tests for directory snapshots."""

    def test_restore_undoes_edits_and_new_files(self, app, tmp_path):
        procedure = SnapshotProcedure(str(app), str(tmp_path / "snaps"))
        reference = procedure.capture("pt-1")

        (app / "billing.py").write_text("v2")
        (app / "pkg" / "core.py").unlink()
        (app / "added.py").write_text("new")
        procedure.restore(reference)

        assert (app / "billing.py").read_text() == "v1"
        assert (app / "pkg" / "core.py").read_text() == "core v1"
        assert not (app / "added.py").exists()

    def test_excluded_entries_survive_restore(self, app, tmp_path):
        (app / ".refgate").mkdir()
        (app / ".refgate" / "audit.jsonl").write_text("entry\n")
        procedure = SnapshotProcedure(str(app), str(tmp_path / "snaps"))
        reference = procedure.capture("pt-1")
        (app / ".refgate" / "audit.jsonl").write_text("entry\nentry\n")

        procedure.restore(reference)
        assert (app / ".refgate" / "audit.jsonl").read_text() == "entry\nentry\n"

    def test_missing_snapshot(self, app, tmp_path):
        procedure = SnapshotProcedure(str(app), str(tmp_path / "snaps"))
        with pytest.raises(ProcedureError, match="missing"):
            procedure.restore(str(tmp_path / "snaps" / "pt-gone"))


class TestCommandProcedure:
    """Tests for user-supplied capture/restore commands."""

    def test_capture_reference_reaches_restore(self, tmp_path):
        procedure = CommandProcedure(
            capture='echo "ref-$REFGATE_POINT_ID"',
            restore='echo "$REFGATE_REFERENCE" > restored.txt',
            cwd=str(tmp_path),
        )
        reference = procedure.capture("pt-7")
        assert reference == "ref-pt-7"
        procedure.restore(reference)
        assert (tmp_path / "restored.txt").read_text().strip() == "ref-pt-7"

    def test_silent_capture_uses_point_id(self, tmp_path):
        procedure = CommandProcedure("true", "true", str(tmp_path))
        assert procedure.capture("pt-8") == "pt-8"

    def test_failing_restore_raises(self, tmp_path):
        procedure = CommandProcedure("true", "echo disk gone >&2; exit 1", str(tmp_path))
        with pytest.raises(ProcedureError, match="disk gone"):
            procedure.restore("pt-8")


class TestRegistry:
    """Tests for rebuilding procedures by name."""

    def test_builtin_procedures(self):
        assert {"git-tag", "snapshot", "command"} <= set(registered_procedures())

    def test_snapshot_rebuilt_relative_to_project(self, context, tmp_path):
        procedure = build_procedure("snapshot", {"path": "app"}, context)
        assert procedure.path == tmp_path / "app"
        assert procedure.snapshots_dir == tmp_path / ".refgate" / "snapshots"

    def test_rebuilt_procedure_restores_earlier_capture(self, app, context):
        original = build_procedure("snapshot", {"path": "app"}, context)
        reference = original.capture("pt-1")
        (app / "billing.py").write_text("v2")

        build_procedure("snapshot", original.params(), context).restore(reference)
        assert (app / "billing.py").read_text() == "v1"

    def test_unknown_procedure(self, context):
        with pytest.raises(ConfigError, match="Unknown rollback procedure"):
            build_procedure("tape-backup", {}, context)


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestGitTagProcedure:
    """Tests for git tag capture and hard-reset restore."""

    @pytest.fixture
    def repo(self, tmp_path):
        def git(*args):
            subprocess.run(["git", "-c", "user.name=t", "-c", "user.email=t@example.com", *args],
                           cwd=tmp_path, check=True, capture_output=True)
        git("init", "-q")
        (tmp_path / "billing.py").write_text("v1")
        git("add", "billing.py")
        git("commit", "-q", "-m", "initial")
        return tmp_path, git

    def test_restore_resets_commits_and_untracked_files(self, repo):
        path, git = repo
        procedure = GitTagProcedure(str(path))
        tag = procedure.capture("pt-1")
        assert tag == "refgate/pt-1"

        (path / "billing.py").write_text("v2")
        git("commit", "-q", "-am", "refactor")
        (path / "scratch.py").write_text("tmp")
        procedure.restore(tag)

        assert (path / "billing.py").read_text() == "v1"
        assert not (path / "scratch.py").exists()

    def test_dirty_tree_refuses_capture(self, repo):
        path, _ = repo
        (path / "billing.py").write_text("uncommitted")
        with pytest.raises(ProcedureError, match="uncommitted changes"):
            GitTagProcedure(str(path)).capture("pt-1")


class TestShellOperation:
    """Tests for running shell operations."""

    def make(self, tmp_path, command, **kwargs):
        procedure = CommandProcedure("true", "true", str(tmp_path))
        return ShellOperation("extract", command, procedure, cwd=str(tmp_path), **kwargs)

    def test_success(self, tmp_path):
        self.make(tmp_path, "echo done > out.txt").execute()
        assert (tmp_path / "out.txt").read_text().strip() == "done"

    def test_nonzero_exit_fails_with_output_tail(self, tmp_path):
        with pytest.raises(OperationFailed, match="extract: exit 2: bad seam"):
            self.make(tmp_path, "echo bad seam >&2; exit 2").execute()

    def test_timeout(self, tmp_path):
        with pytest.raises(OperationFailed, match="timed out after 1 seconds"):
            self.make(tmp_path, "sleep 10", timeout=1).execute()

    def test_cancel_event(self, tmp_path):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            self.make(tmp_path, "sleep 10", cancel_event=cancel).execute()

    def test_describe_names_procedure(self, tmp_path):
        described = self.make(tmp_path, "make refactor").describe()
        assert described.kind == "shell"
        assert described.rollback["procedure"] == "command"
        assert described.params["command"] == "make refactor"


class TestLoadOperation:
    """Tests for operation descriptor files."""

    def test_yaml_descriptor(self, tmp_path, context):
        (tmp_path / "app").mkdir()
        descriptor = tmp_path / "op.yaml"
        descriptor.write_text(
            "name: extract-billing\n"
            "command: ./extract.sh\n"
            "timeout: 60\n"
            "rollback:\n"
            "  procedure: snapshot\n"
            "  path: app\n"
        )
        op = load_operation(str(descriptor), context)
        assert op.name == "extract-billing"
        assert op.timeout == 60
        assert isinstance(op.rollback_procedure(), SnapshotProcedure)

    def test_default_rollback_is_git_tag(self, tmp_path, context):
        descriptor = tmp_path / "op.json"
        descriptor.write_text('{"name": "rename", "command": "true"}')
        op = load_operation(str(descriptor), context, default_timeout=5)
        assert isinstance(op.rollback_procedure(), GitTagProcedure)
        assert op.timeout == 5

    def test_incomplete_descriptor(self, tmp_path, context):
        descriptor = tmp_path / "op.yaml"
        descriptor.write_text("timeout: 5\n")
        with pytest.raises(ConfigError) as exc:
            load_operation(str(descriptor), context)
        assert exc.value.problems == ["name is required", "command is required"]

    def test_missing_file(self, tmp_path, context):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_operation(str(tmp_path / "absent.yaml"), context)

    def test_command_procedure_needs_restore(self, tmp_path, context):
        descriptor = tmp_path / "op.yaml"
        descriptor.write_text(
            "name: extract-billing\n"
            "command: ./extract.sh\n"
            "rollback:\n"
            "  procedure: command\n"
            "  capture: git stash create\n"
        )
        with pytest.raises(ConfigError) as exc:
            load_operation(str(descriptor), context)
        assert exc.value.problems == ["rollback.restore is required for procedure 'command'"]
