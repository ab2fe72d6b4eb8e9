"""
Audit Commands - Inspect and verify the audit log.

Commands:
- audit show: List entries
- audit verify: Check sequences and the digest chain
- audit explain: Replay a recorded gate check
"""

import json

import click

from refgate.cli_commands.common import emit, fail, json_option
from refgate.config import get_state_dir
from refgate.errors import RefgateError
from refgate.audit import AuditLog
from refgate.orchestrator import audit_path, explain_entry
from refgate.reports import DirectoryReportStore


def _log(project: str) -> AuditLog:
    return AuditLog(str(audit_path(get_state_dir(project))))


def register(cli):
    """Register audit group commands with CLI."""

    @cli.group("audit")
    def audit_group():
        """Audit log commands.

        \b
            audit show           - List entries
            audit verify         - Verify sequences and digests
            audit explain <seq>  - Replay a recorded gate check
        """
        pass

    @audit_group.command("show")
    @click.option("--from", "from_sequence", default=0, help="First sequence to show")
    @click.option("-n", "--limit", default=0, help="Show at most this many entries (0 = all)")
    @click.option("--type", "event_type", default=None, help="Only this event type")
    @json_option
    @click.pass_obj
    def audit_show(obj, from_sequence: int, limit: int, event_type: str, as_json: bool):
        """List audit entries."""
        try:
            entries = _log(obj["project"]).entries(from_sequence)
        except RefgateError as e:
            fail(str(e), e.exit_code)

        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        if limit:
            entries = entries[:limit]

        if as_json:
            click.echo(json.dumps([e.to_dict() for e in entries], indent=2))
            return
        if not entries:
            click.echo("No audit entries.")
            return
        for entry in entries:
            click.echo(entry.format_line())

    @audit_group.command("verify")
    @click.pass_obj
    def audit_verify(obj):
        """Verify the audit log: gap-free sequences and an intact digest chain."""
        try:
            count = len(_log(obj["project"]).entries())
        except RefgateError as e:
            fail(str(e), e.exit_code)
        click.echo(f"Audit log OK: {count} entries")

    @audit_group.command("explain")
    @click.argument("sequence", type=int)
    @json_option
    @click.pass_obj
    def audit_explain(obj, sequence: int, as_json: bool):
        """Re-evaluate the gate check at SEQUENCE against the reports it saw."""
        project = obj["project"]
        store = DirectoryReportStore(str(get_state_dir(project) / "reports"))
        try:
            result = explain_entry(_log(project), store, sequence)
        except RefgateError as e:
            fail(str(e), e.exit_code)
        emit(result, as_json)
