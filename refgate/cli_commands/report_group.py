"""
Report Commands - Publish and read report documents.

Commands:
- report put: Publish a JSON or YAML document under a report kind
- report show: Print the current document for a kind
- report list: List report kinds
"""

import json
import sys

import click
import yaml

from refgate.cli_commands.common import fail
from refgate.config import get_state_dir
from refgate.errors import EXIT_FATAL, RefgateError
from refgate.reports import DirectoryReportStore


def _store(project: str) -> DirectoryReportStore:
    return DirectoryReportStore(str(get_state_dir(project) / "reports"))


def register(cli):
    """Register report group commands with CLI."""

    @cli.group("report")
    def report_group():
        """Report store commands.

        \b
            report put <kind> <file>  - Publish a document ('-' for stdin)
            report show <kind>        - Print the current document
            report list               - List report kinds
        """
        pass

    @report_group.command("put")
    @click.argument("kind")
    @click.argument("source", type=click.File("r"))
    @click.pass_obj
    def report_put(obj, kind: str, source):
        """Publish SOURCE as the current KIND report.

        \b
        Example:
            refgate report put coverage coverage.json
            echo '{"line": 91}' | refgate report put coverage -
        """
        try:
            document = yaml.safe_load(source)
        except yaml.YAMLError as e:
            fail(f"Cannot parse report: {e}", EXIT_FATAL)
        if not isinstance(document, dict):
            fail("Report must be a mapping", EXIT_FATAL)

        try:
            digest = _store(obj["project"]).publish(kind, document)
        except OSError as e:
            fail(f"Cannot publish report: {e}", EXIT_FATAL)
        click.echo(f"Published {kind} ({digest[:12]})")

    @report_group.command("show")
    @click.argument("kind")
    @click.pass_obj
    def report_show(obj, kind: str):
        """Print the current KIND report as JSON."""
        try:
            document = _store(obj["project"]).get_report(kind)
        except RefgateError as e:
            fail(str(e), e.exit_code)
        if document is None:
            click.echo(f"No {kind} report", err=True)
            sys.exit(1)
        click.echo(json.dumps(document, indent=2, sort_keys=True))

    @report_group.command("list")
    @click.pass_obj
    def report_list(obj):
        """List report kinds in the store."""
        kinds = _store(obj["project"]).kinds()
        if not kinds:
            click.echo("No reports.")
            return
        for kind in kinds:
            click.echo(kind)
