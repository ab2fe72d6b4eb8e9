"""
Helpers shared by the command modules.
"""

from contextlib import contextmanager
from typing import Iterator
import json
import sys

import click

from refgate.errors import EXIT_BLOCKED, RefgateError
from refgate.orchestrator import CommandResult, Orchestrator

json_option = click.option("--json", "as_json", is_flag=True, help="Output as JSON")


def fail(message: str, exit_code: int) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(exit_code)


@contextmanager
def open_orchestrator(project: str) -> Iterator[Orchestrator]:
    """Open the orchestrator, mapping refgate errors to exit codes."""
    try:
        with Orchestrator(project) as orch:
            yield orch
    except RefgateError as e:
        fail(str(e), e.exit_code)


def emit(result: CommandResult, as_json: bool = False) -> None:
    """Print a command result and exit with its code."""
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    elif result.exit_code == EXIT_BLOCKED and result.data.get("details"):
        click.echo("Blocked:", err=True)
        for detail in result.data["details"]:
            click.echo(f"  - {detail}", err=True)
    else:
        click.echo(result.detail, err=not result.ok)

    if result.exit_code:
        sys.exit(result.exit_code)
