"""
Phase Commands - Gate checks and phase transitions.

Commands:
- assess: Refresh reports and re-check every waiting phase
- enter-phase: Activate a phase once its entry gate holds
- complete-phase: Complete the Active phase once its exit gate holds
- abort-phase: Fail the Active phase
- retry-phase: Create the next instance of a Failed phase
- status: Show phases and attempts
"""

import json

import click

from refgate.cli_commands.common import emit, fail, json_option, open_orchestrator
from refgate.errors import RefgateError
from refgate.orchestrator import read_state
from refgate.status import format_status, status_data


def register(cli):
    """Register phase commands with CLI."""

    @cli.command()
    @json_option
    @click.pass_obj
    def assess(obj, as_json: bool):
        """Run collectors and re-derive Locked/Ready for every phase."""
        with open_orchestrator(obj["project"]) as orch:
            result = orch.assess()
            if as_json:
                emit(result, as_json)
                return
            click.echo(format_status(orch.state))
            for failure in result.data["collectors"]:
                click.echo(f"Warning: {failure['detail']}", err=True)

    @cli.command("enter-phase")
    @click.argument("name")
    @click.option("--wait", type=float, default=None,
                  help="Poll for up to this many seconds until the gate opens")
    @json_option
    @click.pass_obj
    def enter_phase(obj, name: str, wait: float, as_json: bool):
        """Activate phase NAME.

        The entry gate is re-evaluated from scratch; a blocked gate lists
        every unmet criterion and exits 1.
        """
        with open_orchestrator(obj["project"]) as orch:
            emit(orch.enter_phase(name, wait=wait), as_json)

    @cli.command("complete-phase")
    @click.argument("name")
    @json_option
    @click.pass_obj
    def complete_phase(obj, name: str, as_json: bool):
        """Complete the Active phase NAME."""
        with open_orchestrator(obj["project"]) as orch:
            emit(orch.complete_phase(name), as_json)

    @cli.command("abort-phase")
    @click.argument("name")
    @click.option("--reason", required=True, help="Why the phase is abandoned")
    @json_option
    @click.pass_obj
    def abort_phase(obj, name: str, reason: str, as_json: bool):
        """Fail the Active phase NAME."""
        with open_orchestrator(obj["project"]) as orch:
            emit(orch.abort_phase(name, reason), as_json)

    @cli.command("retry-phase")
    @click.argument("name")
    @json_option
    @click.pass_obj
    def retry_phase(obj, name: str, as_json: bool):
        """Create a new instance of the Failed phase NAME."""
        with open_orchestrator(obj["project"]) as orch:
            emit(orch.retry_phase(name), as_json)

    @cli.command()
    @json_option
    @click.pass_obj
    def status(obj, as_json: bool):
        """Show phases, attempts and rollback points.

        Reads without taking the writer lock, so it works while a monitor
        or an operation is running.
        """
        try:
            state = read_state(obj["project"])
        except RefgateError as e:
            fail(str(e), e.exit_code)

        if as_json:
            click.echo(json.dumps(status_data(state), indent=2))
            return
        if not state.instances:
            click.echo("No phases instantiated.")
            click.echo("Run: refgate init")
            return
        click.echo(format_status(state))
