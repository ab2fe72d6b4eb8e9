"""
Operation Commands - Supervised transformations and reverts.

Commands:
- run-operation: Run an operation descriptor inside the Active phase
- rollback: Revert the most recent applied attempt
"""

import sys

import click

from refgate.cli_commands.common import emit, fail, json_option, open_orchestrator
from refgate.errors import EXIT_ROLLED_BACK, ConfigError
from refgate.procedures import load_operation


def register(cli):
    """Register operation commands with CLI."""

    @cli.command("run-operation")
    @click.argument("phase")
    @click.argument("descriptor", type=click.Path(exists=True, dir_okay=False))
    @json_option
    @click.pass_obj
    def run_operation(obj, phase: str, descriptor: str, as_json: bool):
        """Run the operation in DESCRIPTOR inside PHASE.

        \b
        Descriptor (YAML or JSON):
            name: extract-billing-service
            command: ./scripts/extract_billing.sh
            timeout: 600
            rollback:
              procedure: git-tag

        Exit 0 on success, 2 when the change was rolled back.
        """
        with open_orchestrator(obj["project"]) as orch:
            try:
                operation = load_operation(descriptor, orch.context, orch.config.operation_timeout)
            except ConfigError as e:
                fail(str(e), e.exit_code)
            try:
                result = orch.run_operation(phase, operation)
            except KeyboardInterrupt:
                click.echo("Interrupted: the attempt was rolled back", err=True)
                sys.exit(EXIT_ROLLED_BACK)
            emit(result, as_json)

    @cli.command()
    @click.argument("attempt_id")
    @click.option("--reason", default="operator request", help="Recorded in the audit log")
    @json_option
    @click.pass_obj
    def rollback(obj, attempt_id: str, reason: str, as_json: bool):
        """Revert the Succeeded attempt ATTEMPT_ID.

        Only the most recent applied attempt of the Active phase can be
        reverted; revert newer attempts first.
        """
        with open_orchestrator(obj["project"]) as orch:
            emit(orch.rollback(attempt_id, reason), as_json)
