"""
Setup Commands - Project initialization.

Commands:
- init: Create .refgate/ with config, workflow and phase instances
- add-collector: Register a command that publishes a report kind
"""

import click

from refgate.cli_commands.common import open_orchestrator
from refgate.config import add_collector, get_state_dir, init_project_config
from refgate.workflow import WorkflowDefinition, get_workflow_path, save_workflow


def register(cli):
    """Register setup commands with CLI."""

    @cli.command()
    @click.pass_obj
    def init(obj):
        """Initialize refgate in the project.

        Writes config.json and the default workflow.yaml (existing files
        are kept), then instantiates every phase in the audit log.
        """
        project = obj["project"]
        init_project_config(project)
        workflow_file = get_workflow_path(project)
        if not workflow_file.exists():
            save_workflow(project, WorkflowDefinition.default())
            click.echo(f"Wrote default workflow: {workflow_file}")

        with open_orchestrator(project) as orch:
            names = ", ".join(i.instance_id for i in orch.state.current_instances())

        click.echo(f"Initialized refgate in {get_state_dir(project)}")
        click.echo(f"  Phases: {names}")
        click.echo("")
        click.echo("Next: refgate assess")

    @cli.command("add-collector")
    @click.argument("kind")
    @click.argument("command")
    @click.option("--timeout", default=300, show_default=True, help="Seconds before the collector is killed")
    @click.pass_obj
    def add_collector_cmd(obj, kind: str, command: str, timeout: int):
        """Register a collector for a report kind.

        COMMAND runs in the project directory and prints a JSON document.

        \b
        Example:
            refgate add-collector coverage "python tools/coverage_json.py"
        """
        config = add_collector(obj["project"], kind, command, timeout)
        click.echo(f"Collector for {kind} registered ({len(config.collectors)} total)")
