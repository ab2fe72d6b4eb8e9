"""
refgate CLI - gate, supervise and audit a modernization workflow.

Commands:
- Setup: init, add-collector
- Phases: assess, enter-phase, complete-phase, abort-phase, retry-phase, status
- Operations: run-operation, rollback
- Audit: audit show, audit verify, audit explain
- Reports: report put, report show
- Monitor: monitor

Exit codes: 0 ok, 1 blocked by a gate, 2 rolled back, 3 fatal.
"""

import logging
import os

import click

from refgate import __version__
from refgate.cli_commands import register_all
from refgate.config import load_config


@click.group()
@click.version_option(version=__version__)
@click.option("-p", "--project", default=None, type=click.Path(file_okay=False),
              help="Project path (default: current directory)")
@click.option("-v", "--verbose", count=True, help="More logging (-vv for debug)")
@click.pass_context
def cli(ctx, project: str, verbose: int):
    """refgate - Gated transformation workflow orchestrator.

    Phases open only when their criteria hold, every transformation runs
    with a rollback point, and every decision lands in the audit log.
    """
    project_path = os.path.abspath(project or os.getcwd())
    if verbose:
        level = logging.DEBUG if verbose > 1 else logging.INFO
    else:
        level = load_config(project_path).logging_level
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    ctx.obj = {"project": project_path}


register_all(cli)


# ============================================================================
# Entry Point
# ============================================================================

def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
