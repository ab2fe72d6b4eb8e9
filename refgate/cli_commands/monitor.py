"""
Monitor Command - Background health checks with automatic reverts.
"""

import threading

import click

from refgate.cli_commands.common import open_orchestrator


def register(cli):
    """Register monitor command with CLI."""

    @cli.command()
    @click.option("--duration", type=float, default=None,
                  help="Stop after this many seconds (default: until Ctrl-C)")
    @click.pass_obj
    def monitor(obj, duration: float):
        """Watch integrity criteria and revert the latest attempt when they fail.

        Holds the writer lock while running.
        """
        stop = threading.Event()
        timer = None
        if duration:
            timer = threading.Timer(duration, stop.set)
            timer.daemon = True
            timer.start()

        with open_orchestrator(obj["project"]) as orch:
            click.echo(f"Monitoring {', '.join(orch.workflow.integrity) or 'nothing'} "
                       f"every {orch.config.health_interval}s")
            try:
                orch.monitor(stop, on_result=lambda r: click.echo(r.detail))
            except KeyboardInterrupt:
                stop.set()
                click.echo("Stopped.")
            finally:
                if timer is not None:
                    timer.cancel()
