"""
refgate CLI Commands - Modular command structure.

Structure:
    cli_commands/
    ├── __init__.py      # This file - registration
    ├── common.py        # shared options, result output, error mapping
    ├── setup.py         # init, add-collector
    ├── phases.py        # assess, enter-phase, complete-phase, abort-phase, retry-phase, status
    ├── operations.py    # run-operation, rollback
    ├── audit_group.py   # audit (show, verify, explain)
    ├── report_group.py  # report (put, show)
    └── monitor.py       # monitor

Usage:
    from refgate.cli_commands import register_all

    @click.group()
    def cli():
        pass

    register_all(cli)
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import click


def register_all(cli: "click.Group") -> None:
    """Register all command modules with the CLI group.

    Each module has a `register(cli)` function that adds its commands
    to the CLI group using Click decorators.
    """
    from . import setup
    from . import phases
    from . import operations
    from . import audit_group
    from . import report_group
    from . import monitor

    setup.register(cli)
    phases.register(cli)
    operations.register(cli)
    audit_group.register(cli)
    report_group.register(cli)
    monitor.register(cli)
