#!/usr/bin/env python3
"""lxdbox CLI - LXD containers as disposable development machines."""
from typing import Optional

import typer
from rich.console import Console

from lxdbox.cli_machine_commands import register_machine_commands
from lxdbox.cli_snapshot_commands import register_snapshot_commands
from lxdbox.cli_support import CliOptions
from lxdbox.core.logger import get_logger, set_verbose, setup_file_logging

VERSION = "0.1.0"

app = typer.Typer(
    name="lxdbox",
    help="""lxdbox - LXD containers as development machines

Describe machines in lxdbox.yml, then:
  lxdbox up        # Create and start the machine
  lxdbox ssh-info  # How to reach it
  lxdbox destroy   # Throw it away
""",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to lxdbox.yml"),
    machine: Optional[str] = typer.Option(None, "--machine", "-m", help="Machine to act on"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Write logs to this file"),
) -> None:
    """Options shared by every command."""
    ctx.obj = CliOptions(config=config, machine=machine, verbose=verbose, log_file=log_file)
    if verbose:
        set_verbose(True)
    if log_file or verbose:
        setup_file_logging(log_file=log_file, verbose=verbose)


@app.command()
def version():
    """Show lxdbox version."""
    console.print(f"lxdbox v{VERSION}")


# Attach modular subcommands
register_machine_commands(app, console)
register_snapshot_commands(app, console)

if __name__ == "__main__":
    app()
