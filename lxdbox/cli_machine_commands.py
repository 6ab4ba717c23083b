"""Machine lifecycle CLI commands."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from lxdbox.actions.plan import Operation
from lxdbox.actions.runner import PlanResult
from lxdbox.cli_support import CliOptions, handle_cli_error, machine_session, ssh_command
from lxdbox.core.errors import LxdboxError
from lxdbox.core.logger import get_logger

logger = get_logger(__name__)

# Module-level console instance (will be set by register function)
console: Console = Console()


def run_operation(
    ctx: typer.Context,
    operation: Operation,
    force: bool = False,
    snapshot_name: Optional[str] = None,
) -> Optional[PlanResult]:
    """Run one planned operation against the selected machine."""
    options: CliOptions = ctx.obj
    try:
        with machine_session(options, console, force=force) as session:
            return session.provider.run(operation, snapshot_name=snapshot_name)
    except (LxdboxError, FileNotFoundError) as e:
        handle_cli_error(e, console, verbose=options.verbose)


def up(ctx: typer.Context):
    """Create the machine if needed and start it."""
    run_operation(ctx, Operation.UP)


def halt(ctx: typer.Context):
    """Stop the machine."""
    run_operation(ctx, Operation.HALT)


def suspend(ctx: typer.Context):
    """Freeze the machine's processes."""
    run_operation(ctx, Operation.SUSPEND)


def resume(ctx: typer.Context):
    """Resume a stopped or suspended machine."""
    run_operation(ctx, Operation.RESUME)


def reload(ctx: typer.Context):
    """Stop and start the machine."""
    run_operation(ctx, Operation.RELOAD)


def destroy(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Destroy without asking for confirmation"),
):
    """Stop and delete the machine's container."""
    run_operation(ctx, Operation.DESTROY, force=force)


def provision(ctx: typer.Context):
    """Run the machine's provision commands."""
    run_operation(ctx, Operation.PROVISION)


def status(ctx: typer.Context):
    """Show the state of the machine."""
    options: CliOptions = ctx.obj
    try:
        with machine_session(options, console, lock=False) as session:
            state = session.provider.state()
            table = Table(title="Machine Status", show_header=True)
            table.add_column("Machine", style="cyan")
            table.add_column("Container")
            table.add_column("State", style="green")
            table.add_row(session.machine.name, session.machine.id or "-", state.label)
            console.print(table)
    except (LxdboxError, FileNotFoundError) as e:
        handle_cli_error(e, console, verbose=options.verbose)


def ssh_info(ctx: typer.Context):
    """Print how to reach the machine over SSH."""
    options: CliOptions = ctx.obj
    try:
        with machine_session(options, console, lock=False) as session:
            info = session.provider.ssh_info()
            if info is None:
                console.print("[yellow]Machine is not running.[/yellow]")
                raise typer.Exit(1)
            user = session.loader.definition(session.machine.name).ssh_user
            console.print(f"Host: {info['host']}")
            console.print(f"Port: {info['port']}")
            console.print(f"User: {user}")
            console.print(f"[dim]{' '.join(ssh_command(user, info))}[/dim]")
    except (LxdboxError, FileNotFoundError) as e:
        handle_cli_error(e, console, verbose=options.verbose)


def attach(
    ctx: typer.Context,
    container_id: str = typer.Argument(..., help="Name of an existing LXD container"),
):
    """Bind the machine to an existing container."""
    options: CliOptions = ctx.obj
    try:
        with machine_session(options, console) as session:
            session.provider.attach(container_id)
    except (LxdboxError, FileNotFoundError) as e:
        handle_cli_error(e, console, verbose=options.verbose)


def detach(ctx: typer.Context):
    """Forget the machine's container without deleting it."""
    options: CliOptions = ctx.obj
    try:
        with machine_session(options, console) as session:
            session.provider.detach()
    except (LxdboxError, FileNotFoundError) as e:
        handle_cli_error(e, console, verbose=options.verbose)


def register_machine_commands(app: typer.Typer, shared_console: Console) -> None:
    """Register machine lifecycle commands with the main Typer app."""
    global console
    console = shared_console

    app.command()(up)
    app.command()(halt)
    app.command()(suspend)
    app.command()(resume)
    app.command()(reload)
    app.command()(destroy)
    app.command()(provision)
    app.command()(status)
    app.command("ssh-info")(ssh_info)
    app.command()(attach)
    app.command()(detach)
