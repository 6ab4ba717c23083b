"""Snapshot CLI commands."""
from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from lxdbox.actions.plan import DriverCall, Operation
from lxdbox import cli_machine_commands

SnapshotTyper = typer.Typer(help="Save, restore, and delete container snapshots", add_completion=False)

# Module-level console instance (will be set by register function)
console: Console = Console()


@SnapshotTyper.command("list")
def list_command(ctx: typer.Context) -> None:
    """List the machine's snapshots."""
    result = cli_machine_commands.run_operation(ctx, Operation.SNAPSHOT_LIST)
    names = result.results.get(DriverCall.SNAPSHOT_LIST) if result else None
    if names is None:
        return
    if not names:
        console.print("[dim]No snapshots.[/dim]")
        return

    table = Table(title="Snapshots")
    table.add_column("Name", style="cyan")
    for name in names:
        table.add_row(name)
    console.print(table)


@SnapshotTyper.command("save")
def save_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Snapshot name (replaces an existing one)"),
) -> None:
    """Save a snapshot of the machine."""
    cli_machine_commands.run_operation(ctx, Operation.SNAPSHOT_SAVE, snapshot_name=name)


@SnapshotTyper.command("restore")
def restore_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Snapshot to restore"),
) -> None:
    """Restore the machine from a snapshot."""
    cli_machine_commands.run_operation(ctx, Operation.SNAPSHOT_RESTORE, snapshot_name=name)


@SnapshotTyper.command("delete")
def delete_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Snapshot to delete"),
) -> None:
    """Delete a snapshot."""
    cli_machine_commands.run_operation(ctx, Operation.SNAPSHOT_DELETE, snapshot_name=name)


def register_snapshot_commands(root: typer.Typer, shared_console: Console) -> None:
    """Attach the snapshot command group to the root CLI."""
    global console
    console = shared_console
    root.add_typer(SnapshotTyper, name="snapshot")
