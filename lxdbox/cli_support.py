"""Shared utilities for lxdbox CLI modules."""
from __future__ import annotations

import os
import socket
import subprocess
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import typer
from rich.console import Console

from lxdbox.actions.runner import HostHooks
from lxdbox.config.loader import ProjectLoader
from lxdbox.core.config import LxdboxSettings, get_settings
from lxdbox.core.errors import OperationTimeout, ProvisionFailure
from lxdbox.core.lock import machine_lock
from lxdbox.core.logger import get_logger
from lxdbox.core.messenger import ConsoleMessenger, Messenger
from lxdbox.core.retry import DeadlineExceeded, poll_until
from lxdbox.core.state_store import MachineIndex
from lxdbox.models.machine import MachineRecord
from lxdbox.provider import Provider
from lxdbox.services.lxd.driver import Driver
from lxdbox.services.lxd.synced_folders import SyncedFolders

logger = get_logger(__name__)

# Default config search paths (ordered by proximity to current run)
CONFIG_PATHS = [
    "./lxdbox.yml",
    "./.lxdbox.yml",
]

SSH_OPTIONS = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=ERROR",
]


@dataclass
class CliOptions:
    """Global options given before the command name."""
    config: Optional[str] = None
    machine: Optional[str] = None
    verbose: bool = False
    log_file: Optional[str] = None


def find_config(config_path: Optional[str] = None) -> str:
    """Locate the active lxdbox project file."""
    if config_path:
        return config_path

    if env_config := os.environ.get("LXDBOX_CONFIG"):
        return env_config

    for path in CONFIG_PATHS:
        if Path(path).exists():
            return path

    return "lxdbox.yml"


def confirm_action(message: str, yes_flag: bool = False) -> bool:
    """Prompt user for confirmation unless --force was given."""
    if yes_flag:
        return True
    return typer.confirm(message)


def handle_cli_error(
    e: Exception,
    console: Console,
    verbose: bool = False,
    exit_code: int = 1
) -> None:
    """Print an error in red and exit.

    Args:
        e: Exception to handle
        console: Rich console for output
        verbose: Show exception traceback if True
        exit_code: Exit code to use
    """
    console.print(f"[red]Error:[/red] {e}")
    if verbose:
        console.print_exception()
    raise typer.Exit(exit_code)


def port_open(host: str, port: int, timeout: float = 1.0) -> bool:
    """Return True when a TCP connection to host:port succeeds."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class CliHooks(HostHooks):
    """Host collaborators backed by the project file and a local ssh client."""

    def __init__(
        self,
        loader: ProjectLoader,
        machine_name: str,
        messenger: Messenger,
        force: bool = False,
        settings: Optional[LxdboxSettings] = None,
        run: Optional[Callable[..., subprocess.CompletedProcess]] = None,
        probe_port: Optional[Callable[[str, int], bool]] = None,
    ):
        self.loader = loader
        self.machine_name = machine_name
        self.messenger = messenger
        self.force = force
        self.settings = settings or get_settings()
        self.run = run or subprocess.run
        self.probe_port = probe_port or port_open

    def confirm_destroy(self, question: str) -> bool:
        return confirm_action(question, yes_flag=self.force)

    def synced_folders(self, driver: Driver) -> None:
        folders = self.loader.synced_folders(self.machine_name)
        SyncedFolders(driver, self.messenger).enable(folders)

    def wait_for_communicator(self, driver: Driver) -> None:
        """Wait until the guest's SSH port accepts connections.

        Raises:
            OperationTimeout: The port stayed closed for communicator_timeout seconds
        """
        info = driver.info()
        if info is None:
            logger.debug(f"{self.machine_name} is not running, not waiting for SSH")
            return

        self.messenger.info("Waiting for machine to boot. This may take a few minutes...")
        self.messenger.detail(f"SSH address: {info['host']}:{info['port']}")
        timeout = self.settings.communicator_timeout
        try:
            poll_until(
                lambda: self.probe_port(info["host"], info["port"]),
                timeout=timeout,
                interval=1.0,
                description="ssh",
            )
        except DeadlineExceeded as e:
            raise OperationTimeout(
                machine_id=driver.machine_id,
                operation="accept SSH connections",
                time_limit=timeout,
            ) from e
        self.messenger.info("Machine booted and ready!")

    def provision(self, driver: Driver) -> None:
        """Run each provision command over ssh, stopping at the first failure.

        Raises:
            ProvisionFailure: A command exited with a non-zero status
        """
        definition = self.loader.definition(self.machine_name)
        if not definition.provision:
            logger.debug(f"No provisioners configured for {self.machine_name}")
            return

        info = driver.info()
        if info is None:
            self.messenger.warn("Machine is not running, skipping provisioners.")
            return

        self.messenger.info("Running provisioner: shell...")
        for command in definition.provision:
            self.messenger.detail(command)
            result = self.run(ssh_command(definition.ssh_user, info, command), check=False)
            if result.returncode != 0:
                raise ProvisionFailure(
                    machine_name=self.machine_name,
                    command=command,
                    exit_code=result.returncode,
                )


def ssh_command(user: str, info: dict, command: Optional[str] = None) -> List[str]:
    """Build an ssh argv for the given connection info."""
    argv = ["ssh", *SSH_OPTIONS, "-p", str(info["port"]), f"{user}@{info['host']}"]
    if command:
        argv.append(command)
    return argv


@dataclass
class MachineSession:
    """Everything a command needs to act on one machine."""
    loader: ProjectLoader
    index: MachineIndex
    machine: MachineRecord
    provider: Provider
    messenger: Messenger
    state_dir: Path


def state_dir_for(loader: ProjectLoader, settings: LxdboxSettings) -> Path:
    """The project's state directory, relative paths taken from the project file."""
    state_dir = Path(settings.state_dir).expanduser()
    if not state_dir.is_absolute():
        state_dir = loader.project_dir / state_dir
    return state_dir


def open_session(
    options: CliOptions,
    console: Console,
    force: bool = False,
    settings: Optional[LxdboxSettings] = None,
) -> MachineSession:
    """Load the project and build the provider for the selected machine."""
    settings = settings or get_settings()
    loader = ProjectLoader(find_config(options.config))
    loader.load()

    machine_name = loader.resolve_name(options.machine)
    state_dir = state_dir_for(loader, settings)
    index = MachineIndex(state_dir)
    machine = loader.machine_record(machine_name, machine_id=index.get_id(machine_name))

    messenger = ConsoleMessenger(machine_name, console=console)
    hooks = CliHooks(loader, machine_name, messenger, force=force, settings=settings)
    driver = Driver(machine, messenger=messenger, settings=settings)
    provider = Provider(machine, messenger, hooks, driver=driver)
    return MachineSession(loader, index, machine, provider, messenger, state_dir)


@contextmanager
def machine_session(
    options: CliOptions,
    console: Console,
    force: bool = False,
    lock: bool = True,
) -> Iterator[MachineSession]:
    """Open a session, hold the machine lock, and persist id changes on exit.

    The machine id is written back even when the command fails, so a
    container created before a later step failed stays bound.
    """
    session = open_session(options, console, force=force)
    original_id = session.machine.id

    def persist():
        if session.machine.id != original_id:
            logger.debug(f"Machine {session.machine.name} id changed: {original_id} -> {session.machine.id}")
            session.index.set_id(session.machine.name, session.machine.id)

    guard = machine_lock(session.machine.name, session.state_dir) if lock else nullcontext()
    with guard:
        try:
            yield session
        finally:
            persist()
