"""Execution of composed plans."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from lxdbox.core.errors import InvalidStateTransition
from lxdbox.core.logger import get_logger
from lxdbox.core.messenger import Messenger
from lxdbox.services.lxd.driver import Driver
from .plan import DriverCall, Hook, Step, StepKind

logger = get_logger(__name__)


class HostHooks(ABC):
    """Collaborators supplied by the host around the driver's transitions."""

    @abstractmethod
    def confirm_destroy(self, question: str) -> bool:
        """Ask the user to confirm a destructive operation."""

    @abstractmethod
    def synced_folders(self, driver: Driver) -> None:
        """Mount the machine's shared folders."""

    @abstractmethod
    def wait_for_communicator(self, driver: Driver) -> None:
        """Block until the guest accepts remote shell connections."""

    @abstractmethod
    def provision(self, driver: Driver) -> None:
        """Run the machine's provisioners."""


DRIVER_METHODS: Dict[DriverCall, Callable[..., Any]] = {
    DriverCall.CREATE: lambda driver: driver.create(),
    DriverCall.RESUME: lambda driver: driver.resume(),
    DriverCall.HALT: lambda driver: driver.halt(),
    DriverCall.SUSPEND: lambda driver: driver.suspend(),
    DriverCall.DESTROY: lambda driver: driver.destroy(),
    DriverCall.SNAPSHOT_LIST: lambda driver: driver.snapshot_list(),
    DriverCall.SNAPSHOT_SAVE: lambda driver, name: driver.snapshot_save(name),
    DriverCall.SNAPSHOT_RESTORE: lambda driver, name: driver.snapshot_restore(name),
    DriverCall.SNAPSHOT_DELETE: lambda driver, name: driver.snapshot_delete(name),
}

HOOK_METHODS: Dict[Hook, Callable[[HostHooks, Driver], None]] = {
    Hook.SYNCED_FOLDERS: lambda hooks, driver: hooks.synced_folders(driver),
    Hook.WAIT_FOR_COMMUNICATOR: lambda hooks, driver: hooks.wait_for_communicator(driver),
    Hook.PROVISION: lambda hooks, driver: hooks.provision(driver),
}


@dataclass
class PlanResult:
    """What happened while running a plan."""
    completed: List[Step] = field(default_factory=list)
    results: Dict[DriverCall, Any] = field(default_factory=dict)
    declined: bool = False


class PlanRunner:
    """Runs plan steps in order against one driver."""

    def __init__(self, driver: Driver, hooks: HostHooks, messenger: Messenger):
        self.driver = driver
        self.hooks = hooks
        self.messenger = messenger

    def run(self, steps: List[Step]) -> PlanResult:
        """Execute steps in order.

        A declined confirmation stops the plan without error.

        Raises:
            InvalidStateTransition: On an error step
            LxdboxError: Whatever a driver call or hook raises
        """
        result = PlanResult()

        for step in steps:
            logger.debug(f"Running step {step}")

            if step.kind is StepKind.VALIDATE:
                self.driver.validate()
            elif step.kind is StepKind.MESSAGE:
                self.messenger.say(step.level, step.text)
            elif step.kind is StepKind.CONFIRM:
                if not self.hooks.confirm_destroy(step.text):
                    self.messenger.info(step.args[0])
                    result.declined = True
                    break
            elif step.kind is StepKind.DRIVER:
                method = DRIVER_METHODS[step.call]
                result.results[step.call] = method(self.driver, *step.args)
            elif step.kind is StepKind.HOOK:
                HOOK_METHODS[step.hook](self.hooks, self.driver)
            elif step.kind is StepKind.ERROR:
                self.messenger.error(step.text)
                raise InvalidStateTransition(step.text)

            result.completed.append(step)

        return result
