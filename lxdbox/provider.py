"""Host-facing entry point for one machine."""
from typing import Dict, List, Optional

from lxdbox.actions.plan import Operation, Step, compose
from lxdbox.actions.runner import HostHooks, PlanResult, PlanRunner
from lxdbox.core.logger import get_logger
from lxdbox.core.messenger import Messenger
from lxdbox.models.machine import CanonicalState, MachineRecord
from lxdbox.services.lxd.driver import Driver

logger = get_logger(__name__)


class Provider:
    """Plans and runs operations for one machine record."""

    def __init__(
        self,
        machine: MachineRecord,
        messenger: Messenger,
        hooks: HostHooks,
        driver: Optional[Driver] = None,
    ):
        self.machine = machine
        self.messenger = messenger
        self.hooks = hooks
        self.driver = driver or Driver(machine, messenger=messenger)

    def action(self, operation: Operation, snapshot_name: Optional[str] = None) -> List[Step]:
        """Return the plan for an operation given the container's current state."""
        return compose(operation, self.driver, snapshot_name=snapshot_name)

    def run(self, operation: Operation, snapshot_name: Optional[str] = None) -> PlanResult:
        """Plan an operation and execute it."""
        steps = self.action(operation, snapshot_name=snapshot_name)
        logger.debug(f"Plan for {operation.value}: {', '.join(str(step) for step in steps)}")
        return PlanRunner(self.driver, self.hooks, self.messenger).run(steps)

    def state(self) -> CanonicalState:
        return self.driver.state()

    def ssh_info(self) -> Optional[Dict[str, object]]:
        return self.driver.info()

    def attach(self, container_id: str) -> None:
        self.driver.validate()
        self.driver.attach(container_id)
        self.messenger.info(f"Machine is now attached to container '{container_id}'.")

    def detach(self) -> None:
        previous = self.machine.id
        self.driver.detach()
        if previous:
            self.messenger.info(f"Machine is no longer attached to container '{previous}'.")
        else:
            self.messenger.info("Machine is not attached to a container.")

    def __str__(self) -> str:
        return "LXD"
