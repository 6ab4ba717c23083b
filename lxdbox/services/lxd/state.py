"""Container state probing."""
from lxdbox.core.logger import get_logger
from lxdbox.models.machine import CanonicalState, MachineRecord
from .client import LXDClient, LXDNotFound

logger = get_logger(__name__)


class StateProbe:
    """Derives the canonical state of a machine from a live API query.

    Nothing is cached: the container can change state out of band, and the
    machine id can change between calls (attach/detach).
    """

    def __init__(self, machine: MachineRecord, client: LXDClient):
        self.machine = machine
        self.client = client

    def state(self) -> CanonicalState:
        """Query the container status.

        Returns:
            NOT_CREATED when the machine is unbound or the container is gone,
            otherwise the mapped status

        Raises:
            UnknownContainerState: If LXD reports a status outside the canonical set
            ConnectionFailure: If the API cannot be reached
        """
        machine_id = self.machine.id
        if machine_id is None:
            return CanonicalState.NOT_CREATED

        try:
            container_state = self.client.container_state(machine_id)
        except LXDNotFound:
            logger.debug(f"Container {machine_id} not found, treating machine as not created")
            return CanonicalState.NOT_CREATED

        return CanonicalState.from_status(container_state.get("status"), machine_id=machine_id)
