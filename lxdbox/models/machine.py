"""Machine record and lifecycle state models."""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from lxdbox.core.errors import UnknownContainerState
from lxdbox.models.config import ProviderConfig


class CanonicalState(Enum):
    """Lifecycle classification of the container backing a machine."""

    NOT_CREATED = "not_created"
    STOPPED = "stopped"
    RUNNING = "running"
    FROZEN = "frozen"

    @classmethod
    def from_status(cls, status: str, machine_id: Optional[str] = None) -> "CanonicalState":
        """Map a raw LXD status string (e.g. "Running") to a canonical state.

        Raises:
            UnknownContainerState: For any status other than stopped, running, frozen
        """
        normalized = (status or "").strip().lower()
        if normalized in ("stopped", "running", "frozen"):
            return cls(normalized)
        raise UnknownContainerState(machine_id=machine_id, status=status)

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


@dataclass
class MachineRecord:
    """The logical machine managed by lxdbox.

    `id` is the bound remote container name; None means not yet created or
    attached. The host owns the record; the driver re-reads `id` on every call.
    """
    name: str
    provider_config: ProviderConfig = field(default_factory=ProviderConfig)
    id: Optional[str] = None
    box_directory: Optional[Path] = None


@dataclass
class SyncedFolder:
    """A host directory shared into the container as a disk device."""
    name: str
    guest_path: str
    host_path: str
    disabled: bool = False
