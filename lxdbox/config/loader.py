"""YAML project file loader."""
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from lxdbox.core.errors import ConfigValidationError
from lxdbox.core.logger import get_logger
from lxdbox.models.config import ProviderConfig, format_validation_error
from lxdbox.models.machine import MachineRecord, SyncedFolder

logger = get_logger(__name__)

DEFAULT_MACHINE = "default"


class SyncedFolderDefinition(BaseModel):
    """One `synced_folders` entry of a machine."""

    model_config = ConfigDict(extra="forbid")

    name: str
    guest: str
    host: str = "."
    disabled: bool = False

    @field_validator("guest")
    @classmethod
    def validate_guest(cls, v):
        if not v.startswith("/"):
            raise ValueError(f"guest path must be absolute: {v!r}")
        return v


class MachineDefinition(BaseModel):
    """A machine as declared in the project file."""

    model_config = ConfigDict(extra="forbid")

    box: Optional[str] = None
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    synced_folders: List[SyncedFolderDefinition] = Field(default_factory=list)
    ssh_user: str = "root"
    provision: List[str] = Field(default_factory=list)

    @field_validator("synced_folders")
    @classmethod
    def validate_unique_folders(cls, v):
        names = [folder.name for folder in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate synced folder names: {', '.join(duplicates)}")
        return v


class ProjectConfig(BaseModel):
    """Top-level project file."""

    model_config = ConfigDict(extra="forbid")

    machines: Dict[str, MachineDefinition]

    @field_validator("machines")
    @classmethod
    def validate_machines(cls, v):
        if not v:
            raise ValueError("at least one machine must be defined")
        return v


class ProjectLoader:
    """Loads and validates an lxdbox project file."""

    def __init__(self, config_path: str = "lxdbox.yml"):
        self.config_path = Path(config_path)
        self.raw_config: Optional[Dict[str, Any]] = None
        self.project: Optional[ProjectConfig] = None

    @property
    def project_dir(self) -> Path:
        return self.config_path.resolve().parent

    def load(self) -> ProjectConfig:
        """Load YAML configuration from file.

        Raises:
            FileNotFoundError: If the project file does not exist
            ConfigValidationError: If the file is empty or invalid
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path) as f:
            try:
                self.raw_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigValidationError(f"Invalid YAML in {self.config_path}: {e}") from e

        if not self.raw_config:
            raise ConfigValidationError(f"Config file is empty: {self.config_path}")
        if not isinstance(self.raw_config, dict):
            raise ConfigValidationError(f"Config file must contain a mapping: {self.config_path}")

        try:
            self.project = ProjectConfig(**self.raw_config)
        except ValidationError as e:
            raise ConfigValidationError(format_validation_error(e)) from e

        logger.debug(f"Loaded {len(self.project.machines)} machine(s) from {self.config_path}")
        return self.project

    def machine_names(self) -> List[str]:
        return list(self._project().machines)

    def definition(self, machine_name: Optional[str] = None) -> MachineDefinition:
        """Return a machine definition, picking the only/default one when unnamed."""
        machines = self._project().machines
        if machine_name is None:
            if len(machines) == 1:
                return next(iter(machines.values()))
            machine_name = DEFAULT_MACHINE

        if machine_name not in machines:
            available = ", ".join(sorted(machines))
            raise ConfigValidationError(
                f"Machine '{machine_name}' is not defined in {self.config_path} "
                f"(available: {available})"
            )
        return machines[machine_name]

    def resolve_name(self, machine_name: Optional[str] = None) -> str:
        machines = self._project().machines
        if machine_name is None and len(machines) == 1:
            return next(iter(machines))
        return machine_name or DEFAULT_MACHINE

    def machine_record(self, machine_name: Optional[str] = None,
                       machine_id: Optional[str] = None) -> MachineRecord:
        """Build the record the driver operates on."""
        name = self.resolve_name(machine_name)
        definition = self.definition(name)
        box_directory = self._resolve_path(definition.box) if definition.box else None
        return MachineRecord(
            name=name,
            provider_config=definition.provider,
            id=machine_id,
            box_directory=box_directory,
        )

    def synced_folders(self, machine_name: Optional[str] = None) -> List[SyncedFolder]:
        """Synced folders with host paths resolved against the project directory."""
        definition = self.definition(self.resolve_name(machine_name))
        return [
            SyncedFolder(
                name=folder.name,
                guest_path=folder.guest,
                host_path=str(self._resolve_path(folder.host)),
                disabled=folder.disabled,
            )
            for folder in definition.synced_folders
        ]

    def _resolve_path(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.project_dir / path
        return path.resolve()

    def _project(self) -> ProjectConfig:
        if self.project is None:
            self.load()
        return self.project
