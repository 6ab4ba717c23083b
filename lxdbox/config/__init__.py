"""Project configuration."""
from lxdbox.config.loader import MachineDefinition, ProjectConfig, ProjectLoader
from lxdbox.core.errors import ConfigValidationError

__all__ = ['ConfigValidationError', 'MachineDefinition', 'ProjectConfig', 'ProjectLoader']
