"""Data models for lxdbox."""
from .config import ProviderConfig, build_provider_config
from .machine import CanonicalState, MachineRecord, SyncedFolder

__all__ = [
    'CanonicalState',
    'MachineRecord',
    'ProviderConfig',
    'SyncedFolder',
    'build_provider_config',
]
