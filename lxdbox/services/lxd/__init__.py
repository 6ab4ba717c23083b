"""LXD container management.

This package separates the concerns of managing one LXD container:
- LXDClient: REST transport and asynchronous operations
- ImagePreparer: Box conversion and image caching
- StateProbe: Canonical state of the bound container
- Driver: Idempotent lifecycle transitions
- SyncedFolders: Shared host folders as disk devices
"""
from .client import LXDClient, RemoteOperation
from .driver import Driver
from .image import ImagePreparer, PreparedImage
from .state import StateProbe
from .synced_folders import SyncedFolders

__all__ = [
    'Driver',
    'ImagePreparer',
    'LXDClient',
    'PreparedImage',
    'RemoteOperation',
    'StateProbe',
    'SyncedFolders',
]
