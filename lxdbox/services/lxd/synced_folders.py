"""Sharing host folders with the container as LXD disk devices."""
import os
from typing import Iterable, List

from lxdbox.core.errors import SyncedFolderUnusable
from lxdbox.core.logger import get_logger
from lxdbox.core.messenger import Messenger, NullMessenger
from lxdbox.models.machine import SyncedFolder
from .driver import Driver

logger = get_logger(__name__)


class SyncedFolders:
    """Mounts and unmounts synced folders through the driver."""

    def __init__(self, driver: Driver, messenger: Messenger = None):
        self.driver = driver
        self.messenger = messenger or NullMessenger()

    def usable(self, raise_error: bool = False) -> bool:
        """Check whether folders can be shared with the container.

        Raises:
            SyncedFolderUnusable: If not usable and raise_error is set
        """
        if self.driver.synced_folders_usable():
            return True
        if not raise_error:
            return False
        raise SyncedFolderUnusable(machine_name=self.driver.machine.name, uid=os.getuid())

    def enable(self, folders: Iterable[SyncedFolder]) -> List[SyncedFolder]:
        """Mount every enabled folder that is not already attached.

        Returns:
            The folders that were mounted
        """
        enabled = [folder for folder in folders if not folder.disabled]
        if not enabled:
            return []
        self.usable(raise_error=True)

        pending = [
            folder for folder in enabled
            if not self.driver.mounted(folder.name, folder.guest_path, folder.host_path)
        ]

        if pending:
            self.messenger.info("Mounting shared folders...")
            for folder in pending:
                self.messenger.detail(f"{folder.guest_path} => {folder.host_path}")
                self.driver.mount(folder.name, folder.guest_path, folder.host_path)
        else:
            logger.debug("All shared folders already mounted")

        return pending

    def disable(self, folders: Iterable[SyncedFolder]) -> List[SyncedFolder]:
        """Unmount every enabled folder.

        Returns:
            The folders that were unmounted
        """
        active = [folder for folder in folders if not folder.disabled]
        if active:
            self.usable(raise_error=True)
            self.messenger.info("Unmounting shared folders...")
            for folder in active:
                self.messenger.detail(f"{folder.guest_path} => {folder.host_path}")
                self.driver.unmount(folder.name, folder.guest_path, folder.host_path)

        return active
