"""Lifecycle driver for the LXD container backing one machine.

Every verb is idempotent relative to the container's current state: when the
target state already holds, the call returns without touching the API.
"""
import os
import re
import secrets
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from lxdbox.core.config import LxdboxSettings, get_settings
from lxdbox.core.errors import (
    AuthenticationFailure,
    ConnectionFailure,
    ContainerAlreadyExists,
    ContainerCreationFailure,
    ContainerNotFound,
    DuplicateAttachmentFailure,
    ImageCreationFailure,
    NetworkAddressAcquisitionTimeout,
    OperationTimeout,
    RemoteOperationFailure,
    SnapshotNotFound,
)
from lxdbox.core.logger import get_logger
from lxdbox.core.messenger import Messenger, NullMessenger
from lxdbox.core.retry import DeadlineExceeded, poll_until
from lxdbox.models.machine import CanonicalState, MachineRecord
from .client import (
    LXDBadRequest,
    LXDClient,
    LXDConflict,
    LXDError,
    LXDForbidden,
    LXDNotFound,
    LXDTimeout,
)
from .image import ImagePreparer
from .state import StateProbe

logger = get_logger(__name__)

SSH_PORT = 22
PRIMARY_INTERFACE = "eth0"
DEFAULT_BRIDGE = "lxdbr0"
MAX_ID_LENGTH = 63

# Errors LXD uses to signal that a state change ran out of time
REMOTE_TIMEOUTS = (LXDBadRequest, LXDTimeout)


class Driver:
    """Executes lifecycle transitions for one machine."""

    def __init__(
        self,
        machine: MachineRecord,
        messenger: Optional[Messenger] = None,
        client: Optional[LXDClient] = None,
        settings: Optional[LxdboxSettings] = None,
        image_preparer: Optional[ImagePreparer] = None,
    ):
        """Initialize the driver.

        Args:
            machine: Machine record; only its `id` is ever written
            messenger: Output for user-facing warnings and progress
            client: LXD client (built from the provider config if omitted)
            settings: Runtime settings (global settings if omitted)
            image_preparer: Image preparer (built with the messenger if omitted)
        """
        self.machine = machine
        self.messenger = messenger or NullMessenger()
        self.settings = settings or get_settings()

        provider_config = machine.provider_config
        self.timeout = provider_config.timeout
        self.api_endpoint = provider_config.api_endpoint

        self.client = client or LXDClient(
            self.api_endpoint,
            timeout=self.timeout,
            client_cert=self.settings.client_cert,
            client_key=self.settings.client_key,
        )
        self.probe = StateProbe(machine, self.client)
        self.images = image_preparer or ImagePreparer(messenger=self.messenger)

    @property
    def machine_id(self) -> Optional[str]:
        return self.machine.id

    # ------------------------------------------------------------------
    # Probing and validation
    # ------------------------------------------------------------------

    @contextmanager
    def _remote_errors(self, operation: str) -> Iterator[None]:
        """Report API errors a verb does not handle itself as RemoteOperationFailure."""
        try:
            yield
        except LXDError as e:
            raise RemoteOperationFailure(
                machine_name=self.machine.name,
                machine_id=self.machine_id,
                api_endpoint=self.api_endpoint,
                operation=operation,
                reason=str(e),
            ) from e

    def state(self) -> CanonicalState:
        with self._remote_errors("inspect"):
            return self.probe.state()

    def _in_state(self, *states: CanonicalState) -> bool:
        return self.state() in states

    def validate(self) -> None:
        """Check that the API is reachable and accepts our certificate.

        Raises:
            ConnectionFailure: The endpoint cannot be reached
            AuthenticationFailure: The endpoint rejects the client certificate
        """
        if not self.connection_usable():
            raise self._usability_error(ConnectionFailure)
        if not self.authentication_usable():
            raise self._usability_error(AuthenticationFailure)

    def connection_usable(self) -> bool:
        try:
            self.client.images()
        except ConnectionFailure:
            return False
        return True

    def authentication_usable(self) -> bool:
        try:
            self.client.containers()
        except LXDForbidden:
            return False
        return True

    def _usability_error(self, error_class):
        return error_class(
            machine_name=self.machine.name,
            api_endpoint=self.api_endpoint,
            https_address=self.machine.provider_config.api_host,
            client_cert=str(self.settings.client_cert),
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self) -> Optional[str]:
        """Create the container if the machine is not created yet.

        The machine id is bound only after the container exists. Anything
        created by a failed attempt is deleted again (best effort).

        Returns:
            The bound machine id

        Raises:
            ImageCreationFailure: The box could not be converted
            ContainerAlreadyExists: The chosen name is taken on the server
            ContainerCreationFailure: Any other API failure
        """
        if not self._in_state(CanonicalState.NOT_CREATED):
            logger.debug(f"Skipped container create ({self.machine_id} already exists)")
            return self.machine_id

        machine_id = self.generate_machine_id()
        cleanup: List[Tuple[str, Callable[[], None]]] = []
        name_taken = False

        try:
            fingerprint = self._ensure_image(machine_id, cleanup)

            # Registered up front: LXD may have made the record even if the call fails
            cleanup.append((f"container {machine_id}", lambda: self.client.delete_container(machine_id)))
            try:
                self.client.create_container(
                    machine_id,
                    fingerprint=fingerprint,
                    ephemeral=self.machine.provider_config.ephemeral,
                    profiles=self.machine.provider_config.profiles,
                    config=self.container_config(),
                    devices=self.machine.provider_config.devices,
                )
            except LXDError as e:
                if isinstance(e, LXDConflict) or "already exists" in str(e).lower():
                    # The existing container is not ours to delete
                    cleanup.pop()
                    name_taken = True
                raise
            logger.debug(f"Created container: {machine_id}")
        except ImageCreationFailure:
            self._rollback(cleanup)
            raise
        except (LXDError, ConnectionFailure) as e:
            self._rollback(cleanup)
            self.messenger.error("Failed to create container")
            if name_taken:
                raise ContainerAlreadyExists(
                    machine_name=self.machine.name,
                    machine_id=machine_id,
                    reason=str(e),
                ) from e
            raise ContainerCreationFailure(
                machine_name=self.machine.name,
                machine_id=machine_id,
                api_endpoint=self.api_endpoint,
                reason=str(e),
            ) from e

        self.machine.id = machine_id
        return machine_id

    def _ensure_image(self, machine_id: str, cleanup: List[Tuple[str, Callable[[], None]]]) -> str:
        """Return the fingerprint of an image for the box, importing it if needed."""
        if self.machine.box_directory is None:
            raise ImageCreationFailure(
                machine_name=self.machine.name,
                error_message="no box directory is configured for this machine",
            )

        prepared = self.images.prepare_box(self.machine.box_directory, machine_name=self.machine.name)

        if self.client.image_exists(prepared.fingerprint):
            logger.debug(f"Reusing image {prepared.fingerprint}")
            return prepared.fingerprint

        cleanup.append((f"image {prepared.fingerprint}", lambda: self.client.delete_image(prepared.fingerprint)))
        fingerprint = self.client.create_image_from_file(prepared.path)
        if fingerprint != prepared.fingerprint:
            cleanup[-1] = (f"image {fingerprint}", lambda: self.client.delete_image(fingerprint))
        logger.debug(f"Created image: {fingerprint}")

        self.client.create_image_alias(fingerprint, machine_id)
        logger.debug(f"Created image alias: {machine_id}")
        return fingerprint

    def _rollback(self, cleanup: List[Tuple[str, Callable[[], None]]]) -> None:
        """Undo partially created resources, newest first; failures are logged only."""
        for description, undo in reversed(cleanup):
            try:
                undo()
                logger.debug(f"Rolled back {description}")
            except LXDNotFound:
                logger.debug(f"Nothing to roll back for {description}")
            except (LXDError, ConnectionFailure) as e:
                logger.warning(f"Failed to roll back {description}: {e}")
        cleanup.clear()

    def generate_machine_id(self) -> str:
        """Return the configured container name, or generate a unique one."""
        if self.machine.provider_config.name:
            return self.machine.provider_config.name

        raw = "-".join([
            self.settings.machine_id_prefix,
            Path.cwd().name,
            self.machine.name,
            secrets.token_hex(8),
        ])
        return re.sub(r"[^a-zA-Z0-9]", "-", raw[:MAX_ID_LENGTH])

    def container_config(self) -> Dict[str, str]:
        """Build the LXD config map for a new container."""
        provider_config = self.machine.provider_config
        config = dict(provider_config.config)

        if provider_config.nesting is not None:
            config["security.nesting"] = "true" if provider_config.nesting else "false"
        if provider_config.privileged is not None:
            config["security.privileged"] = "true" if provider_config.privileged else "false"

        for key, value in provider_config.environment.items():
            config[f"environment.{key}"] = value

        if "raw.idmap" not in config:
            idmap = self.raw_idmap()
            if idmap:
                config["raw.idmap"] = idmap

        logger.debug(f"Resulting configuration: {config}")
        return config

    def raw_idmap(self) -> str:
        """Map the host uid/gid to the guest user when root may delegate them.

        This is what lets synced folders be shared as disk devices.
        """
        lines = []
        ids = {"uid": os.getuid(), "gid": os.getgid()}
        try:
            for kind, value in ids.items():
                subid_file = self.settings.subid_dir / f"sub{kind}"
                with open(subid_file) as f:
                    pattern = re.compile(rf"^root:{value}:[1-9]")
                    if any(pattern.match(line) for line in f):
                        lines.append(f"{kind} {value} {self.settings.guest_uid}")
        except OSError as e:
            logger.warning(f"Cannot read subordinate permissions file: {e}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def resume(self) -> None:
        """Start a stopped container or unfreeze a frozen one."""
        state = self.state()
        with self._remote_errors("start"):
            try:
                if state is CanonicalState.STOPPED:
                    self.client.start_container(self.machine_id, timeout=self.timeout)
                elif state is CanonicalState.FROZEN:
                    self.client.unfreeze_container(self.machine_id, timeout=self.timeout)
                else:
                    logger.debug(f"Skipped container resume ({self.machine_id} is {state.label})")
            except REMOTE_TIMEOUTS as e:
                self.messenger.warn(f"Container failed to start within {self.timeout} seconds")
                raise OperationTimeout(
                    time_limit=self.timeout,
                    operation="start",
                    machine_id=self.machine_id,
                    reason=str(e),
                ) from e

    def halt(self, force: bool = False) -> None:
        """Stop a running or frozen container.

        A graceful stop that times out is retried once with force; a forced
        stop that times out is fatal.
        """
        if not self._in_state(CanonicalState.RUNNING, CanonicalState.FROZEN):
            logger.debug(f"Skipped container halt ({self.machine_id} is not running)")
            return

        with self._remote_errors("stop"):
            try:
                self.client.stop_container(self.machine_id, timeout=self.timeout, force=force)
                return
            except REMOTE_TIMEOUTS as e:
                if force:
                    raise self._stop_timeout(e) from e
                self.messenger.warn(
                    f"Container failed to stop within {self.timeout} seconds, forcing shutdown..."
                )

            try:
                self.client.stop_container(self.machine_id, timeout=self.timeout, force=True)
            except REMOTE_TIMEOUTS as e:
                raise self._stop_timeout(e) from e

    def _stop_timeout(self, error: Exception) -> OperationTimeout:
        self.messenger.error(f"Container failed to stop within {self.timeout} seconds")
        return OperationTimeout(
            time_limit=self.timeout,
            operation="stop",
            machine_id=self.machine_id,
            reason=str(error),
        )

    def suspend(self) -> None:
        """Freeze a running container."""
        if not self._in_state(CanonicalState.RUNNING):
            logger.debug(f"Skipped container suspend ({self.machine_id} is not running)")
            return

        with self._remote_errors("suspend"):
            try:
                self.client.freeze_container(self.machine_id, timeout=self.timeout)
            except REMOTE_TIMEOUTS as e:
                self.messenger.warn(f"Container failed to suspend within {self.timeout} seconds")
                raise OperationTimeout(
                    time_limit=self.timeout,
                    operation="suspend",
                    machine_id=self.machine_id,
                    reason=str(e),
                ) from e

    def destroy(self) -> None:
        """Delete a stopped container and the image it was created from.

        A container that is not stopped is left alone; halting first is the
        caller's job.
        """
        if not self._in_state(CanonicalState.STOPPED):
            logger.debug(f"Skipped container destroy ({self.machine_id} is not stopped)")
            return

        with self._remote_errors("destroy"):
            self._delete_image()
            self._delete_container()
        self.machine.id = None

    def _delete_image(self) -> None:
        try:
            base_image = (self.client.container(self.machine_id).get("config") or {}).get("volatile.base_image")
        except LXDNotFound:
            base_image = None

        if not base_image:
            logger.warning(f"Image for '{self.machine_id}' not found, unable to destroy")
            return

        try:
            self.client.delete_image(base_image)
        except LXDNotFound:
            logger.warning(f"Image for '{self.machine_id}' not found, unable to destroy")
        except (LXDBadRequest, LXDConflict) as e:
            logger.warning(f"Image for '{self.machine_id}' is in use, unable to destroy: {e}")

    def _delete_container(self) -> None:
        try:
            self.client.delete_container(self.machine_id)
        except LXDNotFound:
            logger.warning(f"Container '{self.machine_id}' not found, unable to destroy")

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    def attach(self, container_id: str) -> None:
        """Bind the machine to an existing container.

        Raises:
            ContainerNotFound: The container does not exist
            DuplicateAttachmentFailure: The machine is already bound
        """
        with self._remote_errors("attach to"):
            try:
                self.client.container(container_id)
            except LXDNotFound as e:
                raise ContainerNotFound(
                    machine_name=self.machine.name,
                    container_id=container_id,
                    api_endpoint=self.api_endpoint,
                ) from e

        if not self._in_state(CanonicalState.NOT_CREATED):
            raise DuplicateAttachmentFailure(
                machine_name=self.machine.name,
                machine_id=self.machine_id,
                container_id=container_id,
            )

        self.machine.id = container_id

    def detach(self) -> None:
        """Forget the bound container without touching it."""
        self.machine.id = None

    # ------------------------------------------------------------------
    # Shared folders
    # ------------------------------------------------------------------

    def synced_folders_usable(self) -> bool:
        """Check whether a raw.idmap for the current user exists on the container."""
        with self._remote_errors("inspect"):
            try:
                idmap = (self.client.container(self.machine_id).get("config") or {}).get("raw.idmap")
            except (LXDNotFound, ConnectionFailure):
                return False
        if not idmap:
            return False
        pattern = rf"^uid {os.getuid()} {self.settings.guest_uid}$"
        return re.search(pattern, idmap, re.MULTILINE) is not None

    def mounted(self, name: str, guest_path: str, host_path: str) -> bool:
        device = self._devices().get(name) or {}
        return (
            device.get("type") == "disk"
            and device.get("path") == guest_path
            and device.get("source") == host_path
        )

    def mount(self, name: str, guest_path: str, host_path: str) -> None:
        """Add (or replace) a disk device sharing host_path at guest_path."""
        with self._remote_errors("mount a folder into"):
            container = self.client.container(self.machine_id)
            devices = dict(container.get("devices") or {})
            desired = {"type": "disk", "path": guest_path, "source": host_path}
            if devices.get(name) == desired:
                logger.debug(f"Device {name} already mounted on {self.machine_id}")
                return
            devices[name] = desired
            container["devices"] = devices
            self.client.update_container(self.machine_id, container)

    def unmount(self, name: str, guest_path: str = None, host_path: str = None) -> None:
        """Remove the disk device keyed by name, if present."""
        with self._remote_errors("unmount a folder from"):
            container = self.client.container(self.machine_id)
            devices = dict(container.get("devices") or {})
            if name not in devices:
                logger.debug(f"Device {name} not present on {self.machine_id}")
                return
            del devices[name]
            container["devices"] = devices
            self.client.update_container(self.machine_id, container)

    def _devices(self) -> Dict[str, Dict[str, str]]:
        with self._remote_errors("inspect"):
            return self.client.container(self.machine_id).get("devices") or {}

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot_list(self) -> List[str]:
        if self.machine_id is None:
            return []
        with self._remote_errors("list snapshots of"):
            return self.client.snapshots(self.machine_id)

    def snapshot_save(self, name: str) -> None:
        """Create a snapshot, replacing any existing one with the same name."""
        with self._remote_errors("snapshot"):
            try:
                self.client.delete_snapshot(self.machine_id, name)
            except LXDNotFound:
                pass
            self.client.create_snapshot(self.machine_id, name)

    def snapshot_restore(self, name: str) -> None:
        """Restore a snapshot and wait for the restore to finish.

        Raises:
            SnapshotNotFound: The snapshot does not exist
            OperationTimeout: The restore did not finish within the timeout
        """
        with self._remote_errors("restore a snapshot of"):
            try:
                operation = self.client.restore_snapshot(self.machine_id, name)
                self.client.wait_for_operation(operation, timeout=self.timeout)
            except (LXDBadRequest, LXDNotFound) as e:
                raise SnapshotNotFound(
                    machine_name=self.machine.name,
                    machine_id=self.machine_id,
                    snapshot_name=name,
                    reason=str(e),
                ) from e
            except LXDTimeout as e:
                self.messenger.warn(f"Snapshot restore did not finish within {self.timeout} seconds")
                raise OperationTimeout(
                    time_limit=self.timeout,
                    operation="restore snapshot",
                    machine_id=self.machine_id,
                    snapshot_name=name,
                    reason=str(e),
                ) from e

    def snapshot_delete(self, name: str) -> None:
        with self._remote_errors("delete a snapshot of"):
            try:
                self.client.delete_snapshot(self.machine_id, name)
            except LXDNotFound:
                logger.debug(f"Snapshot {name} of {self.machine_id} already absent")

    # ------------------------------------------------------------------
    # Connection info
    # ------------------------------------------------------------------

    def info(self) -> Optional[Dict[str, object]]:
        """Return SSH connection info for a running or frozen container."""
        if not self._in_state(CanonicalState.RUNNING, CanonicalState.FROZEN):
            return None
        return {"host": self.ipv4_address(), "port": SSH_PORT}

    def ipv4_address(self) -> str:
        """Poll the container's primary interface until it has an IPv4 address.

        Raises:
            NetworkAddressAcquisitionTimeout: No address within the timeout
        """
        logger.debug(f"Looking up ipv4 address for {self.machine_id}...")
        try:
            with self._remote_errors("query the address of"):
                return poll_until(
                    self._find_ipv4_address,
                    timeout=self.timeout,
                    interval=self.settings.address_poll_interval,
                    description="ipv4 address",
                )
        except DeadlineExceeded as e:
            logger.warning(f"Failed to find ipv4 address for {self.machine_id} within {self.timeout} seconds!")
            raise NetworkAddressAcquisitionTimeout(
                time_limit=self.timeout,
                operation="acquire a network address",
                machine_id=self.machine_id,
                lxd_bridge=DEFAULT_BRIDGE,
            ) from e

    def _find_ipv4_address(self) -> Optional[str]:
        container_state = self.client.container_state(self.machine_id)
        network = container_state.get("network") or {}
        interface = network.get(PRIMARY_INTERFACE) or {}
        for address in interface.get("addresses") or []:
            if address.get("family") == "inet":
                return address.get("address")
        return None
