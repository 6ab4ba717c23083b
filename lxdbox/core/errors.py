"""Error kinds raised by the lxdbox core.

Every error keeps the values it was built from in ``context`` so that a
caller can render its own message; ``str(error)`` is already a complete,
user-facing sentence.
"""
from typing import Any, Dict


class LxdboxError(RuntimeError):
    """Base error for domain-level lxdbox failures."""

    template = "lxdbox operation failed"

    def __init__(self, message: str = None, **context: Any):
        self.context: Dict[str, Any] = context
        if message is None:
            try:
                message = self.template.format(**context)
            except (KeyError, IndexError):
                message = self.template
        super().__init__(message)

    def __getattr__(self, name: str) -> Any:
        context = self.__dict__.get("context", {})
        if name in context:
            return context[name]
        raise AttributeError(name)


class ProviderNotUsable(LxdboxError):
    """The remote API cannot be used from this host."""


class ConnectionFailure(ProviderNotUsable):
    """Raised when the LXD API cannot be reached."""

    template = (
        "The LXD API at {api_endpoint} could not be reached. Make sure LXD is "
        "listening on that address and that the client certificate at "
        "{client_cert} exists."
    )


class AuthenticationFailure(ProviderNotUsable):
    """Raised when the LXD API rejects the client certificate."""

    template = (
        "The LXD API at {api_endpoint} refused the client certificate at "
        "{client_cert}. Add it to the server's trust store, e.g. "
        "`lxc config trust add {client_cert}` on {https_address}."
    )


class ContainerCreationFailure(LxdboxError):
    """Raised when a container could not be created."""

    template = "Failed to create a container for machine '{machine_name}': {reason}"


class ImageCreationFailure(ContainerCreationFailure):
    """Raised when the source root filesystem could not be prepared for import."""

    template = "Failed to create an LXD image for machine '{machine_name}': {error_message}"


class ContainerAlreadyExists(ContainerCreationFailure):
    """Raised when the container name is already taken on the remote side."""

    template = (
        "A container named '{machine_id}' already exists. Choose a different "
        "`name` for machine '{machine_name}' or attach to the existing container."
    )


class OperationTimeout(LxdboxError):
    """Raised when a remote operation does not finish within the time limit."""

    template = (
        "Container '{machine_id}' failed to {operation} within {time_limit} seconds."
    )


class NetworkAddressAcquisitionTimeout(OperationTimeout):
    """Raised when the container never reports an IPv4 address."""

    template = (
        "Container '{machine_id}' did not acquire an IPv4 address within "
        "{time_limit} seconds. Check that the {lxd_bridge} bridge provides DHCP."
    )


class ContainerNotFound(LxdboxError):
    """Raised when a named remote container does not exist."""

    template = "Container '{container_id}' was not found at {api_endpoint}."


class DuplicateAttachmentFailure(LxdboxError):
    """Raised when attaching a machine that is already bound to a container."""

    template = (
        "Machine '{machine_name}' is already attached to container "
        "'{machine_id}'. Detach it first."
    )


class SnapshotNotFound(LxdboxError):
    """Raised when restoring a snapshot that does not exist."""

    template = "Snapshot '{snapshot_name}' not found for container '{machine_id}'."


class UnknownContainerState(LxdboxError):
    """Raised when the remote reports a status outside the canonical states."""

    template = "Container '{machine_id}' reported an unrecognised status: {status}"


class InvalidStateTransition(LxdboxError):
    """Raised when an operation is requested in a state that does not allow it."""


class ConfigValidationError(LxdboxError):
    """Raised when provider or project configuration is invalid."""


class SyncedFolderUnusable(LxdboxError):
    """Raised when folders cannot be shared with the container."""

    template = (
        "Folders cannot be shared with machine '{machine_name}': no raw.idmap "
        "for uid {uid} is configured on the container. Delegate the uid to "
        "root in /etc/subuid and /etc/subgid, then recreate the machine."
    )


class ProvisionFailure(LxdboxError):
    """Raised when a provisioning command exits with a non-zero status."""

    template = (
        "Provisioning machine '{machine_name}' failed: `{command}' exited "
        "with status {exit_code}."
    )


class RemoteOperationFailure(LxdboxError):
    """Raised when the LXD API rejects a lifecycle call for another reason."""

    template = (
        "Failed to {operation} container '{machine_id}' of machine "
        "'{machine_name}' at {api_endpoint}: {reason}"
    )
