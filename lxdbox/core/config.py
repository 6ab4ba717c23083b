"""lxdbox runtime configuration and settings."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _lxc_config_dir() -> Path:
    return Path(os.path.expanduser("~")) / ".config" / "lxc"


@dataclass
class LxdboxSettings:
    """Runtime settings for lxdbox operations.

    Attributes:
        client_cert: Client certificate presented to the LXD API
        client_key: Private key matching client_cert
        address_poll_interval: Seconds between network address lookups (default: 1)
        communicator_timeout: Seconds to wait for the guest SSH port (default: 300)
        subid_dir: Directory holding the subuid/subgid files (default: /etc)
        state_dir: Project-local directory for machine state (default: .lxdbox)
        machine_id_prefix: Prefix for generated container names (default: lxdbox)
        guest_uid: Guest user id that host files are mapped to (default: 1000)
    """

    client_cert: Path = field(default_factory=lambda: _lxc_config_dir() / "client.crt")
    client_key: Path = field(default_factory=lambda: _lxc_config_dir() / "client.key")
    address_poll_interval: float = 1.0
    communicator_timeout: int = 300
    subid_dir: Path = Path("/etc")
    state_dir: Path = Path(".lxdbox")
    machine_id_prefix: str = "lxdbox"
    guest_uid: int = 1000

    @classmethod
    def from_env(cls) -> "LxdboxSettings":
        """Create settings from environment variables.

        Environment variables:
            LXDBOX_CLIENT_CERT: Path to the client certificate
            LXDBOX_CLIENT_KEY: Path to the client key
            LXDBOX_ADDRESS_POLL_INTERVAL: Seconds between address lookups
            LXDBOX_COMMUNICATOR_TIMEOUT: Seconds to wait for SSH
            LXDBOX_SUBID_DIR: Directory holding subuid/subgid
            LXDBOX_STATE_DIR: Project-local state directory

        Returns:
            LxdboxSettings instance with values from environment or defaults
        """
        defaults = cls()
        return cls(
            client_cert=Path(os.getenv("LXDBOX_CLIENT_CERT", defaults.client_cert)),
            client_key=Path(os.getenv("LXDBOX_CLIENT_KEY", defaults.client_key)),
            address_poll_interval=float(
                os.getenv("LXDBOX_ADDRESS_POLL_INTERVAL", defaults.address_poll_interval)
            ),
            communicator_timeout=int(
                os.getenv("LXDBOX_COMMUNICATOR_TIMEOUT", defaults.communicator_timeout)
            ),
            subid_dir=Path(os.getenv("LXDBOX_SUBID_DIR", defaults.subid_dir)),
            state_dir=Path(os.getenv("LXDBOX_STATE_DIR", defaults.state_dir)),
        )


_settings: Optional[LxdboxSettings] = None


def get_settings() -> LxdboxSettings:
    """Get the global lxdbox settings.

    Returns:
        LxdboxSettings instance (creates from environment if not set)
    """
    global _settings
    if _settings is None:
        _settings = LxdboxSettings.from_env()
    return _settings


def set_settings(settings: Optional[LxdboxSettings]):
    """Set the global lxdbox settings.

    Args:
        settings: LxdboxSettings instance to use globally, or None to reload
            from the environment on next access
    """
    global _settings
    _settings = settings
