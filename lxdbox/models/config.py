"""Provider configuration for a single LXD-backed machine."""
import re
from typing import Dict, List, Optional, Union
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    ValidationError,
    field_validator,
)

from lxdbox.core.errors import ConfigValidationError

DEFAULT_API_ENDPOINT = "https://127.0.0.1:8443"
DEFAULT_TIMEOUT = 10
MAX_NAME_LENGTH = 63

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")
CONFIG_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")

ConfigValue = Union[StrictBool, StrictInt, float, str]


class ProviderConfig(BaseModel):
    """Settings for the container backing one machine.

    Every field has a concrete default, so a constructed instance is always
    finalized.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    api_endpoint: str = Field(DEFAULT_API_ENDPOINT, description="HTTPS address of the LXD API")
    timeout: StrictInt = Field(DEFAULT_TIMEOUT, description="Seconds allowed for each remote operation")
    name: Optional[str] = Field(None, description="Explicit container name")
    ephemeral: StrictBool = False
    nesting: Optional[StrictBool] = None
    privileged: Optional[StrictBool] = None
    profiles: List[str] = Field(default_factory=lambda: ["default"])
    config: Dict[str, ConfigValue] = Field(default_factory=dict)
    devices: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    environment: Dict[str, str] = Field(default_factory=dict)

    @field_validator("api_endpoint")
    @classmethod
    def validate_api_endpoint(cls, v):
        """API endpoint must be an HTTPS URL with a host."""
        parsed = urlparse(v)
        if parsed.scheme != "https" or not parsed.hostname:
            raise ValueError(f"value must be a valid HTTPS address: {v!r}")
        return v.rstrip("/")

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v):
        if v < 1:
            raise ValueError(f"value must be positive: {v!r}")
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        """Container names are limited to 63 letters, numbers, and hyphens."""
        if v is None:
            return v
        if len(v) > MAX_NAME_LENGTH:
            raise ValueError(f"value must be less than 64 characters: {v!r}")
        if not NAME_PATTERN.match(v):
            raise ValueError(f"value must contain only letters, numbers, and hyphens: {v!r}")
        return v

    @field_validator("profiles")
    @classmethod
    def validate_profiles(cls, v):
        for profile in v:
            if not profile:
                raise ValueError("profile names must not be empty")
        return v

    @field_validator("config")
    @classmethod
    def validate_config(cls, v):
        """Config keys must be identifier-like; values become LXD strings."""
        normalized = {}
        for key, value in v.items():
            if not CONFIG_KEY_PATTERN.match(key):
                raise ValueError(f"invalid config key: {key!r}")
            if isinstance(value, bool):
                normalized[key] = "true" if value else "false"
            else:
                normalized[key] = str(value)
        return normalized

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        for key in v:
            if not key:
                raise ValueError("environment variable names must not be empty")
        return v

    @property
    def api_host(self) -> str:
        """Host part of the API endpoint."""
        return urlparse(self.api_endpoint).hostname


def build_provider_config(values: Optional[Dict] = None) -> ProviderConfig:
    """Validate raw provider settings.

    Args:
        values: Mapping as read from the project file (may be None)

    Returns:
        Finalized ProviderConfig

    Raises:
        ConfigValidationError: With one line per invalid field
    """
    try:
        return ProviderConfig(**(values or {}))
    except ValidationError as e:
        raise ConfigValidationError(format_validation_error(e)) from e


def format_validation_error(error: ValidationError) -> str:
    """Render a pydantic ValidationError as `Invalid `field' (...)` lines."""
    lines = []
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"]) or "config"
        message = item["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        lines.append(f"Invalid `{field}' ({message})")
    return "\n".join(lines)
