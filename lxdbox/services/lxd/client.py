"""Thin client for the LXD REST API.

Mutating calls return asynchronous operations on the LXD side; the helpers
below wait for them unless told otherwise, so callers see either a finished
result or an LXDError.
"""
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import requests
from urllib3.exceptions import InsecureRequestWarning

from lxdbox.core.errors import ConnectionFailure
from lxdbox.core.logger import get_logger
from lxdbox.core.retry import Deadline, retry_until

logger = get_logger(__name__)

API_VERSION = "/1.0"

# Operation status codes reported by LXD
STATUS_SUCCESS = 200
STATUS_FAILURE = 400
STATUS_CANCELLED = 401

# Extra seconds allowed on the HTTP read while LXD holds a wait request open
READ_GRACE = 5


class LXDError(Exception):
    """Error reported by the LXD API."""

    status_code: Optional[int] = None

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class LXDBadRequest(LXDError):
    status_code = 400


class LXDForbidden(LXDError):
    status_code = 403


class LXDNotFound(LXDError):
    status_code = 404


class LXDConflict(LXDError):
    status_code = 409


class LXDTimeout(LXDError):
    """The API (or an operation) did not answer within the allowed time."""


ERRORS_BY_STATUS = {
    400: LXDBadRequest,
    403: LXDForbidden,
    404: LXDNotFound,
    409: LXDConflict,
}


def error_for(status_code: int, message: str) -> LXDError:
    """Build the LXDError subclass matching an HTTP (or LXD error) code."""
    error_class = ERRORS_BY_STATUS.get(status_code, LXDError)
    return error_class(message or f"LXD request failed with status {status_code}", status_code)


@dataclass
class RemoteOperation:
    """Handle for an asynchronous LXD operation."""
    id: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, body: Dict[str, Any]) -> "RemoteOperation":
        metadata = body.get("metadata") or {}
        op_id = metadata.get("id")
        if not op_id:
            op_id = str(body.get("operation", "")).rstrip("/").rsplit("/", 1)[-1]
        return cls(id=op_id, metadata=metadata)


def _name(value: str) -> str:
    return quote(value, safe="")


class LXDClient:
    """HTTPS JSON client for one LXD endpoint."""

    def __init__(
        self,
        api_endpoint: str,
        timeout: int = 10,
        client_cert: Optional[Path] = None,
        client_key: Optional[Path] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the client.

        Args:
            api_endpoint: Base HTTPS address, e.g. https://127.0.0.1:8443
            timeout: Default seconds for requests and operation waits
            client_cert: Client certificate; attached when it and client_key exist
            client_key: Private key for client_cert
            session: Optional pre-built requests session
        """
        self.api_endpoint = api_endpoint.rstrip("/")
        self.timeout = timeout
        self.client_cert = Path(client_cert) if client_cert else None
        self.client_key = Path(client_key) if client_key else None

        self.session = session or requests.Session()
        # LXD serves a self-signed certificate on local endpoints
        self.session.verify = False
        warnings.simplefilter("ignore", InsecureRequestWarning)

        if self.client_cert and self.client_key and self.client_cert.exists() and self.client_key.exists():
            self.session.cert = (str(self.client_cert), str(self.client_key))
        elif self.client_cert:
            logger.debug(f"Client certificate {self.client_cert} not found, connecting without it")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict] = None,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send a request and return the decoded response body.

        Raises:
            ConnectionFailure: The endpoint is unreachable
            LXDTimeout: The server did not answer in time
            LXDError: The server answered with an error
        """
        url = f"{self.api_endpoint}{API_VERSION}{path}"
        logger.debug(f"{method} {url}")

        try:
            response = self.session.request(
                method,
                url,
                json=json,
                data=data,
                headers=headers,
                params=params,
                timeout=timeout or self.timeout,
            )
        except requests.exceptions.ReadTimeout as e:
            raise LXDTimeout(f"{method} {path} timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise ConnectionFailure(
                api_endpoint=self.api_endpoint,
                client_cert=str(self.client_cert) if self.client_cert else None,
                reason=str(e),
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or body.get("type") == "error":
            status = body.get("error_code") or response.status_code
            raise error_for(status, body.get("error") or getattr(response, "reason", ""))

        return body

    def _get(self, path: str, **kwargs) -> Any:
        return self._request("GET", path, **kwargs).get("metadata")

    def _mutate(
        self,
        method: str,
        path: str,
        wait: bool = True,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> Union[RemoteOperation, Dict[str, Any], None]:
        """Issue a mutating request, waiting for the resulting operation if asked."""
        body = self._request(method, path, **kwargs)
        if body.get("type") != "async":
            return body.get("metadata")

        operation = RemoteOperation.from_response(body)
        if not wait:
            return operation
        return self.wait_for_operation(operation, timeout=timeout)

    def wait_for_operation(self, operation: RemoteOperation, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Block until an operation finishes, bounded by timeout.

        A read timeout while LXD holds the wait request open is retried with
        the same operation id for as long as the deadline holds.

        Returns:
            Final operation metadata

        Raises:
            LXDBadRequest: The operation failed or was cancelled
            LXDTimeout: The operation was still running at the deadline
        """
        deadline = Deadline(timeout or self.timeout)

        def _wait():
            remaining = deadline.remaining_seconds()
            return self._get(
                f"/operations/{_name(operation.id)}/wait",
                params={"timeout": remaining},
                timeout=remaining + READ_GRACE,
            )

        metadata = retry_until(
            _wait,
            deadline,
            exceptions=(LXDTimeout,),
            description=f"Waiting for operation {operation.id}",
        ) or {}

        status_code = metadata.get("status_code")
        if status_code == STATUS_SUCCESS:
            return metadata
        if status_code in (STATUS_FAILURE, STATUS_CANCELLED):
            raise LXDBadRequest(metadata.get("err") or metadata.get("status") or "Operation failed")
        raise LXDTimeout(
            f"Operation {operation.id} still {metadata.get('status', 'running')} "
            f"after {deadline.timeout} seconds"
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def images(self) -> List[str]:
        return self._get("/images")

    def image(self, fingerprint: str) -> Dict[str, Any]:
        return self._get(f"/images/{_name(fingerprint)}")

    def image_exists(self, fingerprint: str) -> bool:
        try:
            self.image(fingerprint)
        except LXDNotFound:
            return False
        return True

    def create_image_from_file(self, path: Path, public: bool = False) -> str:
        """Import a unified image tarball.

        Returns:
            Fingerprint LXD assigned to the image
        """
        with open(path, "rb") as f:
            result = self._mutate(
                "POST",
                "/images",
                data=f,
                headers={
                    "Content-Type": "application/octet-stream",
                    "X-LXD-public": "1" if public else "0",
                },
            )
        fingerprint = ((result or {}).get("metadata") or {}).get("fingerprint")
        if not fingerprint:
            raise LXDError(f"Image import of {path} did not report a fingerprint")
        return fingerprint

    def create_image_alias(self, fingerprint: str, alias: str, description: str = "") -> None:
        self._request(
            "POST",
            "/images/aliases",
            json={"name": alias, "target": fingerprint, "description": description},
        )

    def delete_image(self, fingerprint: str) -> None:
        self._mutate("DELETE", f"/images/{_name(fingerprint)}")

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def containers(self) -> List[str]:
        return self._get("/containers")

    def container(self, name: str) -> Dict[str, Any]:
        return self._get(f"/containers/{_name(name)}")

    def container_state(self, name: str) -> Dict[str, Any]:
        return self._get(f"/containers/{_name(name)}/state")

    def create_container(
        self,
        name: str,
        fingerprint: str,
        ephemeral: bool = False,
        profiles: Optional[List[str]] = None,
        config: Optional[Dict[str, str]] = None,
        devices: Optional[Dict[str, Dict[str, str]]] = None,
    ) -> None:
        self._mutate(
            "POST",
            "/containers",
            json={
                "name": name,
                "ephemeral": ephemeral,
                "profiles": list(profiles if profiles is not None else ["default"]),
                "config": dict(config or {}),
                "devices": dict(devices or {}),
                "source": {"type": "image", "fingerprint": fingerprint},
            },
        )

    def update_container(self, name: str, container: Dict[str, Any]) -> None:
        """Replace the writable parts of a container's configuration."""
        writable = ("architecture", "config", "devices", "ephemeral", "profiles", "description")
        self._mutate(
            "PUT",
            f"/containers/{_name(name)}",
            json={key: container[key] for key in writable if key in container},
        )

    def delete_container(self, name: str) -> None:
        self._mutate("DELETE", f"/containers/{_name(name)}")

    def change_state(
        self,
        name: str,
        action: str,
        timeout: Optional[int] = None,
        force: bool = False,
    ) -> None:
        """Run a start/stop/freeze/unfreeze action and wait for it to finish."""
        payload: Dict[str, Any] = {"action": action, "force": force}
        if timeout is not None:
            payload["timeout"] = timeout
        # The server enforces `timeout` itself; leave room to hear its verdict
        wait_for = (timeout or self.timeout) + READ_GRACE
        self._mutate(
            "PUT",
            f"/containers/{_name(name)}/state",
            json=payload,
            timeout=wait_for,
        )

    def start_container(self, name: str, timeout: Optional[int] = None) -> None:
        self.change_state(name, "start", timeout=timeout)

    def stop_container(self, name: str, timeout: Optional[int] = None, force: bool = False) -> None:
        self.change_state(name, "stop", timeout=timeout, force=force)

    def freeze_container(self, name: str, timeout: Optional[int] = None) -> None:
        self.change_state(name, "freeze", timeout=timeout)

    def unfreeze_container(self, name: str, timeout: Optional[int] = None) -> None:
        self.change_state(name, "unfreeze", timeout=timeout)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshots(self, name: str) -> List[str]:
        """List snapshot names in the order the server reports them."""
        urls = self._get(f"/containers/{_name(name)}/snapshots") or []
        return [url.rstrip("/").rsplit("/", 1)[-1] for url in urls]

    def create_snapshot(self, name: str, snapshot: str, stateful: bool = False) -> None:
        self._mutate(
            "POST",
            f"/containers/{_name(name)}/snapshots",
            json={"name": snapshot, "stateful": stateful},
        )

    def delete_snapshot(self, name: str, snapshot: str) -> None:
        self._mutate("DELETE", f"/containers/{_name(name)}/snapshots/{_name(snapshot)}")

    def restore_snapshot(self, name: str, snapshot: str) -> RemoteOperation:
        """Start restoring a snapshot; the returned operation is not awaited."""
        result = self._mutate(
            "PUT",
            f"/containers/{_name(name)}",
            wait=False,
            json={"restore": snapshot},
        )
        if not isinstance(result, RemoteOperation):
            raise LXDError(f"Restoring snapshot {snapshot} of {name} did not start an operation")
        return result
