"""
Ironic REST API client for provision state workflows.

Reads a node's provision state and requests provision state changes.
Transition requests that hit HTTP 409 (node locked by a conductor) are
retried with exponential backoff; any other rejection is surfaced as-is.
Node state is never cached: every call hits the API.

Usage:
    from core.ironic_client import IronicClient

    with IronicClient(url="http://ironic:6385") as client:
        node = client.get_state(node_uuid)
        client.request_transition(node_uuid, TransitionAction.MANAGE)

Environment Variables (via config.settings):
    IRONIC_URL: API endpoint (required)
    IRONIC_MICROVERSION: API microversion header (default: 1.81)
    IRONIC_AUTH_STRATEGY: noauth | http_basic
    IRONIC_USERNAME / IRONIC_PASSWORD: HTTP basic credentials
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from requests.exceptions import ConnectionError, Timeout, RequestException

from core.errors import (
    BusyError,
    ClientError,
    NodeNotFoundError,
    RequestRejectedError,
    TransportError,
    UnknownProvisionStateError,
    WorkflowCancelledError,
)
from core.provisioning.payload import ProvisioningPayload, build_request_body
from core.provisioning.states import ProvisionState, TransitionAction

logger = logging.getLogger(__name__)

MICROVERSION_HEADER = "X-OpenStack-Ironic-API-Version"

# Read failures worth polling through; other 4xx will not fix themselves
RETRYABLE_READ_STATUSES = (408, 429)


@dataclass(frozen=True)
class Node:
    """Read-only view of a node as reported by the API."""

    uuid: str
    provision_state: ProvisionState
    target_provision_state: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Node":
        """Build from a GET /v1/nodes/{uuid} response."""
        return cls(
            uuid=data.get("uuid", ""),
            provision_state=ProvisionState.parse(data.get("provision_state")),
            target_provision_state=data.get("target_provision_state"),
            last_error=data.get("last_error"),
        )


def _wait(delay: float, cancel: Optional[threading.Event]) -> bool:
    """Sleep for delay seconds; return True if cancel was set meanwhile."""
    if cancel is None:
        time.sleep(delay)
        return False
    return cancel.wait(delay)


class IronicClient:
    """
    Ironic bare metal API client.

    Attributes:
        url: API endpoint, e.g. http://ironic:6385
        microversion: Value for the X-OpenStack-Ironic-API-Version header
        busy_retries: Attempts for a transition request answered with 409
        busy_interval: First backoff delay in seconds (doubles each retry)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        microversion: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        verify_ssl: Optional[bool] = None,
        timeout: Optional[int] = None,
        busy_retries: Optional[int] = None,
        busy_interval: Optional[float] = None,
    ):
        """
        Initialize the client. Unset arguments come from IRONIC_* settings.

        Args:
            url: API endpoint (env: IRONIC_URL)
            microversion: API microversion (env: IRONIC_MICROVERSION)
            username: HTTP basic username (env: IRONIC_USERNAME)
            password: HTTP basic password (env: IRONIC_PASSWORD)
            verify_ssl: Verify TLS certificates (env: IRONIC_VERIFY_SSL)
            timeout: Per-request timeout in seconds
            busy_retries: Attempts on 409 before giving up
            busy_interval: Initial 409 backoff in seconds
        """
        from config.settings import IronicSettings

        settings = IronicSettings()

        self.url = (url or settings.url).rstrip("/")
        if not self.url:
            raise ValueError("Ironic URL not configured (set IRONIC_URL)")
        self.base_url = f"{self.url}/v1"
        self.microversion = microversion or settings.microversion
        self.timeout = timeout or settings.request_timeout
        self.busy_retries = busy_retries if busy_retries is not None else settings.busy_retries
        self.busy_interval = busy_interval if busy_interval is not None else settings.busy_interval

        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            MICROVERSION_HEADER: self.microversion,
        })

        if username is None and settings.auth_strategy == "http_basic":
            username = settings.username
            password = settings.password.get_secret_value()
        if username:
            self.session.auth = (username, password or "")

        self.session.verify = settings.verify_ssl if verify_ssl is None else verify_ssl
        if not self.session.verify:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        """Extract the faultstring from an Ironic error response."""
        error_msg = f"API error {response.status_code}"
        try:
            data = response.json()
        except ValueError:
            return response.text or error_msg

        error = data.get("error_message", data) if isinstance(data, dict) else data
        if isinstance(error, str):
            try:
                error = json.loads(error)
            except ValueError:
                return error
        if isinstance(error, dict):
            return error.get("faultstring") or error.get("message") or error_msg
        return error_msg

    def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        correlation_id: str = "",
    ) -> requests.Response:
        """
        Make an API request.

        Returns the raw response for any HTTP status; callers map statuses
        to errors.

        Raises:
            TransportError: Cannot connect, timed out, or protocol failure
        """
        url = f"{self.base_url}{endpoint}"
        log_prefix = f"[{correlation_id}] " if correlation_id else ""

        try:
            logger.debug(f"{log_prefix}Ironic {method} {endpoint}")
            return self.session.request(
                method=method,
                url=url,
                json=data,
                timeout=self.timeout,
            )
        except ConnectionError as e:
            raise TransportError(f"{log_prefix}Cannot connect to Ironic at {self.url}: {e}")
        except Timeout:
            raise TransportError(
                f"{log_prefix}Request to Ironic timed out after {self.timeout}s"
            )
        except RequestException as e:
            raise TransportError(f"{log_prefix}Request failed: {e}")

    def get_state(self, node_id: str) -> Node:
        """
        Fetch a node's current provision state.

        Args:
            node_id: Node UUID or name

        Returns:
            Node with provision_state, target_provision_state and last_error

        Raises:
            NodeNotFoundError: Node does not exist
            TransportError: Network/protocol failure, 5xx, 408 or 429
            RequestRejectedError: Any other 4xx (bad credentials, bad node id)
            UnknownProvisionStateError: State not in the known set
        """
        response = self._request(
            "GET",
            f"/nodes/{node_id}?fields=uuid,provision_state,target_provision_state,last_error",
            correlation_id=node_id,
        )

        if response.status_code == 404:
            raise NodeNotFoundError(f"Node {node_id} not found", status_code=404)
        if response.status_code >= 400:
            error_cls = (
                TransportError
                if response.status_code in RETRYABLE_READ_STATUSES or response.status_code >= 500
                else RequestRejectedError
            )
            raise error_cls(
                f"[{node_id}] Failed to get node: {self._error_message(response)}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            raise TransportError(f"[{node_id}] Invalid JSON in node response")

        try:
            return Node.from_api(data)
        except UnknownProvisionStateError as e:
            e.node_id = data.get("uuid") or node_id
            e.last_error = data.get("last_error")
            raise

    def request_transition(
        self,
        node_id: str,
        action: TransitionAction,
        payload: Optional[ProvisioningPayload] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """
        Request a provision state change.

        Retries 409 responses with exponential backoff (busy_interval,
        doubling) for up to busy_retries attempts.

        Args:
            node_id: Node UUID
            action: Provision target to request
            payload: Config drive / steps, attached where the action accepts them
            cancel: Event that aborts a backoff wait when set

        Raises:
            BusyError: Still 409 after every attempt
            RequestRejectedError: Any other non-success status
            TransportError: Network/protocol failure
            WorkflowCancelledError: cancel was set during a backoff wait
        """
        body = build_request_body(action, payload)
        interval = self.busy_interval

        for attempt in range(1, self.busy_retries + 1):
            response = self._request(
                "PUT",
                f"/nodes/{node_id}/states/provision",
                data=body,
                correlation_id=node_id,
            )

            if response.status_code < 400:
                logger.info(f"[{node_id}] Requested provision state '{action}'")
                return

            if response.status_code != 409:
                raise RequestRejectedError(
                    f"Ironic rejected '{action}' for node {node_id}: "
                    f"{self._error_message(response)}",
                    status_code=response.status_code,
                )

            if attempt == self.busy_retries:
                break

            logger.debug(
                f"[{node_id}] Failed to change provision state: ironic is busy, "
                f"will retry in {interval:g}s (attempt {attempt}/{self.busy_retries})"
            )
            if _wait(interval, cancel):
                raise WorkflowCancelledError(
                    f"Cancelled while waiting to retry '{action}'", node_id=node_id
                )
            interval *= 2

        raise BusyError(
            f"Failed to change provision state for node {node_id} to {action}: "
            f"ironic still busy after {self.busy_retries} attempts",
            status_code=409,
        )

    def list_conductors(self) -> List[Dict[str, Any]]:
        """List conductors with liveness and driver details."""
        response = self._request("GET", "/conductors?detail=True")
        if response.status_code >= 400:
            raise TransportError(
                f"Failed to list conductors: {self._error_message(response)}",
                status_code=response.status_code,
            )
        try:
            return response.json().get("conductors", [])
        except ValueError:
            raise TransportError("Invalid JSON in conductors response")

    def health_check(self) -> None:
        """
        Verify the API answers and every conductor is alive with drivers.

        Raises:
            TransportError: API unreachable or a conductor is unhealthy
        """
        for conductor in self.list_conductors():
            hostname = conductor.get("hostname", "unknown")
            if not conductor.get("alive"):
                raise TransportError(
                    f"Ironic API health check failed: conductor {hostname} is not alive"
                )
            if not conductor.get("drivers"):
                raise TransportError(
                    f"Ironic API health check failed: conductor {hostname} has no drivers"
                )
            logger.debug(f"Conductor {hostname} is alive with {len(conductor['drivers'])} drivers")

        logger.info(f"Ironic API at {self.url} is healthy")

    def wait_for_api(
        self,
        timeout: float = 120,
        interval: float = 5,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """
        Poll health_check until it passes.

        Raises:
            TransportError: Still unhealthy after timeout seconds
            WorkflowCancelledError: cancel was set while waiting
        """
        deadline = time.monotonic() + timeout
        logger.info(f"Waiting for Ironic API at {self.url}")

        while True:
            try:
                self.health_check()
                return
            except TransportError as e:
                if time.monotonic() >= deadline:
                    raise TransportError(f"Could not contact Ironic API: {e}")
                logger.debug(f"Ironic API not ready: {e}")

            if _wait(interval, cancel):
                raise WorkflowCancelledError("Cancelled while waiting for Ironic API")

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# =========================================================================
# Module-level convenience functions
# =========================================================================

_client: Optional[IronicClient] = None


def get_client() -> IronicClient:
    """
    Get singleton Ironic client built from settings.

    requests.Session is safe to share between workflow threads for these
    independent request/response calls.
    """
    global _client
    if _client is None:
        _client = IronicClient()
    return _client


def is_ironic_available() -> bool:
    """True if the API is configured and passes a health check."""
    try:
        client = IronicClient()
    except ValueError:
        return False
    try:
        client.health_check()
        return True
    except ClientError:
        return False
    finally:
        client.close()
