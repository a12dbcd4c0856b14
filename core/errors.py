"""
Error hierarchy for the provisioning workflow client.

Error Hierarchy:
- ClientError: the remote API call failed (transport, 404, 409, rejection)
- WorkflowError: the state workflow cannot reach its target; carries the
  node UUID, last observed state and the service's last_error so the
  message is actionable without looking at the service directly

Usage:
    from core.errors import BusyError, TerminalFailureError

    try:
        run_provisioning_workflow(client, node_id, TransitionAction.ACTIVE)
    except WorkflowError as e:
        logger.error(f"Deploy failed: {e}")
"""

from typing import Optional


class ProvisioningError(Exception):
    """Base class for every error raised by this package."""
    pass


# =============================================================================
# Remote API Errors
# =============================================================================

class ClientError(ProvisioningError):
    """Base exception for remote API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(ClientError):
    """Network or protocol failure talking to the API. Safe to retry a read."""
    pass


class NodeNotFoundError(ClientError):
    """Node no longer exists (404)."""
    pass


class BusyError(ClientError):
    """Service kept answering 409 after every backoff attempt."""
    pass


class RequestRejectedError(ClientError):
    """Service rejected the request for a reason other than being busy."""
    pass


class ConfigDriveError(ProvisioningError):
    """Config drive could not be built for the target API version."""
    pass


class ConflictError(ProvisioningError):
    """A workflow is already running for this node."""
    pass


# =============================================================================
# Workflow Errors
# =============================================================================

class WorkflowError(ProvisioningError):
    """
    Workflow could not reach its target.

    Attributes:
        node_id: Node UUID
        state: Last observed provision state (string value)
        last_error: Service-reported last_error for the node
    """

    def __init__(
        self,
        message: str,
        node_id: str = "",
        state: Optional[str] = None,
        last_error: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.state = state
        self.last_error = last_error

    def __str__(self) -> str:
        parts = [self.message]
        if self.node_id:
            parts.append(f"node={self.node_id}")
        if self.state:
            parts.append(f"state='{self.state}'")
        parts.append(f"last error was '{self.last_error or ''}'")
        return ", ".join(parts)


class TerminalFailureError(WorkflowError):
    """Node is in a failure state and recovery is impossible or exhausted."""
    pass


class NoValidTransitionError(WorkflowError):
    """No legal or derivable action leads from the current state to the target."""
    pass


class UnrecoverableStateError(TerminalFailureError, NoValidTransitionError):
    """Failure state with no recovery path toward the target at all."""
    pass


class UnknownProvisionStateError(WorkflowError):
    """API reported a provision state outside the known set."""
    pass


class WorkflowTimeoutError(WorkflowError):
    """Deadline or attempt budget exhausted before reaching the target."""
    pass


class WorkflowCancelledError(WorkflowError):
    """Caller cancelled the workflow."""
    pass
