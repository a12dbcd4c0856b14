"""Shared pytest fixtures for provisioning tests."""
import os
import sys
from typing import Dict, List, Optional, Tuple

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

# ---------------------------------------------------------------------------
# Deterministic test environment, set BEFORE any config import.
# TESTING lifts the IRONIC_URL requirement in AppSettings.
# ---------------------------------------------------------------------------
os.environ.setdefault("TESTING", "true")

from config.settings import WorkflowSettings, get_settings  # noqa: E402
from core.ironic_client import Node  # noqa: E402
from core.provisioning.states import ProvisionState, TransitionAction  # noqa: E402

S = ProvisionState
A = TransitionAction


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def workflow_settings():
    """Workflow bounds with the documented defaults, independent of env."""
    return WorkflowSettings(
        max_attempts=1000,
        timeout_seconds=1800,
        poll_interval=15.0,
        deploy_poll_interval=30.0,
        max_recovery_retries=3,
    )


# =============================================================================
# Cancellation Fixtures
# =============================================================================

class FakeEvent:
    """
    Stand-in for threading.Event that never blocks.

    Records every wait() delay. When cancel_after is set, the Nth wait
    reports the event as set.
    """

    def __init__(self, cancel_after: Optional[int] = None):
        self.delays: List[float] = []
        self.cancel_after = cancel_after
        self._set = False

    def is_set(self) -> bool:
        return self._set

    def set(self) -> None:
        self._set = True

    def wait(self, timeout: Optional[float] = None) -> bool:
        self.delays.append(timeout)
        if self.cancel_after is not None and len(self.delays) >= self.cancel_after:
            self._set = True
        return self._set


@pytest.fixture
def fake_event():
    return FakeEvent()


@pytest.fixture
def make_event():
    """Factory for FakeEvents that report cancellation on the Nth wait."""
    return FakeEvent


# =============================================================================
# Simulated Ironic
# =============================================================================

# States a node passes through after an accepted request, ending where
# the service would leave it.
DEFAULT_PATHS: Dict[Tuple[ProvisionState, TransitionAction], List[ProvisionState]] = {
    (S.ENROLL, A.MANAGE): [S.VERIFYING, S.MANAGEABLE],
    (S.AVAILABLE, A.MANAGE): [S.MANAGEABLE],
    (S.MANAGEABLE, A.PROVIDE): [S.CLEANING, S.AVAILABLE],
    (S.MANAGEABLE, A.CLEAN): [S.CLEANING, S.CLEAN_WAIT, S.MANAGEABLE],
    (S.MANAGEABLE, A.INSPECT): [S.INSPECTING, S.MANAGEABLE],
    (S.MANAGEABLE, A.ADOPT): [S.ADOPTING, S.ACTIVE],
    (S.AVAILABLE, A.ACTIVE): [S.DEPLOYING, S.DEPLOY_WAIT, S.ACTIVE],
    (S.ACTIVE, A.DELETED): [S.DELETING, S.CLEANING, S.AVAILABLE],
    (S.ACTIVE, A.SERVICE): [S.SERVICING, S.ACTIVE],
    (S.ACTIVE, A.RESCUE): [S.RESCUING, S.RESCUE],
    (S.RESCUE, A.UNRESCUE): [S.UNRESCUING, S.ACTIVE],
    (S.DEPLOY_FAILED, A.DELETED): [S.DELETING, S.CLEANING, S.AVAILABLE],
    (S.ERROR, A.DELETED): [S.DELETING, S.CLEANING, S.AVAILABLE],
    (S.CLEAN_FAILED, A.MANAGE): [S.MANAGEABLE],
    (S.DEPLOY_HOLD, A.UNHOLD): [S.DEPLOY_WAIT, S.ACTIVE],
    (S.DEPLOY_HOLD, A.ABORT): [S.DEPLOY_FAILED],
}


class FakeIronic:
    """
    Scripted node behind the get_state/request_transition interface.

    After an accepted request the node walks through the path configured
    for (state, action), one state per get_state() call. Requests are
    recorded as (state_at_request, action) pairs.
    """

    def __init__(self, state: ProvisionState, last_error: Optional[str] = None):
        self.state = state
        self.last_error = last_error
        self.paths = dict(DEFAULT_PATHS)
        self.queue: List[ProvisionState] = []
        self.requests: List[Tuple[ProvisionState, TransitionAction]] = []
        self.payloads = []
        self.request_errors: List[Exception] = []
        self.read_errors: List[Exception] = []
        self.reads = 0

    @property
    def actions(self) -> List[TransitionAction]:
        return [action for _, action in self.requests]

    def get_state(self, node_id: str) -> Node:
        self.reads += 1
        if self.read_errors:
            raise self.read_errors.pop(0)
        if self.queue:
            self.state = self.queue.pop(0)
        return Node(uuid=node_id, provision_state=self.state, last_error=self.last_error)

    def request_transition(self, node_id, action, payload=None, cancel=None) -> None:
        self.requests.append((self.state, action))
        self.payloads.append(payload)
        if self.request_errors:
            raise self.request_errors.pop(0)
        self.queue = list(self.paths.get((self.state, action), []))


@pytest.fixture
def make_node():
    """Factory for FakeIronic nodes."""
    def _make(state: ProvisionState, last_error: Optional[str] = None) -> FakeIronic:
        return FakeIronic(state, last_error=last_error)
    return _make


# =============================================================================
# HTTP Fixtures
# =============================================================================

IRONIC_URL = "http://ironic.test:6385"


@pytest.fixture
def mock_responses():
    """Enable responses mock for HTTP requests."""
    import responses

    with responses.RequestsMock() as rsps:
        yield rsps
