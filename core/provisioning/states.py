"""
Provision state machine model.

Mirrors the remote service's documented state diagram: the set of known
provision states, the actions a client may request, and the table of
legal (from-state, action, to-state) hops. Also classifies states as
terminal failures (need an explicit recovery action) or transient
(the service moves out of them on its own).

The table is immutable and built once; planners receive it by injection
so tests can swap in a partial table.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from core.errors import UnknownProvisionStateError


class ProvisionState(str, Enum):
    """Where a node currently sits in its lifecycle."""

    ENROLL = "enroll"
    VERIFYING = "verifying"
    MANAGEABLE = "manageable"
    INSPECTING = "inspecting"
    INSPECT_WAIT = "inspect wait"
    INSPECT_FAILED = "inspect failed"
    CLEANING = "cleaning"
    CLEAN_WAIT = "clean wait"
    CLEAN_FAILED = "clean failed"
    CLEAN_HOLD = "clean hold"
    AVAILABLE = "available"
    DEPLOYING = "deploying"
    DEPLOY_WAIT = "wait call-back"
    DEPLOY_FAILED = "deploy failed"
    DEPLOY_HOLD = "deploy hold"
    ACTIVE = "active"
    DELETING = "deleting"
    ERROR = "error"
    RESCUING = "rescuing"
    RESCUE_WAIT = "rescue wait"
    RESCUE = "rescue"
    RESCUE_FAILED = "rescue failed"
    UNRESCUING = "unrescuing"
    UNRESCUE_FAILED = "unrescue failed"
    ADOPTING = "adopting"
    ADOPT_FAILED = "adopt failed"
    SERVICING = "servicing"
    SERVICE_WAIT = "service wait"
    SERVICE_FAILED = "service failed"
    SERVICE_HOLD = "service hold"

    @classmethod
    def parse(cls, value: str) -> "ProvisionState":
        """
        Convert an API string into a ProvisionState.

        Raises:
            UnknownProvisionStateError: value is not a known state
        """
        try:
            return cls(value)
        except ValueError:
            raise UnknownProvisionStateError(f"Unknown provision state '{value}'", state=value)

    def __str__(self) -> str:
        return self.value


class TransitionAction(str, Enum):
    """Provision 'target' a client may request."""

    MANAGE = "manage"
    PROVIDE = "provide"
    ACTIVE = "active"
    DELETED = "deleted"
    CLEAN = "clean"
    INSPECT = "inspect"
    RESCUE = "rescue"
    UNRESCUE = "unrescue"
    ADOPT = "adopt"
    ABORT = "abort"
    REBUILD = "rebuild"
    SERVICE = "service"
    UNHOLD = "unhold"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class StateTransition:
    """One legal hop: requesting `action` from `from_state` moves the node to `to_state`."""

    from_state: ProvisionState
    action: TransitionAction
    to_state: ProvisionState


S = ProvisionState
A = TransitionAction

# Documented client-initiated transitions. to_state is the state the node
# enters as soon as the service accepts the request.
TRANSITIONS: Tuple[StateTransition, ...] = tuple(
    StateTransition(src, action, dst)
    for src, action, dst in (
        (S.ENROLL, A.MANAGE, S.VERIFYING),
        (S.MANAGEABLE, A.PROVIDE, S.CLEANING),
        (S.MANAGEABLE, A.INSPECT, S.INSPECTING),
        (S.MANAGEABLE, A.CLEAN, S.CLEANING),
        (S.MANAGEABLE, A.ADOPT, S.ADOPTING),
        (S.AVAILABLE, A.ACTIVE, S.DEPLOYING),
        (S.AVAILABLE, A.MANAGE, S.MANAGEABLE),
        (S.INSPECT_WAIT, A.ABORT, S.INSPECT_FAILED),
        (S.INSPECT_FAILED, A.MANAGE, S.MANAGEABLE),
        (S.INSPECT_FAILED, A.INSPECT, S.INSPECTING),
        (S.CLEAN_WAIT, A.ABORT, S.CLEAN_FAILED),
        (S.CLEAN_FAILED, A.MANAGE, S.MANAGEABLE),
        (S.CLEAN_HOLD, A.UNHOLD, S.CLEAN_WAIT),
        (S.CLEAN_HOLD, A.ABORT, S.CLEAN_FAILED),
        (S.DEPLOY_WAIT, A.DELETED, S.DELETING),
        (S.DEPLOY_WAIT, A.ABORT, S.DEPLOY_FAILED),
        (S.DEPLOY_HOLD, A.UNHOLD, S.DEPLOY_WAIT),
        (S.DEPLOY_HOLD, A.ABORT, S.DEPLOY_FAILED),
        (S.DEPLOY_FAILED, A.ACTIVE, S.DEPLOYING),
        (S.DEPLOY_FAILED, A.REBUILD, S.DEPLOYING),
        (S.DEPLOY_FAILED, A.DELETED, S.DELETING),
        (S.ACTIVE, A.REBUILD, S.DEPLOYING),
        (S.ACTIVE, A.DELETED, S.DELETING),
        (S.ACTIVE, A.RESCUE, S.RESCUING),
        (S.ACTIVE, A.SERVICE, S.SERVICING),
        (S.ERROR, A.REBUILD, S.DEPLOYING),
        (S.ERROR, A.DELETED, S.DELETING),
        (S.RESCUE_WAIT, A.ABORT, S.RESCUE_FAILED),
        (S.RESCUE_WAIT, A.DELETED, S.DELETING),
        (S.RESCUE, A.RESCUE, S.RESCUING),
        (S.RESCUE, A.UNRESCUE, S.UNRESCUING),
        (S.RESCUE, A.DELETED, S.DELETING),
        (S.RESCUE_FAILED, A.RESCUE, S.RESCUING),
        (S.RESCUE_FAILED, A.UNRESCUE, S.UNRESCUING),
        (S.RESCUE_FAILED, A.DELETED, S.DELETING),
        (S.UNRESCUE_FAILED, A.RESCUE, S.RESCUING),
        (S.UNRESCUE_FAILED, A.UNRESCUE, S.UNRESCUING),
        (S.UNRESCUE_FAILED, A.DELETED, S.DELETING),
        (S.ADOPT_FAILED, A.MANAGE, S.MANAGEABLE),
        (S.ADOPT_FAILED, A.ADOPT, S.ADOPTING),
        (S.SERVICE_WAIT, A.ABORT, S.SERVICE_FAILED),
        (S.SERVICE_HOLD, A.UNHOLD, S.SERVICE_WAIT),
        (S.SERVICE_HOLD, A.ABORT, S.SERVICE_FAILED),
        (S.SERVICE_FAILED, A.SERVICE, S.SERVICING),
        (S.SERVICE_FAILED, A.RESCUE, S.RESCUING),
    )
)

# The service never leaves these without an explicit recovery action.
TERMINAL_FAILURE_STATES: FrozenSet[ProvisionState] = frozenset({
    S.DEPLOY_FAILED,
    S.CLEAN_FAILED,
    S.INSPECT_FAILED,
    S.RESCUE_FAILED,
    S.UNRESCUE_FAILED,
    S.SERVICE_FAILED,
    S.ADOPT_FAILED,
    S.ERROR,
})

# The service moves out of these on its own; clients only poll.
TRANSIENT_STATES: FrozenSet[ProvisionState] = frozenset({
    S.VERIFYING,
    S.INSPECTING,
    S.INSPECT_WAIT,
    S.CLEANING,
    S.CLEAN_WAIT,
    S.DEPLOYING,
    S.DEPLOY_WAIT,
    S.DELETING,
    S.RESCUING,
    S.RESCUE_WAIT,
    S.UNRESCUING,
    S.ADOPTING,
    S.SERVICING,
    S.SERVICE_WAIT,
})

del S, A


def is_terminal_failure(state: ProvisionState) -> bool:
    """True if the service will never resolve this state without a recovery action."""
    return state in TERMINAL_FAILURE_STATES


def is_transient(state: ProvisionState) -> bool:
    """True if the service will move the node out of this state on its own."""
    return state in TRANSIENT_STATES


class TransitionTable:
    """
    Immutable lookup over a set of StateTransitions.

    Usage:
        table = TransitionTable(TRANSITIONS)
        table.is_legal_transition(ProvisionState.AVAILABLE, TransitionAction.ACTIVE)
        table.expected_result_state(ProvisionState.ENROLL, TransitionAction.MANAGE)
    """

    def __init__(self, transitions: Iterable[StateTransition]):
        index: Dict[Tuple[ProvisionState, TransitionAction], ProvisionState] = {}
        by_state: Dict[ProvisionState, List[StateTransition]] = {}

        for transition in transitions:
            key = (transition.from_state, transition.action)
            existing = index.get(key)
            if existing is not None and existing != transition.to_state:
                raise ValueError(
                    f"Conflicting transitions for '{transition.from_state}' "
                    f"--{transition.action}-->: '{existing}' and '{transition.to_state}'"
                )
            if existing is None:
                index[key] = transition.to_state
                by_state.setdefault(transition.from_state, []).append(transition)

        self._index = index
        self._by_state = {state: tuple(items) for state, items in by_state.items()}

    def __len__(self) -> int:
        return len(self._index)

    def __iter__(self):
        for items in self._by_state.values():
            yield from items

    def valid_transitions_from(self, state: ProvisionState) -> List[StateTransition]:
        """All transitions out of `state`; empty list if none are defined."""
        return list(self._by_state.get(state, ()))

    def is_legal_transition(self, state: ProvisionState, action: TransitionAction) -> bool:
        """True iff (state, action) appears in the table."""
        return (state, action) in self._index

    def expected_result_state(
        self,
        state: ProvisionState,
        action: TransitionAction,
    ) -> Tuple[Optional[ProvisionState], bool]:
        """
        Look up where (state, action) leads.

        Returns:
            (to_state, True) if the transition exists, else (None, False)
        """
        to_state = self._index.get((state, action))
        return to_state, to_state is not None


DEFAULT_TABLE = TransitionTable(TRANSITIONS)
