"""
Transition planning.

Given a node's current provision state and the caller's target outcome,
decide the single next thing to do: stop (done), poll again (wait), or
request one transition (issue / recover). Fatal situations raise.

Each outcome is an explicit decision table rather than a graph search:
the set of outcomes is small, and a hand-checked table cannot wander
into an illegal hop. Every chosen action is still verified against the
injected TransitionTable before it is returned.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional

from core.errors import (
    NoValidTransitionError,
    TerminalFailureError,
    UnrecoverableStateError,
)
from core.provisioning.payload import ProvisioningPayload
from core.provisioning.states import (
    DEFAULT_TABLE,
    ProvisionState,
    TransitionAction,
    TransitionTable,
    is_terminal_failure,
    is_transient,
)

logger = logging.getLogger(__name__)

S = ProvisionState
A = TransitionAction


class StepKind(Enum):
    """What the driver should do next."""

    DONE = "done"
    WAIT = "wait"
    ISSUE = "issue"
    RECOVER = "recover"


@dataclass(frozen=True)
class PlannedStep:
    """Planner decision for one loop tick."""

    kind: StepKind
    action: Optional[TransitionAction] = None
    starts_operation: bool = False
    reason: str = ""


@dataclass
class WorkflowRun:
    """
    Per-invocation workflow state. Never persisted.

    Attributes:
        node_id: Node UUID
        target: Requested outcome
        payload: Config drive / steps for the transitions that take them
        retries_remaining: Recovery attempts left
        attempts: Loop ticks consumed
        operation_started: A clean/inspect/service sub-operation was issued,
            so the node returning to its start state means done
        poll_interval: Seconds between ticks
    """

    node_id: str
    target: TransitionAction
    payload: ProvisioningPayload = field(default_factory=ProvisioningPayload)
    retries_remaining: int = 3
    attempts: int = 0
    operation_started: bool = False
    poll_interval: float = 15.0


@dataclass(frozen=True)
class Outcome:
    """
    Decision table for one target outcome.

    Attributes:
        goal: States that satisfy the outcome
        forward: Next hop from non-failure states
        recovery: Recovery action from terminal failure states
        started_by: For sub-operations, the action that starts them
        start_state: State the sub-operation is issued from
        prerequisite: Outcome used to reach start_state before starting
        steps_field: Payload field that must be non-empty for the
            sub-operation to have anything to do
    """

    goal: FrozenSet[ProvisionState]
    forward: Mapping[ProvisionState, TransitionAction] = field(default_factory=dict)
    recovery: Mapping[ProvisionState, TransitionAction] = field(default_factory=dict)
    started_by: Optional[TransitionAction] = None
    start_state: Optional[ProvisionState] = None
    prerequisite: Optional[TransitionAction] = None
    steps_field: Optional[str] = None

    def __post_init__(self):
        for state in self.recovery:
            if not is_terminal_failure(state):
                raise ValueError(f"Recovery defined for non-failure state '{state}'")
        for state in self.forward:
            if is_terminal_failure(state) or is_transient(state):
                raise ValueError(f"Forward hop defined for failure/transient state '{state}'")

    @property
    def is_sub_operation(self) -> bool:
        return self.started_by is not None


_TO_MANAGEABLE: Dict[ProvisionState, TransitionAction] = {
    S.INSPECT_FAILED: A.MANAGE,
    S.CLEAN_FAILED: A.MANAGE,
    S.ADOPT_FAILED: A.MANAGE,
}

OUTCOMES: Dict[TransitionAction, Outcome] = {
    A.MANAGE: Outcome(
        goal=frozenset({S.MANAGEABLE}),
        forward={S.ENROLL: A.MANAGE, S.AVAILABLE: A.MANAGE},
        recovery=_TO_MANAGEABLE,
    ),
    A.PROVIDE: Outcome(
        goal=frozenset({S.AVAILABLE}),
        forward={
            S.MANAGEABLE: A.PROVIDE,
            S.ENROLL: A.MANAGE,
            S.CLEAN_HOLD: A.UNHOLD,
        },
        recovery={S.DEPLOY_FAILED: A.DELETED, S.ERROR: A.DELETED, **_TO_MANAGEABLE},
    ),
    A.ACTIVE: Outcome(
        goal=frozenset({S.ACTIVE}),
        forward={
            S.AVAILABLE: A.ACTIVE,
            S.MANAGEABLE: A.PROVIDE,
            S.ENROLL: A.MANAGE,
            S.DEPLOY_HOLD: A.UNHOLD,
            S.CLEAN_HOLD: A.UNHOLD,
            S.RESCUE: A.UNRESCUE,
        },
        recovery={
            S.DEPLOY_FAILED: A.DELETED,
            S.ERROR: A.DELETED,
            S.RESCUE_FAILED: A.UNRESCUE,
            S.UNRESCUE_FAILED: A.UNRESCUE,
            **_TO_MANAGEABLE,
        },
    ),
    A.DELETED: Outcome(
        goal=frozenset({S.MANAGEABLE, S.AVAILABLE, S.ENROLL}),
        forward={
            S.ACTIVE: A.DELETED,
            S.RESCUE: A.DELETED,
            S.DEPLOY_HOLD: A.ABORT,
            S.CLEAN_HOLD: A.UNHOLD,
        },
        recovery={
            S.DEPLOY_FAILED: A.DELETED,
            S.ERROR: A.DELETED,
            S.RESCUE_FAILED: A.DELETED,
            S.UNRESCUE_FAILED: A.DELETED,
            **_TO_MANAGEABLE,
        },
    ),
    A.CLEAN: Outcome(
        goal=frozenset({S.MANAGEABLE}),
        forward={S.CLEAN_HOLD: A.UNHOLD},
        recovery={S.CLEAN_FAILED: A.MANAGE},
        started_by=A.CLEAN,
        start_state=S.MANAGEABLE,
        prerequisite=A.MANAGE,
        steps_field="clean_steps",
    ),
    A.INSPECT: Outcome(
        goal=frozenset({S.MANAGEABLE}),
        recovery={S.INSPECT_FAILED: A.MANAGE},
        started_by=A.INSPECT,
        start_state=S.MANAGEABLE,
        prerequisite=A.MANAGE,
    ),
    A.SERVICE: Outcome(
        goal=frozenset({S.ACTIVE}),
        forward={S.SERVICE_HOLD: A.UNHOLD},
        recovery={S.SERVICE_FAILED: A.SERVICE},
        started_by=A.SERVICE,
        start_state=S.ACTIVE,
        steps_field="service_steps",
    ),
    A.RESCUE: Outcome(
        goal=frozenset({S.RESCUE}),
        forward={S.ACTIVE: A.RESCUE},
        recovery={S.RESCUE_FAILED: A.RESCUE, S.UNRESCUE_FAILED: A.RESCUE},
    ),
    A.UNRESCUE: Outcome(
        goal=frozenset({S.ACTIVE}),
        forward={S.RESCUE: A.UNRESCUE},
        recovery={S.RESCUE_FAILED: A.UNRESCUE, S.UNRESCUE_FAILED: A.UNRESCUE},
    ),
    A.ADOPT: Outcome(
        goal=frozenset({S.ACTIVE}),
        forward={S.MANAGEABLE: A.ADOPT, S.ENROLL: A.MANAGE},
        recovery={S.ADOPT_FAILED: A.ADOPT},
    ),
}

del S, A

SUPPORTED_TARGETS = frozenset(OUTCOMES)


class TransitionPlanner:
    """
    Picks the next transition toward a target outcome.

    Usage:
        planner = TransitionPlanner()
        run = WorkflowRun(node_id=uuid, target=TransitionAction.ACTIVE)
        step = planner.next_step(ProvisionState.ENROLL, run)
        # PlannedStep(kind=ISSUE, action=MANAGE)
    """

    def __init__(
        self,
        table: TransitionTable = DEFAULT_TABLE,
        outcomes: Optional[Mapping[TransitionAction, Outcome]] = None,
    ):
        self.table = table
        self.outcomes = dict(outcomes if outcomes is not None else OUTCOMES)

    def outcome_for(self, target: TransitionAction) -> Outcome:
        try:
            return self.outcomes[target]
        except KeyError:
            raise ValueError(f"Unsupported target '{target}'")

    def next_step(self, state: ProvisionState, run: WorkflowRun) -> PlannedStep:
        """
        Decide what to do from `state`.

        Recovery steps consume run.retries_remaining.

        Raises:
            TerminalFailureError: Recovery budget exhausted, or a failure
                state with no recovery toward the target
            NoValidTransitionError: No rule applies, or the chosen action
                is not legal from `state`
        """
        outcome = self.outcome_for(run.target)

        if outcome.is_sub_operation and not run.operation_started:
            return self._before_start(state, run, outcome)

        return self._decide(state, run, outcome)

    def _before_start(
        self,
        state: ProvisionState,
        run: WorkflowRun,
        outcome: Outcome,
    ) -> PlannedStep:
        """Reach the sub-operation's start state, then issue it."""
        if state == outcome.start_state:
            if outcome.steps_field and not getattr(run.payload, outcome.steps_field):
                return PlannedStep(
                    StepKind.DONE,
                    reason=f"no {outcome.steps_field.replace('_', ' ')} to run",
                )
            return self._checked(
                state, run, PlannedStep(StepKind.ISSUE, outcome.started_by, starts_operation=True)
            )

        if outcome.prerequisite is not None:
            return self._decide(state, run, self.outcome_for(outcome.prerequisite), counted_goal=False)

        return self._decide(state, run, outcome, counted_goal=False)

    def _decide(
        self,
        state: ProvisionState,
        run: WorkflowRun,
        outcome: Outcome,
        counted_goal: bool = True,
    ) -> PlannedStep:
        if counted_goal and state in outcome.goal:
            return PlannedStep(StepKind.DONE, reason=f"node is '{state}'")

        if is_transient(state):
            return PlannedStep(StepKind.WAIT, reason=f"service is working, node is '{state}'")

        if is_terminal_failure(state):
            action = outcome.recovery.get(state)
            if action is None:
                raise UnrecoverableStateError(
                    f"No recovery from '{state}' toward '{run.target}'",
                    node_id=run.node_id,
                    state=state.value,
                )
            if run.retries_remaining <= 0:
                raise TerminalFailureError(
                    f"Node stuck in '{state}', recovery retries exhausted",
                    node_id=run.node_id,
                    state=state.value,
                )
            step = self._checked(
                state,
                run,
                PlannedStep(
                    StepKind.RECOVER,
                    action,
                    starts_operation=action == outcome.started_by,
                    reason=f"recovering from '{state}'",
                ),
            )
            run.retries_remaining -= 1
            if run.operation_started and action != outcome.started_by:
                # back to the start state, the sub-operation is re-issued from there
                run.operation_started = False
            logger.debug(
                f"[{run.node_id}] Node is '{state}', going to retry with '{action}' "
                f"({run.retries_remaining} retries left)"
            )
            return step

        action = outcome.forward.get(state)
        if action is None:
            raise NoValidTransitionError(
                f"Cannot go from state '{state}' to '{run.target}'",
                node_id=run.node_id,
                state=state.value,
            )

        return self._checked(
            state,
            run,
            PlannedStep(
                StepKind.ISSUE,
                action,
                starts_operation=action == outcome.started_by,
                reason=f"node is '{state}', going to '{action}'",
            ),
        )

    def _checked(self, state: ProvisionState, run: WorkflowRun, step: PlannedStep) -> PlannedStep:
        """Refuse any action the transition table does not allow from state."""
        if not self.table.is_legal_transition(state, step.action):
            raise NoValidTransitionError(
                f"Action '{step.action}' is not a legal transition from '{state}'",
                node_id=run.node_id,
                state=state.value,
            )
        return step
