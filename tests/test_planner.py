"""
Unit tests for the transition planner.

The planner is pure: state + run in, PlannedStep out. No client involved.
"""

import pytest

from core.errors import (
    NoValidTransitionError,
    TerminalFailureError,
    UnrecoverableStateError,
    WorkflowError,
)
from core.provisioning.payload import ProvisioningPayload, Step
from core.provisioning.planner import (
    OUTCOMES,
    SUPPORTED_TARGETS,
    Outcome,
    StepKind,
    TransitionPlanner,
    WorkflowRun,
)
from core.provisioning.states import (
    DEFAULT_TABLE,
    ProvisionState,
    TransitionAction,
    is_terminal_failure,
    is_transient,
)

S = ProvisionState
A = TransitionAction

FULL_PAYLOAD = ProvisioningPayload(
    clean_steps=(Step("deploy", "erase_devices_metadata"),),
    service_steps=(Step("bios", "apply_configuration"),),
)


@pytest.fixture
def planner():
    return TransitionPlanner()


def _run(target, **kwargs):
    kwargs.setdefault("payload", FULL_PAYLOAD)
    return WorkflowRun(node_id="node-1", target=target, **kwargs)


class TestSafety:
    """Whatever the planner returns must be legal or an error."""

    @pytest.mark.parametrize("target", sorted(SUPPORTED_TARGETS, key=lambda a: a.value))
    @pytest.mark.parametrize("started", [False, True])
    def test_never_plans_illegal_action(self, planner, target, started):
        for state in ProvisionState:
            run = _run(target, operation_started=started)
            try:
                step = planner.next_step(state, run)
            except WorkflowError:
                continue

            if step.kind in (StepKind.ISSUE, StepKind.RECOVER):
                assert DEFAULT_TABLE.is_legal_transition(state, step.action), (
                    f"{state} --{step.action}--> toward {target}"
                )
            else:
                assert step.action is None

    @pytest.mark.parametrize("target", sorted(SUPPORTED_TARGETS, key=lambda a: a.value))
    def test_transient_states_always_wait(self, planner, target):
        for state in ProvisionState:
            if not is_transient(state):
                continue
            step = planner.next_step(state, _run(target, operation_started=True))
            assert step.kind in (StepKind.WAIT, StepKind.DONE)

    def test_recover_only_from_failure_states(self, planner):
        for target in SUPPORTED_TARGETS:
            for state in ProvisionState:
                try:
                    step = planner.next_step(state, _run(target))
                except WorkflowError:
                    continue
                if step.kind == StepKind.RECOVER:
                    assert is_terminal_failure(state)


class TestDecisions:
    """Specific decisions from the outcome tables."""

    def test_at_goal_is_done(self, planner):
        step = planner.next_step(S.ACTIVE, _run(A.ACTIVE))
        assert step.kind == StepKind.DONE

    def test_transient_waits(self, planner):
        step = planner.next_step(S.DEPLOYING, _run(A.ACTIVE))
        assert step.kind == StepKind.WAIT

    @pytest.mark.parametrize("state,action", [
        (S.ENROLL, A.MANAGE),
        (S.MANAGEABLE, A.PROVIDE),
        (S.AVAILABLE, A.ACTIVE),
        (S.DEPLOY_HOLD, A.UNHOLD),
        (S.CLEAN_HOLD, A.UNHOLD),
        (S.RESCUE, A.UNRESCUE),
    ])
    def test_forward_toward_active(self, planner, state, action):
        step = planner.next_step(state, _run(A.ACTIVE))
        assert step.kind == StepKind.ISSUE
        assert step.action == action

    def test_failure_state_prefers_leaving(self, planner):
        """deploy failed -> active is legal, but deleted is chosen first."""
        assert DEFAULT_TABLE.is_legal_transition(S.DEPLOY_FAILED, A.ACTIVE)

        step = planner.next_step(S.DEPLOY_FAILED, _run(A.ACTIVE))

        assert step.kind == StepKind.RECOVER
        assert step.action == A.DELETED

    def test_error_recovers_with_deleted(self, planner):
        step = planner.next_step(S.ERROR, _run(A.PROVIDE))
        assert step.action == A.DELETED

    def test_deleted_aborts_deploy_hold(self, planner):
        step = planner.next_step(S.DEPLOY_HOLD, _run(A.DELETED))
        assert step.action == A.ABORT

    def test_available_is_already_deleted(self, planner):
        step = planner.next_step(S.AVAILABLE, _run(A.DELETED))
        assert step.kind == StepKind.DONE

    def test_enroll_to_rescue_has_no_path(self, planner):
        with pytest.raises(NoValidTransitionError) as exc_info:
            planner.next_step(S.ENROLL, _run(A.RESCUE))
        assert exc_info.value.state == "enroll"

    def test_unsupported_target(self, planner):
        with pytest.raises(ValueError):
            planner.outcome_for(A.REBUILD)


class TestRecoveryBudget:
    """Recovery consumes WorkflowRun.retries_remaining."""

    def test_recovery_decrements_budget(self, planner):
        run = _run(A.ACTIVE, retries_remaining=3)

        planner.next_step(S.DEPLOY_FAILED, run)

        assert run.retries_remaining == 2

    def test_forward_step_keeps_budget(self, planner):
        run = _run(A.ACTIVE, retries_remaining=3)

        planner.next_step(S.AVAILABLE, run)

        assert run.retries_remaining == 3

    def test_exhausted_budget_is_terminal(self, planner):
        run = _run(A.ACTIVE, retries_remaining=0)

        with pytest.raises(TerminalFailureError) as exc_info:
            planner.next_step(S.DEPLOY_FAILED, run)

        assert not isinstance(exc_info.value, NoValidTransitionError)
        assert "retries exhausted" in exc_info.value.message

    def test_failure_without_recovery(self, planner):
        with pytest.raises(UnrecoverableStateError):
            planner.next_step(S.SERVICE_FAILED, _run(A.ACTIVE))


class TestSubOperations:
    """clean, inspect and service run from a start state and return to it."""

    def test_clean_issued_at_manageable(self, planner):
        step = planner.next_step(S.MANAGEABLE, _run(A.CLEAN))
        assert step.kind == StepKind.ISSUE
        assert step.action == A.CLEAN
        assert step.starts_operation

    def test_clean_without_steps_is_done(self, planner):
        run = _run(A.CLEAN, payload=ProvisioningPayload())
        step = planner.next_step(S.MANAGEABLE, run)
        assert step.kind == StepKind.DONE
        assert "clean steps" in step.reason

    def test_clean_done_after_return(self, planner):
        step = planner.next_step(S.MANAGEABLE, _run(A.CLEAN, operation_started=True))
        assert step.kind == StepKind.DONE

    def test_inspect_reaches_manageable_first(self, planner):
        step = planner.next_step(S.AVAILABLE, _run(A.INSPECT))
        assert step.action == A.MANAGE
        assert not step.starts_operation

    def test_service_requires_active(self, planner):
        with pytest.raises(NoValidTransitionError):
            planner.next_step(S.AVAILABLE, _run(A.SERVICE))

    def test_clean_failed_restarts_operation(self, planner):
        run = _run(A.CLEAN, operation_started=True)

        step = planner.next_step(S.CLEAN_FAILED, run)

        assert step.kind == StepKind.RECOVER
        assert step.action == A.MANAGE
        assert run.operation_started is False
        assert planner.next_step(S.MANAGEABLE, run).action == A.CLEAN

    def test_service_failed_retries_service(self, planner):
        run = _run(A.SERVICE, operation_started=True)

        step = planner.next_step(S.SERVICE_FAILED, run)

        assert step.action == A.SERVICE
        assert step.starts_operation
        assert run.operation_started is True


class TestOutcomeValidation:
    """Outcome tables reject rules on the wrong kind of state."""

    def test_recovery_on_non_failure_state(self):
        with pytest.raises(ValueError, match="Recovery"):
            Outcome(goal=frozenset({S.ACTIVE}), recovery={S.AVAILABLE: A.ACTIVE})

    def test_forward_on_transient_state(self):
        with pytest.raises(ValueError, match="Forward"):
            Outcome(goal=frozenset({S.ACTIVE}), forward={S.DEPLOYING: A.ABORT})

    def test_every_outcome_rule_is_legal(self):
        for target, outcome in OUTCOMES.items():
            for state, action in {**outcome.forward, **outcome.recovery}.items():
                assert DEFAULT_TABLE.is_legal_transition(state, action), (target, state, action)
