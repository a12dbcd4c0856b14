"""
Provision state workflow driver.

Drives a node through the remote state machine until it reaches the
requested outcome: fetch state, ask the planner, issue at most one
transition, wait, repeat. Bounded by an attempt budget and a wall-clock
deadline; every wait observes the caller's cancel event.

Usage:
    from core.ironic_client import get_client
    from core.provisioning import TransitionAction, run_provisioning_workflow

    node = run_provisioning_workflow(
        get_client(), node_uuid, TransitionAction.ACTIVE, payload=payload
    )
"""

import logging
import threading
import time
from typing import Callable, Optional

from config.settings import WorkflowSettings
from core.errors import (
    BusyError,
    RequestRejectedError,
    TerminalFailureError,
    TransportError,
    WorkflowCancelledError,
    WorkflowError,
    WorkflowTimeoutError,
)
from core.provisioning.payload import ProvisioningPayload
from core.provisioning.planner import StepKind, TransitionPlanner, WorkflowRun
from core.provisioning.states import (
    ProvisionState,
    TransitionAction,
    TransitionTable,
    is_terminal_failure,
    is_transient,
)

logger = logging.getLogger(__name__)


class ProvisioningWorkflow:
    """
    Runs one provisioning workflow at a time per call to run().

    Holds no per-run state, so one instance may serve many nodes from
    different threads.

    Args:
        client: Object with get_state(node_id) and
            request_transition(node_id, action, payload, cancel=...)
        planner: TransitionPlanner (default: full documented table)
        settings: Loop bounds (default: WORKFLOW_* environment)
    """

    def __init__(
        self,
        client,
        planner: Optional[TransitionPlanner] = None,
        settings: Optional[WorkflowSettings] = None,
    ):
        self.client = client
        self.planner = planner or TransitionPlanner()
        self.settings = settings or WorkflowSettings()

    def run(
        self,
        node_id: str,
        target: TransitionAction,
        payload: Optional[ProvisioningPayload] = None,
        cancel: Optional[threading.Event] = None,
        on_state: Optional[Callable] = None,
    ):
        """
        Drive node_id to the target outcome.

        Args:
            node_id: Node UUID
            target: Outcome to reach (manage, provide, active, deleted, ...)
            payload: Config drive / steps
            cancel: Set it to stop the workflow within one tick
            on_state: Called with each node read, for progress reporting

        Returns:
            The last observed node (already at the target)

        Raises:
            ValueError: target is not a supported outcome
            NodeNotFoundError: Node disappeared
            UnknownProvisionStateError: Node reported a state outside the known set
            TerminalFailureError: Failure state without recovery, or retries exhausted
            NoValidTransitionError: No legal path toward the target
            WorkflowTimeoutError: Deadline or attempt budget exhausted
            WorkflowCancelledError: cancel was set
        """
        self.planner.outcome_for(target)

        settings = self.settings
        cancel = cancel if cancel is not None else threading.Event()
        run = WorkflowRun(
            node_id=node_id,
            target=target,
            payload=payload or ProvisioningPayload(),
            retries_remaining=settings.max_recovery_retries,
            poll_interval=settings.poll_interval,
        )
        deadline = time.monotonic() + settings.timeout_seconds
        node = None

        logger.info(
            f"[{node_id}] Beginning provisioning workflow, will try to change node to '{target}'",
            extra={"node_id": node_id, "target": target.value},
        )

        while run.attempts < settings.max_attempts:
            if cancel.is_set():
                raise self._cancelled(run, node)
            if time.monotonic() >= deadline:
                raise self._timed_out(run, node, f"deadline of {settings.timeout_seconds}s passed")

            run.attempts += 1

            try:
                node = self.client.get_state(node_id)
            except TransportError as e:
                logger.warning(f"[{node_id}] Could not read node state, will retry: {e}")
                self._pause(run, node, cancel, deadline)
                continue
            except RequestRejectedError as e:
                raise WorkflowError(
                    f"Could not read node state: {e}",
                    node_id=node_id,
                    state=node.provision_state.value if node else None,
                    last_error=node.last_error if node else None,
                ) from e

            if on_state is not None:
                on_state(node)

            state = node.provision_state
            logger.debug(
                f"[{node_id}] Node is in state '{state}', target is '{target}'",
                extra={"node_id": node_id, "provision_state": state.value, "attempt": run.attempts},
            )

            try:
                step = self.planner.next_step(state, run)
            except WorkflowError as e:
                e.last_error = node.last_error
                raise

            if step.kind == StepKind.DONE:
                logger.info(f"[{node_id}] Node is '{state}', reached '{target}' ({step.reason})")
                return node

            if step.kind == StepKind.WAIT:
                logger.debug(f"[{node_id}] {step.reason}, waiting for Ironic to finish")
                self._pause(run, node, cancel, deadline)
                continue

            if not self._issue(run, node, step, cancel):
                self._pause(run, node, cancel, deadline)
                continue

            if step.starts_operation:
                run.operation_started = True
            if step.action == TransitionAction.ACTIVE:
                run.poll_interval = settings.deploy_poll_interval

            self._pause(run, node, cancel, deadline)

        raise self._timed_out(run, node, f"gave up after {run.attempts} attempts")

    def _issue(self, run: WorkflowRun, node, step, cancel: threading.Event) -> bool:
        """
        Request step.action. Returns False when the next tick should retry.

        Raises:
            TerminalFailureError / WorkflowError for fatal request failures
        """
        state = node.provision_state
        verb = "recover" if step.kind == StepKind.RECOVER else "change"
        logger.info(
            f"[{run.node_id}] Node is '{state}', going to {verb} with '{step.action}'",
            extra={"node_id": run.node_id, "action": step.action.value},
        )

        try:
            self.client.request_transition(run.node_id, step.action, run.payload, cancel=cancel)
            return True
        except WorkflowCancelledError:
            raise self._cancelled(run, node)
        except (BusyError, TransportError) as e:
            if is_terminal_failure(state):
                raise TerminalFailureError(
                    f"Could not {verb} with '{step.action}': {e}",
                    node_id=run.node_id,
                    state=state.value,
                    last_error=node.last_error,
                ) from e
            logger.warning(f"[{run.node_id}] Request '{step.action}' failed, will retry: {e}")
            return False
        except RequestRejectedError as e:
            if not is_terminal_failure(state) and self._moved_on(run.node_id, state):
                logger.warning(
                    f"[{run.node_id}] '{step.action}' rejected but node left '{state}', reassessing: {e}"
                )
                return False
            raise WorkflowError(
                f"Request '{step.action}' rejected: {e}",
                node_id=run.node_id,
                state=state.value,
                last_error=node.last_error,
            ) from e

    def _moved_on(self, node_id: str, state: ProvisionState) -> bool:
        """True if the node has auto-progressed since `state` was observed."""
        try:
            current = self.client.get_state(node_id).provision_state
        except TransportError:
            return False
        return current != state or is_transient(current)

    def _pause(self, run: WorkflowRun, node, cancel: threading.Event, deadline: float) -> None:
        delay = min(run.poll_interval, max(0.0, deadline - time.monotonic()))
        if cancel.wait(delay):
            raise self._cancelled(run, node)

    @staticmethod
    def _cancelled(run: WorkflowRun, node) -> WorkflowCancelledError:
        logger.warning(f"[{run.node_id}] Workflow to '{run.target}' cancelled")
        return WorkflowCancelledError(
            f"Workflow to '{run.target}' cancelled",
            node_id=run.node_id,
            state=node.provision_state.value if node else None,
            last_error=node.last_error if node else None,
        )

    @staticmethod
    def _timed_out(run: WorkflowRun, node, why: str) -> WorkflowTimeoutError:
        return WorkflowTimeoutError(
            f"Timed out waiting for node to reach '{run.target}': {why}",
            node_id=run.node_id,
            state=node.provision_state.value if node else None,
            last_error=node.last_error if node else None,
        )


def run_provisioning_workflow(
    client,
    node_id: str,
    target: TransitionAction,
    payload: Optional[ProvisioningPayload] = None,
    cancel: Optional[threading.Event] = None,
    settings: Optional[WorkflowSettings] = None,
    table: Optional[TransitionTable] = None,
    on_state: Optional[Callable] = None,
):
    """
    Drive a node to the target outcome; see ProvisioningWorkflow.run.

    Invoking it again when the node is already at the target is a no-op
    success that issues no transition.
    """
    planner = TransitionPlanner(table) if table is not None else TransitionPlanner()
    return ProvisioningWorkflow(client, planner, settings).run(
        node_id, target, payload=payload, cancel=cancel, on_state=on_state
    )
