"""
Background provisioning execution.

Runs provisioning workflows for many nodes at once, one daemon thread per
node. Each run owns its WorkflowRun and cancel event; runs share nothing
mutable except the thread-safe job registry.
"""

import logging
import threading
from typing import Dict, Optional

from core.errors import ConflictError, ProvisioningError, WorkflowCancelledError, WorkflowError
from core.provisioning.jobs import JobRegistry, JobStatus, ProvisioningJob
from core.provisioning.payload import ProvisioningPayload
from core.provisioning.states import TransitionAction
from core.provisioning.workflow import ProvisioningWorkflow

logger = logging.getLogger(__name__)


class ProvisioningExecutor:
    """
    Executes provisioning workflows asynchronously.

    Usage:
        executor = ProvisioningExecutor(ProvisioningWorkflow(client), JobRegistry())
        job = executor.start(node_uuid, TransitionAction.ACTIVE, payload)
        executor.wait(job.job_id, timeout=3600)
        executor.cancel(job.job_id)
    """

    def __init__(self, workflow: ProvisioningWorkflow, registry: Optional[JobRegistry] = None):
        """Initialize executor with a workflow driver and job registry."""
        self.workflow = workflow
        self.registry = registry or JobRegistry()
        self._threads: Dict[str, threading.Thread] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def start(
        self,
        node_id: str,
        target: TransitionAction,
        payload: Optional[ProvisioningPayload] = None,
    ) -> ProvisioningJob:
        """
        Start a workflow for node_id in a background thread.

        Raises:
            ConflictError: A workflow is already running for this node
            ValueError: target is not a supported outcome
        """
        self.workflow.planner.outcome_for(target)

        with self._lock:
            existing = self.registry.get_active_job(node_id)
            if existing:
                raise ConflictError(
                    f"Node {node_id} already has running job {existing.job_id} "
                    f"to '{existing.target}'"
                )

            job = self.registry.create_job(node_id, target.value)
            cancel = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(job.job_id, node_id, target, payload, cancel),
                name=f"provision-{node_id}",
                daemon=True,
            )
            self._threads[job.job_id] = thread
            self._cancel_events[job.job_id] = cancel
            thread.start()

        return job

    def _run(
        self,
        job_id: str,
        node_id: str,
        target: TransitionAction,
        payload: Optional[ProvisioningPayload],
        cancel: threading.Event,
    ) -> None:
        """Execute one workflow and record how it ended."""
        self.registry.update_job(job_id, status=JobStatus.RUNNING)

        try:
            node = self.workflow.run(
                node_id,
                target,
                payload=payload,
                cancel=cancel,
                on_state=lambda seen: self.registry.update_job(
                    job_id, provision_state=seen.provision_state.value
                ),
            )
            self.registry.complete_job(job_id, provision_state=node.provision_state.value)

        except WorkflowCancelledError as e:
            self.registry.cancel_job(job_id, provision_state=e.state or "")

        except WorkflowError as e:
            self.registry.fail_job(job_id, str(e), provision_state=e.state or "")

        except ProvisioningError as e:
            self.registry.fail_job(job_id, str(e))

        except Exception as e:
            logger.exception(f"[{node_id}] Provisioning job {job_id} crashed")
            self.registry.fail_job(job_id, f"Unexpected error: {e}")

        finally:
            with self._lock:
                self._threads.pop(job_id, None)
                self._cancel_events.pop(job_id, None)

    def is_job_running(self, job_id: str) -> bool:
        """Check if a job's thread is still running."""
        thread = self._threads.get(job_id)
        return thread is not None and thread.is_alive()

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[ProvisioningJob]:
        """Block until the job's thread exits (or timeout); return the job record."""
        thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        return self.registry.get_job(job_id)

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation of a running job.

        The workflow notices within one poll tick and leaves the node in
        whatever state it was last observed in.
        """
        event = self._cancel_events.get(job_id)
        if event is None:
            return False

        logger.info(f"Cancelling provisioning job {job_id}")
        event.set()
        return True

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel every running job and wait for threads to exit."""
        with self._lock:
            job_ids = list(self._threads)
        for job_id in job_ids:
            self.cancel(job_id)
        for job_id in job_ids:
            self.wait(job_id, timeout)


# Global executor instance
_executor: Optional[ProvisioningExecutor] = None


def get_executor() -> ProvisioningExecutor:
    """Get or create the global executor backed by the settings-configured client."""
    global _executor
    if _executor is None:
        from config.settings import get_settings
        from core.ironic_client import get_client

        settings = get_settings()
        _executor = ProvisioningExecutor(
            ProvisioningWorkflow(get_client(), settings=settings.workflow),
            JobRegistry(max_history=settings.job_history),
        )
    return _executor
