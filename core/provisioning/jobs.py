"""
Provisioning job tracking.

In-memory registry of workflow invocations run by the executor: which
node, which target, where it got to and how it ended. Records are
bookkeeping for callers; the node's real state always comes from the API.
"""

import logging
import threading
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from core.timestamps import isonow, seconds_between

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Provisioning job status values."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


@dataclass
class ProvisioningJob:
    """
    A single workflow invocation.

    Attributes:
        job_id: Unique job identifier
        node_id: Target node UUID
        target: Requested outcome (provision target value)
        status: Current job status
        provision_state: Last provision state reported back
        started_at: Job start timestamp (ISO format)
        completed_at: Job completion timestamp (ISO format)
        error: Error message if failed
    """

    job_id: str
    node_id: str
    target: str
    status: JobStatus
    provision_state: str = ""
    started_at: str = ""
    completed_at: str = ""
    error: str = ""

    @property
    def duration_s(self) -> Optional[float]:
        if not self.started_at or not self.completed_at:
            return None
        return seconds_between(self.started_at, self.completed_at)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        data = asdict(self)
        data["status"] = self.status.value
        data["duration_s"] = self.duration_s
        return data


class JobRegistry:
    """
    Thread-safe in-memory job registry.

    Usage:
        registry = JobRegistry()
        job = registry.create_job(node_uuid, "active")
        registry.update_job(job.job_id, status=JobStatus.RUNNING)
        registry.complete_job(job.job_id, provision_state="active")
    """

    def __init__(self, max_history: int = 100):
        """
        Args:
            max_history: Maximum finished jobs to retain
        """
        self.max_history = max_history
        self._jobs: Dict[str, ProvisioningJob] = {}
        self._lock = threading.RLock()

    def _generate_job_id(self) -> str:
        return f"prov-{uuid.uuid4().hex[:8]}"

    def create_job(self, node_id: str, target: str) -> ProvisioningJob:
        """Register a new pending job."""
        with self._lock:
            job = ProvisioningJob(
                job_id=self._generate_job_id(),
                node_id=node_id,
                target=target,
                status=JobStatus.PENDING,
                started_at=isonow(),
            )
            self._jobs[job.job_id] = job

            logger.info(
                f"[{node_id}] Created provisioning job {job.job_id} to '{target}'",
                extra={"job_id": job.job_id, "node_id": node_id},
            )
            return job

    def update_job(
        self,
        job_id: str,
        status: Optional[JobStatus] = None,
        provision_state: Optional[str] = None,
    ) -> Optional[ProvisioningJob]:
        """
        Update job status and/or last seen provision state.

        Returns:
            Updated job or None if not found
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                logger.warning(f"Job {job_id} not found")
                return None

            if status:
                job.status = status
            if provision_state:
                job.provision_state = provision_state

            return job

    def complete_job(self, job_id: str, provision_state: str = "") -> Optional[ProvisioningJob]:
        """Mark job as completed successfully."""
        return self._finish(job_id, JobStatus.COMPLETED, provision_state=provision_state)

    def fail_job(
        self,
        job_id: str,
        error: str,
        provision_state: str = "",
    ) -> Optional[ProvisioningJob]:
        """Mark job as failed."""
        return self._finish(job_id, JobStatus.FAILED, provision_state=provision_state, error=error)

    def cancel_job(self, job_id: str, provision_state: str = "") -> Optional[ProvisioningJob]:
        """Mark job as cancelled."""
        return self._finish(job_id, JobStatus.CANCELLED, provision_state=provision_state)

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        provision_state: str = "",
        error: str = "",
    ) -> Optional[ProvisioningJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None

            if job.status not in ACTIVE_STATUSES:
                logger.warning(f"Job {job_id} already finished as {job.status.value}")
                return job

            job.status = status
            job.completed_at = isonow()
            if provision_state:
                job.provision_state = provision_state
            if error:
                job.error = error

            self._prune_old_jobs()

            log = logger.error if status == JobStatus.FAILED else logger.info
            log(
                f"[{job.node_id}] Job {job_id} {status.value}"
                + (f": {error}" if error else ""),
                extra={"job_id": job_id, "node_id": job.node_id, "duration_s": job.duration_s},
            )
            return job

    def get_job(self, job_id: str) -> Optional[ProvisioningJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def get_active_job(self, node_id: str) -> Optional[ProvisioningJob]:
        """Pending or running job for a node, if any."""
        with self._lock:
            for job in self._jobs.values():
                if job.node_id == node_id and job.status in ACTIVE_STATUSES:
                    return job
            return None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        node_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[ProvisioningJob]:
        """
        List jobs with optional filters.

        Returns:
            List of matching jobs (newest first)
        """
        with self._lock:
            jobs = list(self._jobs.values())

            if status:
                jobs = [j for j in jobs if j.status == status]

            if node_id:
                jobs = [j for j in jobs if j.node_id == node_id]

            jobs.sort(key=lambda j: j.started_at, reverse=True)

            return jobs[:limit]

    def _prune_old_jobs(self) -> None:
        """Remove oldest finished jobs beyond max_history."""
        finished = [j for j in self._jobs.values() if j.status not in ACTIVE_STATUSES]

        if len(finished) > self.max_history:
            finished.sort(key=lambda j: j.completed_at or "", reverse=True)
            for job in finished[self.max_history:]:
                del self._jobs[job.job_id]
                logger.debug(f"Pruned old job {job.job_id}")
