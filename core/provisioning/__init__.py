"""
Provision state workflows for bare metal nodes.

This package drives a node through the remote service's provisioning
state machine until it reaches a requested outcome:
- State/transition model mirroring the documented state diagram
- Planner choosing the next single legal transition
- Workflow driver polling with bounded attempts, deadline and cancellation
- Executor running workflows for many nodes in background threads

Usage:
    from core.ironic_client import get_client
    from core.provisioning import (
        ProvisioningPayload,
        TransitionAction,
        get_executor,
        run_provisioning_workflow,
    )

    # Deploy a node, from wherever it currently is
    node = run_provisioning_workflow(
        get_client(),
        "1be26c0b-03f2-4d2e-ae87-c02d7f33c123",
        TransitionAction.ACTIVE,
        payload=ProvisioningPayload(config_drive=drive),
    )

    # Or in the background
    executor = get_executor()
    job = executor.start(node_uuid, TransitionAction.DELETED)
    executor.cancel(job.job_id)
"""

from core.provisioning.states import (
    DEFAULT_TABLE,
    ProvisionState,
    StateTransition,
    TransitionAction,
    TransitionTable,
    is_terminal_failure,
    is_transient,
)
from core.provisioning.payload import (
    ConfigDriveBlob,
    ProvisioningPayload,
    Step,
    StructuredConfigDrive,
    build_config_drive,
)
from core.provisioning.planner import (
    PlannedStep,
    StepKind,
    TransitionPlanner,
    WorkflowRun,
)
from core.provisioning.workflow import (
    ProvisioningWorkflow,
    run_provisioning_workflow,
)
from core.provisioning.jobs import (
    JobRegistry,
    JobStatus,
    ProvisioningJob,
)
from core.provisioning.executor import (
    ProvisioningExecutor,
    get_executor,
)

__all__ = [
    "DEFAULT_TABLE",
    "ProvisionState",
    "StateTransition",
    "TransitionAction",
    "TransitionTable",
    "is_terminal_failure",
    "is_transient",
    "ConfigDriveBlob",
    "ProvisioningPayload",
    "Step",
    "StructuredConfigDrive",
    "build_config_drive",
    "PlannedStep",
    "StepKind",
    "TransitionPlanner",
    "WorkflowRun",
    "ProvisioningWorkflow",
    "run_provisioning_workflow",
    "JobRegistry",
    "JobStatus",
    "ProvisioningJob",
    "ProvisioningExecutor",
    "get_executor",
]
