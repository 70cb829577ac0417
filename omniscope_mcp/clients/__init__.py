"""Upstream Omniscope REST API clients."""

from omniscope_mcp.clients.workflow import (
    JobState,
    WorkflowClient,
    create_workflow_client,
    is_terminal_job_state,
    wait_for_job,
)

__all__ = [
    "JobState",
    "WorkflowClient",
    "create_workflow_client",
    "is_terminal_job_state",
    "wait_for_job",
]
