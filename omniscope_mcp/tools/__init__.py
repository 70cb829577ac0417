"""MCP tool modules."""

from omniscope_mcp.tools.workflow_tools import (
    TOOL_ALIASES,
    TOOL_SPECS,
    WorkflowTools,
    canonical_tool_name,
)

__all__ = ["TOOL_ALIASES", "TOOL_SPECS", "WorkflowTools", "canonical_tool_name"]
