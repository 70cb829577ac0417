"""Workflow API tools exposed over MCP.

Each tool:
  - validates its input against a declared pydantic model,
  - logs the call, its arguments and its result or error (disable with MCP_LOG_TOOLS=false),
  - maps the tool-facing arguments onto WorkflowClient keyword arguments,
  - wraps the JSON response into a single MCP text content block.

Tool names follow the ``workflow_*`` convention; the older short names
(``execute_workflow`` and friends) are accepted as aliases.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from omniscope_mcp.clients.workflow import create_workflow_client
from omniscope_mcp.config import ServerConfig
from omniscope_mcp.errors import (
    UpstreamError,
    UpstreamHTTPError,
    UpstreamTimeoutError,
    ValidationError,
)

_log = logging.getLogger("omniscope_mcp.tools")


# Input models (tool-facing validation)


class _ToolArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ExecuteArgs(_ToolArgs):
    project_path: str = Field(description='Path to the Omniscope project, e.g. "/mcptest/myproject.iox"')
    blocks: list[str] | None = Field(default=None, description="Block names to execute; all blocks when omitted")
    refresh_from_source: bool | None = Field(
        default=None, description="Refresh data from source before execution"
    )
    cancel_existing: bool | None = Field(default=None, description="Cancel any existing run for this project")
    dry_run: bool | None = Field(default=None, description="Validate and report, do not execute")
    base_url: str | None = Field(default=None, description="Allow-listed Omniscope server to call instead of the default")


class LambdaExecuteArgs(ExecuteArgs):
    params: dict[str, Any] | None = Field(default=None, description="Parameter values to override in the lambda copy")
    delete_execution_on_finish: bool | None = Field(
        default=None, description="Delete the lambda copy after it finishes"
    )


class JobStateArgs(_ToolArgs):
    project_path: str = Field(description="Path to the project that owns the job")
    job_id: str = Field(description="Identifier returned by execute or lambda execute")
    base_url: str | None = Field(default=None, description="Allow-listed Omniscope server to call instead of the default")


class GetParametersArgs(_ToolArgs):
    project_path: str = Field(description="Path to the project")
    parameter_name: str | None = Field(default=None, description="Fetch only this parameter")
    base_url: str | None = Field(default=None, description="Allow-listed Omniscope server to call instead of the default")


class ParameterUpdate(_ToolArgs):
    name: str
    value: Any = Field(...)


class UpdateParametersArgs(_ToolArgs):
    project_path: str = Field(description="Path to the project")
    updates: list[ParameterUpdate] = Field(min_length=1, description="List of {name, value} pairs")
    dry_run: bool | None = Field(default=None, description="Do not persist updates; just preview")
    base_url: str | None = Field(default=None, description="Allow-listed Omniscope server to call instead of the default")


@dataclass(frozen=True)
class ToolSpec:
    name: str
    alias: str
    title: str
    description: str
    input_model: type[_ToolArgs]
    client_method: str
    # tool argument name -> WorkflowClient keyword argument
    argument_map: dict[str, str]
    annotations: dict[str, Any] = field(default_factory=dict)


_EXECUTE_ARGUMENTS = {
    "project_path": "project_path",
    "blocks": "blocks",
    "refresh_from_source": "refresh_from_source",
    "cancel_existing": "cancel_existing",
    "dry_run": "dry_run",
}

_TOOL_SPECS: list[ToolSpec] = [
    ToolSpec(
        name="workflow_execute",
        alias="execute_workflow",
        title="Execute workflow",
        description="Execute an Omniscope workflow project and return the job identifier.",
        input_model=ExecuteArgs,
        client_method="execute_workflow",
        argument_map=_EXECUTE_ARGUMENTS,
        annotations={"readOnlyHint": False, "destructiveHint": False, "openWorldHint": True},
    ),
    ToolSpec(
        name="workflow_execute_lambda",
        alias="lambda_execute_workflow",
        title="Lambda execute workflow",
        description="Execute an Omniscope workflow as a lambda copy with optional parameters.",
        input_model=LambdaExecuteArgs,
        client_method="lambda_execute_workflow",
        argument_map={
            **_EXECUTE_ARGUMENTS,
            "params": "params",
            "delete_execution_on_finish": "delete_execution_on_finish",
        },
        annotations={"readOnlyHint": False, "destructiveHint": False, "openWorldHint": True},
    ),
    ToolSpec(
        name="workflow_get_job_state",
        alias="get_job_state",
        title="Get job state",
        description="Retrieve the state of a workflow job using its identifier.",
        input_model=JobStateArgs,
        client_method="get_job_state",
        argument_map={"project_path": "project_path", "job_id": "job_id"},
        annotations={"readOnlyHint": True, "idempotentHint": True, "openWorldHint": True},
    ),
    ToolSpec(
        name="workflow_get_parameters",
        alias="get_parameters",
        title="Get parameters",
        description="Fetch project parameters from an Omniscope workflow project.",
        input_model=GetParametersArgs,
        client_method="get_parameters",
        argument_map={"project_path": "project_path", "parameter_name": "parameter_name"},
        annotations={"readOnlyHint": True, "idempotentHint": True, "openWorldHint": True},
    ),
    ToolSpec(
        name="workflow_update_parameters",
        alias="update_parameters",
        title="Update parameters",
        description="Update project parameters in an Omniscope workflow project.",
        input_model=UpdateParametersArgs,
        client_method="update_parameters",
        argument_map={"project_path": "project_path", "updates": "updates", "dry_run": "dry_run"},
        annotations={"readOnlyHint": False, "destructiveHint": True, "openWorldHint": True},
    ),
]

TOOL_SPECS: dict[str, ToolSpec] = {spec.name: spec for spec in _TOOL_SPECS}
TOOL_ALIASES: dict[str, str] = {spec.alias: spec.name for spec in _TOOL_SPECS}


def canonical_tool_name(name: str) -> str:
    """Map a legacy alias onto the published ``workflow_*`` name."""
    return TOOL_ALIASES.get(name, name)


def to_json_result(payload: Any, is_error: bool = False) -> dict[str, Any]:
    """Wrap a JSON or string payload into an MCP tool result with one text block."""
    text = payload if isinstance(payload, str) else json.dumps(payload, indent=2, ensure_ascii=False)
    result: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def _error_result(*, code: str, message: str, tool: str, extra: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "success": False,
        "error": message,
        "error_code": code,
        "tool": tool,
    }
    if extra:
        payload.update(extra)
    return to_json_result(payload, is_error=True)


def _format_validation_error(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "arguments"
        parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(parts)


@dataclass
class ToolInvocation:
    """One tool call, kept only for the duration of the call."""

    tool_name: str
    raw_args: dict[str, Any]
    normalized_args: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str | None = None


class WorkflowTools:
    """Tool registry bound to one MCP session.

    Owns the HTTP connection pool used for upstream calls; ``aclose`` releases it.
    """

    def __init__(self, config: ServerConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        # Timeouts are enforced per call by WorkflowClient.
        self._http = httpx.AsyncClient(transport=transport, timeout=None)

    def _log_tools(self, message: str, data: Any = None) -> None:
        if not self.config.log_tools:
            return
        if data is None:
            _log.info("%s", message)
        else:
            _log.info("%s\n%s", message, json.dumps(data, indent=2, default=str))

    @staticmethod
    def list_tools() -> list[dict[str, Any]]:
        """MCP tool descriptors with JSON Schemas generated from the input models."""
        return [
            {
                "name": spec.name,
                "title": spec.title,
                "description": spec.description,
                "inputSchema": spec.input_model.model_json_schema(),
                "annotations": {"title": spec.title, **spec.annotations},
            }
            for spec in _TOOL_SPECS
        ]

    async def call(self, name: str, arguments: dict[str, Any] | None) -> dict[str, Any]:
        """Validate, dispatch and wrap one tool call."""
        spec = TOOL_SPECS.get(canonical_tool_name(name or ""))
        if spec is None:
            return _error_result(
                code="UNKNOWN_TOOL",
                message=f"Unknown tool: {name}",
                tool=str(name),
                extra={"available_tools": list(TOOL_SPECS)},
            )

        invocation = ToolInvocation(tool_name=spec.name, raw_args=dict(arguments or {}))
        self._log_tools(f"TOOL CALL: {spec.name} (raw args)", invocation.raw_args)

        try:
            parsed = spec.input_model.model_validate(invocation.raw_args)
        except PydanticValidationError as e:
            return self._fail(invocation, spec, "INVALID_ARGUMENT", _format_validation_error(e))

        # Explicit nulls count as omitted; nested values are kept verbatim.
        provided = {k: v for k, v in parsed.model_dump(exclude_unset=True).items() if v is not None}
        invocation.normalized_args = {
            client_arg: provided[tool_arg] for tool_arg, client_arg in spec.argument_map.items() if tool_arg in provided
        }
        self._log_tools(f"CLIENT CALL: {spec.client_method} (normalized args)", invocation.normalized_args)

        try:
            client = create_workflow_client(self.config, self._http, provided.get("base_url"))
            method = getattr(client, spec.client_method)
            invocation.result = await method(**invocation.normalized_args)
        except ValidationError as e:
            return self._fail(invocation, spec, "INVALID_ARGUMENT", str(e))
        except UpstreamHTTPError as e:
            return self._fail(invocation, spec, "UPSTREAM_HTTP_ERROR", str(e), {"status_code": e.status_code})
        except UpstreamTimeoutError as e:
            return self._fail(invocation, spec, "UPSTREAM_TIMEOUT", str(e))
        except UpstreamError as e:
            _log.warning("tool_error tool=%s error=%s", spec.name, e, extra={"tool": spec.name})
            return self._fail(invocation, spec, "UPSTREAM_ERROR", str(e))

        self._log_tools(f"CLIENT RESULT: {spec.client_method}", invocation.result)
        return to_json_result(invocation.result)

    def _fail(
        self,
        invocation: ToolInvocation,
        spec: ToolSpec,
        code: str,
        message: str,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        invocation.error = message
        self._log_tools(f"CLIENT ERROR: {spec.client_method}", {"error_code": code, "error": message, **(extra or {})})
        return _error_result(code=code, message=message, tool=spec.name, extra=extra)

    async def aclose(self) -> None:
        await self._http.aclose()
