"""Thin async client for the Omniscope Workflow REST API.

Keeps networking, authentication and error normalisation out of the MCP tool
definitions. All calls are bounded by ``ServerConfig.request_timeout_ms``; the
in-flight request is cancelled when the budget runs out.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx

from omniscope_mcp.config import ServerConfig, resolve_base_url, validate_project_path
from omniscope_mcp.constants import DEFAULT_POLL_INTERVAL_S
from omniscope_mcp.errors import (
    UpstreamError,
    UpstreamHTTPError,
    UpstreamTimeoutError,
    ValidationError,
)

_log = logging.getLogger("omniscope_mcp.clients.workflow")


class JobState(str, Enum):
    """Lifecycle states reported by ``GET {p}/w/job/{jobId}/state``."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_JOB_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})
JOB_NOT_FOUND = "JOB_NOT_FOUND"


def is_terminal_job_state(response: dict[str, Any]) -> bool:
    """True when a job state payload will not change any more."""
    if response.get("errorType") == JOB_NOT_FOUND:
        return True
    return response.get("jobState") in {state.value for state in TERMINAL_JOB_STATES}


class WorkflowClient:
    """Wraps all workflow REST calls and enforces the server-side config constraints."""

    def __init__(self, config: ServerConfig, base_url: str, http: httpx.AsyncClient) -> None:
        self.config = config
        self.base_url = base_url
        self._http = http

    def _build_url(self, project_path: str, suffix: str) -> str:
        base = self.base_url.rstrip("/")
        clean = project_path if project_path.startswith("/") else f"/{project_path}"
        return f"{base}{clean.rstrip('/')}{suffix}"

    def _auth_headers(self) -> dict[str, str]:
        auth = self.config.auth
        if auth.type == "bearer" and auth.token:
            return {"Authorization": f"Bearer {auth.token}"}
        if auth.type == "basic" and auth.username:
            raw = f"{auth.username}:{auth.password}".encode()
            return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}
        return {}

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.reason_phrase or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            for key in ("message", "errorMessage", "error"):
                value = data.get(key)
                if isinstance(value, str) and value:
                    return value
            return json.dumps(data)
        return str(data)

    async def _request(self, method: str, url: str, body: dict[str, Any] | None = None) -> Any:
        headers = {"Accept": "application/json", **self._auth_headers()}
        content: bytes | None = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            content = json.dumps(body).encode("utf-8")

        timeout_s = self.config.request_timeout_ms / 1000
        try:
            response = await asyncio.wait_for(
                self._http.request(method, url, headers=headers, content=content),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            _log.warning("upstream_timeout method=%s url=%s", method, url)
            raise UpstreamTimeoutError(url, self.config.request_timeout_ms) from None
        except httpx.HTTPError as e:
            raise UpstreamError(f"Workflow API request failed: {e}") from e

        if not response.is_success:
            raise UpstreamHTTPError(response.status_code, self._error_message(response))

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"Workflow API returned invalid JSON from {url}") from e

    def _dry_run_preview(self, project_path: str, url: str, body: dict[str, Any]) -> dict[str, Any]:
        return {
            "dryRun": True,
            "projectPath": project_path,
            "baseUrl": self.base_url,
            "method": "POST",
            "url": url,
            "body": body,
        }

    @staticmethod
    def _execute_body(
        blocks: list[str] | None,
        refresh_from_source: bool | None,
        cancel_existing: bool | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if blocks is not None:
            body["blocks"] = list(blocks)
        if refresh_from_source is not None:
            body["refreshFromSource"] = refresh_from_source
        if cancel_existing is not None:
            body["cancelExisting"] = cancel_existing
        return body

    # Endpoints

    async def execute_workflow(
        self,
        project_path: str,
        blocks: list[str] | None = None,
        refresh_from_source: bool | None = None,
        cancel_existing: bool | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Trigger an in-place workflow run, or preview it when ``dry_run`` is set."""
        path = validate_project_path(self.config, project_path)
        url = self._build_url(path, "/w/execute")
        body = self._execute_body(blocks, refresh_from_source, cancel_existing)
        if dry_run:
            return self._dry_run_preview(path, url, body)
        return await self._request("POST", url, body)

    async def lambda_execute_workflow(
        self,
        project_path: str,
        blocks: list[str] | None = None,
        refresh_from_source: bool | None = None,
        cancel_existing: bool | None = None,
        params: dict[str, Any] | None = None,
        delete_execution_on_finish: bool | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Run a temporary lambda copy of the workflow, optionally overriding parameters."""
        path = validate_project_path(self.config, project_path)
        url = self._build_url(path, "/w/lambda/execute")
        body = self._execute_body(blocks, refresh_from_source, cancel_existing)
        if params is not None:
            body["params"] = params
        if delete_execution_on_finish is not None:
            body["deleteExecutionOnFinish"] = delete_execution_on_finish
        if dry_run:
            return self._dry_run_preview(path, url, body)
        return await self._request("POST", url, body)

    async def get_job_state(self, project_path: str, job_id: str) -> dict[str, Any]:
        """Read the state of a job started by one of the execute calls."""
        path = validate_project_path(self.config, project_path)
        if not job_id or not job_id.strip():
            raise ValidationError("job_id is required")
        url = self._build_url(path, f"/w/job/{quote(job_id.strip(), safe='')}/state")
        return await self._request("GET", url)

    async def get_parameters(self, project_path: str, parameter_name: str | None = None) -> dict[str, Any]:
        """Read all project parameters, or one when ``parameter_name`` is set."""
        path = validate_project_path(self.config, project_path)
        suffix = f"/w/param/{quote(parameter_name, safe='')}" if parameter_name else "/w/param"
        return await self._request("GET", self._build_url(path, suffix))

    async def update_parameters(
        self,
        project_path: str,
        updates: list[dict[str, Any]],
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Update project parameters, or preview the update when ``dry_run`` is set."""
        path = validate_project_path(self.config, project_path)
        if not updates:
            raise ValidationError("updates must contain at least one entry")
        url = self._build_url(path, "/w/updateparams")
        body = {"updates": [{"name": u["name"], "value": u.get("value")} for u in updates]}
        if dry_run:
            preview = self._dry_run_preview(path, url, body)
            preview["updates"] = body["updates"]
            return preview
        return await self._request("POST", url, body)


def create_workflow_client(
    config: ServerConfig,
    http: httpx.AsyncClient,
    base_url: str | None = None,
) -> WorkflowClient:
    """Instantiate a WorkflowClient against the default or an allow-listed base URL."""
    return WorkflowClient(config, resolve_base_url(config, base_url), http)


async def wait_for_job(
    client: WorkflowClient,
    project_path: str,
    job_id: str,
    interval: float = DEFAULT_POLL_INTERVAL_S,
    max_wait: float | None = None,
    on_state: Callable[[dict[str, Any]], None] | None = None,
) -> dict[str, Any]:
    """Poll job state until it is terminal and return the final payload.

    Args:
        client: Client bound to the project's server.
        project_path: Project that owns the job.
        job_id: Identifier returned by an execute call.
        interval: Seconds between polls.
        max_wait: Give up after this many seconds (None waits forever).
        on_state: Called with the payload whenever the reported state changes.

    Raises:
        UpstreamTimeoutError: when ``max_wait`` elapses first.
    """
    started = time.monotonic()
    last_state: Any = None
    while True:
        response = await client.get_job_state(project_path, job_id)
        state = response.get("jobState")
        if on_state is not None and state != last_state:
            on_state(response)
        last_state = state
        if is_terminal_job_state(response):
            return response
        if max_wait is not None and time.monotonic() - started >= max_wait:
            raise UpstreamTimeoutError(f"job {job_id}", int(max_wait * 1000))
        await asyncio.sleep(interval)
