"""End-to-end tests for the HTTP gateway: session lifecycle, routing and auth."""

import asyncio
import base64
import json
from collections.abc import Awaitable, Callable, Iterator
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from omniscope_mcp.config import ServerConfig
from omniscope_mcp.constants import SESSION_HEADER
from omniscope_mcp.server import create_app

PROJECT = "/mcptest/demo.iox"

INITIALIZE = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {"protocolVersion": "2025-03-26", "capabilities": {}, "clientInfo": {"name": "pytest", "version": "0"}},
}


def _rpc(method: str, params: dict[str, Any] | None = None, request_id: int = 2) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def _tool_payload(response_json: dict[str, Any]) -> Any:
    return json.loads(response_json["result"]["content"][0]["text"])


@pytest.fixture
def client(make_config: Callable[..., ServerConfig], upstream: Any) -> Iterator[TestClient]:
    with TestClient(create_app(make_config(), transport=upstream.transport)) as test_client:
        yield test_client


def _initialize(client: TestClient) -> str:
    response = client.post("/mcp", json=INITIALIZE)
    assert response.status_code == 200
    return response.headers[SESSION_HEADER]


class TestSessionLifecycle:
    def test_initialize_issues_session_id(self, client: TestClient) -> None:
        response = client.post("/mcp", json=INITIALIZE)

        assert response.status_code == 200
        assert response.headers[SESSION_HEADER]
        result = response.json()["result"]
        assert result["serverInfo"]["name"] == "omniscope-workflow-mcp"
        assert result["protocolVersion"] == "2025-03-26"
        assert "tools" in result["capabilities"]

    @pytest.mark.parametrize("version", ["2024-11-05", "2025-03-26", "2025-06-18"])
    def test_supported_protocol_version_is_echoed(self, client: TestClient, version: str) -> None:
        message = {**INITIALIZE, "params": {**INITIALIZE["params"], "protocolVersion": version}}

        response = client.post("/mcp", json=message)

        assert response.json()["result"]["protocolVersion"] == version

    @pytest.mark.parametrize("version", ["1999-01-01", None, 3])
    def test_unsupported_protocol_version_gets_server_default(self, client: TestClient, version: Any) -> None:
        message = {**INITIALIZE, "params": {**INITIALIZE["params"], "protocolVersion": version}}

        response = client.post("/mcp", json=message)

        assert response.json()["result"]["protocolVersion"] == "2025-03-26"

    def test_each_initialize_gets_a_new_session(self, client: TestClient) -> None:
        assert _initialize(client) != _initialize(client)

    def test_known_session_is_reused(self, client: TestClient) -> None:
        session_id = _initialize(client)

        response = client.post("/mcp", json=_rpc("ping"), headers={SESSION_HEADER: session_id})

        assert response.status_code == 200
        assert response.headers[SESSION_HEADER] == session_id
        assert response.json() == {"jsonrpc": "2.0", "id": 2, "result": {}}

    def test_missing_session_id_is_rejected(self, client: TestClient) -> None:
        response = client.post("/mcp", json=_rpc("tools/list"))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32000

    def test_unknown_session_id_is_rejected(self, client: TestClient) -> None:
        response = client.post("/mcp", json=_rpc("tools/list"), headers={SESSION_HEADER: "no-such-session"})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == -32001
        assert response.json()["id"] == 2

    def test_initialize_with_unknown_session_id_is_rejected(self, client: TestClient) -> None:
        response = client.post("/mcp", json=INITIALIZE, headers={SESSION_HEADER: "stale"})

        assert response.status_code == 404

    def test_delete_closes_session(self, client: TestClient) -> None:
        session_id = _initialize(client)

        assert client.delete("/mcp", headers={SESSION_HEADER: session_id}).status_code == 204
        assert client.delete("/mcp", headers={SESSION_HEADER: session_id}).status_code == 404
        response = client.post("/mcp", json=_rpc("ping"), headers={SESSION_HEADER: session_id})
        assert response.status_code == 404

    def test_delete_without_session_id(self, client: TestClient) -> None:
        assert client.delete("/mcp").status_code == 400

    def test_expired_session_is_unknown(self, make_config: Callable[..., ServerConfig], upstream: Any) -> None:
        app = create_app(make_config(session_ttl_ms=1), transport=upstream.transport)
        with TestClient(app) as client:
            session_id = _initialize(client)
            app.state.sessions.get_session(session_id).last_seen_at -= 10

            response = client.post("/mcp", json=_rpc("ping"), headers={SESSION_HEADER: session_id})

        assert response.status_code == 404


class TestRouting:
    def test_notification_gets_202_without_body(self, client: TestClient) -> None:
        session_id = _initialize(client)

        response = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "method": "notifications/initialized"},
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 202
        assert response.content == b""

    def test_tools_list(self, client: TestClient) -> None:
        session_id = _initialize(client)

        response = client.post("/mcp", json=_rpc("tools/list"), headers={SESSION_HEADER: session_id})

        names = {tool["name"] for tool in response.json()["result"]["tools"]}
        assert names == {
            "workflow_execute",
            "workflow_execute_lambda",
            "workflow_get_job_state",
            "workflow_get_parameters",
            "workflow_update_parameters",
        }

    def test_unknown_method(self, client: TestClient) -> None:
        session_id = _initialize(client)

        response = client.post("/mcp", json=_rpc("resources/list"), headers={SESSION_HEADER: session_id})

        assert response.json()["error"]["code"] == -32601

    def test_tools_call_without_name_is_invalid_params(self, client: TestClient) -> None:
        session_id = _initialize(client)

        response = client.post("/mcp", json=_rpc("tools/call", {"arguments": {}}), headers={SESSION_HEADER: session_id})

        assert response.json()["error"]["code"] == -32602

    def test_wrong_jsonrpc_version(self, client: TestClient) -> None:
        session_id = _initialize(client)

        response = client.post(
            "/mcp", json={"jsonrpc": "1.0", "id": 5, "method": "ping"}, headers={SESSION_HEADER: session_id}
        )

        assert response.json()["error"]["code"] == -32600

    def test_malformed_json_is_parse_error(self, client: TestClient) -> None:
        response = client.post("/mcp", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700

    def test_batch(self, client: TestClient) -> None:
        session_id = _initialize(client)

        response = client.post(
            "/mcp",
            json=[_rpc("ping", request_id=10), {"jsonrpc": "2.0", "method": "notifications/x"}, _rpc("ping", request_id=11)],
            headers={SESSION_HEADER: session_id},
        )

        assert [reply["id"] for reply in response.json()] == [10, 11]


class TestToolCallsOverHttp:
    def test_dry_run_execute_makes_no_upstream_call(self, client: TestClient, upstream: Any) -> None:
        session_id = _initialize(client)

        response = client.post(
            "/mcp",
            json=_rpc("tools/call", {"name": "execute_workflow", "arguments": {"project_path": PROJECT, "dry_run": True}}),
            headers={SESSION_HEADER: session_id},
        )

        payload = _tool_payload(response.json())
        assert payload["dryRun"] is True
        assert payload["projectPath"] == PROJECT
        assert upstream.requests == []

    def test_job_state_is_passed_through(self, client: TestClient, upstream: Any) -> None:
        upstream.route("GET", f"{PROJECT}/w/job/abc/state", json_body={"jobState": "COMPLETED"})
        session_id = _initialize(client)

        response = client.post(
            "/mcp",
            json=_rpc("tools/call", {"name": "get_job_state", "arguments": {"project_path": PROJECT, "job_id": "abc"}}),
            headers={SESSION_HEADER: session_id},
        )

        assert _tool_payload(response.json()) == {"jobState": "COMPLETED"}
        assert "isError" not in response.json()["result"]

    def test_tool_errors_are_results_not_rpc_errors(self, client: TestClient, upstream: Any) -> None:
        upstream.route("GET", f"{PROJECT}/w/param", status=500, json_body={"error": "boom"})
        session_id = _initialize(client)

        response = client.post(
            "/mcp",
            json=_rpc("tools/call", {"name": "workflow_get_parameters", "arguments": {"project_path": PROJECT}}),
            headers={SESSION_HEADER: session_id},
        )

        body = response.json()
        assert "error" not in body
        assert body["result"]["isError"] is True
        assert _tool_payload(body)["error_code"] == "UPSTREAM_HTTP_ERROR"


class TestGatewayAuth:
    @pytest.fixture
    def secured(self, make_config: Callable[..., ServerConfig], upstream: Any) -> Iterator[TestClient]:
        config = make_config(gateway_username="mcp", gateway_password="pw")
        with TestClient(create_app(config, transport=upstream.transport)) as test_client:
            yield test_client

    @staticmethod
    def _basic(username: str, password: str) -> dict[str, str]:
        token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
        return {"Authorization": f"Basic {token}"}

    def test_missing_credentials(self, secured: TestClient) -> None:
        response = secured.post("/mcp", json=INITIALIZE)

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"].startswith("Basic")
        assert response.json()["error"]["code"] == -32002

    def test_wrong_credentials(self, secured: TestClient) -> None:
        assert secured.post("/mcp", json=INITIALIZE, headers=self._basic("mcp", "nope")).status_code == 401

    def test_valid_credentials(self, secured: TestClient) -> None:
        response = secured.post("/mcp", json=INITIALIZE, headers=self._basic("mcp", "pw"))

        assert response.status_code == 200
        assert response.headers[SESSION_HEADER]

    def test_delete_requires_credentials(self, secured: TestClient) -> None:
        assert secured.delete("/mcp", headers={SESSION_HEADER: "x"}).status_code == 401


class TestHealth:
    def test_without_health_project(self, client: TestClient) -> None:
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "message": "No health check project configured"}

    def test_healthy_upstream(self, make_config: Callable[..., ServerConfig], upstream: Any) -> None:
        upstream.route("GET", "/health.iox/w/param", json_body={})
        config = make_config(health_project_path="/health.iox")
        with TestClient(create_app(config, transport=upstream.transport)) as client:
            response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_failing_upstream(self, make_config: Callable[..., ServerConfig], upstream: Any) -> None:
        config = make_config(health_project_path="/missing.iox")
        with TestClient(create_app(config, transport=upstream.transport)) as client:
            response = client.get("/healthz")

        assert response.status_code == 500
        assert response.json()["status"] == "error"


class _SlowUpstream:
    """Answers every call after a delay and records how many calls overlap."""

    def __init__(self, delay_s: float) -> None:
        self.delay_s = delay_s
        self.active = 0
        self.max_active = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay_s)
        finally:
            self.active -= 1
        return httpx.Response(200, json={"jobState": "RUNNING"})


def _job_state_call(request_id: int) -> dict[str, Any]:
    return _rpc(
        "tools/call",
        {"name": "workflow_get_job_state", "arguments": {"project_path": PROJECT, "job_id": "abc"}},
        request_id=request_id,
    )


class TestConcurrentRequests:
    @staticmethod
    def _run(config: ServerConfig, slow: _SlowUpstream, scenario: Callable[[httpx.AsyncClient], Awaitable[Any]]) -> Any:
        app = create_app(config, transport=httpx.MockTransport(slow))

        async def run() -> Any:
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
                try:
                    return await scenario(http)
                finally:
                    await app.state.sessions.close_all()

        return asyncio.run(run())

    @staticmethod
    async def _open(http: httpx.AsyncClient) -> str:
        response = await http.post("/mcp", json=INITIALIZE)
        return response.headers[SESSION_HEADER]

    def test_requests_on_one_session_do_not_overlap(self, make_config: Callable[..., ServerConfig]) -> None:
        slow = _SlowUpstream(delay_s=0.1)

        async def scenario(http: httpx.AsyncClient) -> list[httpx.Response]:
            headers = {SESSION_HEADER: await self._open(http)}
            return list(
                await asyncio.gather(
                    http.post("/mcp", json=_job_state_call(1), headers=headers),
                    http.post("/mcp", json=_job_state_call(2), headers=headers),
                )
            )

        responses = self._run(make_config(), slow, scenario)

        assert [r.status_code for r in responses] == [200, 200]
        assert all("isError" not in r.json()["result"] for r in responses)
        assert slow.max_active == 1

    def test_separate_sessions_run_concurrently(self, make_config: Callable[..., ServerConfig]) -> None:
        slow = _SlowUpstream(delay_s=0.1)

        async def scenario(http: httpx.AsyncClient) -> None:
            first = {SESSION_HEADER: await self._open(http)}
            second = {SESSION_HEADER: await self._open(http)}
            await asyncio.gather(
                http.post("/mcp", json=_job_state_call(1), headers=first),
                http.post("/mcp", json=_job_state_call(2), headers=second),
            )

        self._run(make_config(), slow, scenario)

        assert slow.max_active == 2

    def test_close_while_request_is_queued(self, make_config: Callable[..., ServerConfig]) -> None:
        slow = _SlowUpstream(delay_s=0.3)

        async def scenario(http: httpx.AsyncClient) -> tuple[httpx.Response, httpx.Response, httpx.Response]:
            headers = {SESSION_HEADER: await self._open(http)}
            running = asyncio.create_task(http.post("/mcp", json=_job_state_call(1), headers=headers))
            await asyncio.sleep(0.05)
            queued = asyncio.create_task(http.post("/mcp", json=_job_state_call(2), headers=headers))
            await asyncio.sleep(0.05)
            closed = await http.delete("/mcp", headers=headers)
            return await running, await queued, closed

        running, queued, closed = self._run(make_config(), slow, scenario)

        assert closed.status_code == 204
        assert running.status_code == 200
        assert json.loads(running.json()["result"]["content"][0]["text"]) == {"jobState": "RUNNING"}
        assert queued.status_code == 404
        assert queued.json()["error"]["code"] == -32001
        assert queued.json()["id"] == 2
