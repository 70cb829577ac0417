"""Omniscope Workflow MCP server - session-scoped JSON-RPC over HTTP."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, cast

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from omniscope_mcp.auth import GatewayAuth
from omniscope_mcp.clients.workflow import create_workflow_client
from omniscope_mcp.config import ServerConfig
from omniscope_mcp.constants import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    MCP_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    MISSING_SESSION,
    PARSE_ERROR,
    SERVER_NAME,
    SERVER_VERSION,
    SESSION_HEADER,
    SUPPORTED_PROTOCOL_VERSIONS,
    UNAUTHORIZED,
    UNKNOWN_SESSION,
)
from omniscope_mcp.errors import OmniscopeError
from omniscope_mcp.session import Session, SessionManager
from omniscope_mcp.tools.workflow_tools import WorkflowTools

_gateway_log = logging.getLogger("omniscope_mcp.server")

RpcHandler = Callable[[Session, dict[str, Any]], Awaitable[dict[str, Any]]]


def rpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def rpc_result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def is_initialize_request(body: Any) -> bool:
    return isinstance(body, dict) and body.get("method") == "initialize"


# ============================================================================
# JSON-RPC method handlers
# ============================================================================


async def _rpc_initialize(session: Session, params: dict[str, Any]) -> dict[str, Any]:
    _ = session
    requested = params.get("protocolVersion")
    return {
        "protocolVersion": requested if requested in SUPPORTED_PROTOCOL_VERSIONS else MCP_PROTOCOL_VERSION,
        "capabilities": {"tools": {"listChanged": False}},
        "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        "instructions": "Run Omniscope workflows, poll job state and read or update project parameters.",
    }


async def _rpc_ping(session: Session, params: dict[str, Any]) -> dict[str, Any]:
    _ = session, params
    return {}


async def _rpc_tools_list(session: Session, params: dict[str, Any]) -> dict[str, Any]:
    _ = params
    return {"tools": session.registry.list_tools()}


async def _rpc_tools_call(session: Session, params: dict[str, Any]) -> dict[str, Any]:
    tool_name = params.get("name")
    if not isinstance(tool_name, str) or not tool_name:
        raise ValueError("tools/call requires a tool name")
    arguments = params.get("arguments") or {}
    if not isinstance(arguments, dict):
        raise ValueError("tools/call arguments must be an object")

    _gateway_log.info(
        "tool_call tool=%s session_id=%s",
        tool_name,
        session.session_id,
        extra={"tool": tool_name, "session_id": session.session_id},
    )
    return await session.registry.call(tool_name, cast(dict[str, Any], arguments))


_MCP_RPC_HANDLERS: dict[str, RpcHandler] = {
    "initialize": _rpc_initialize,
    "ping": _rpc_ping,
    "tools/list": _rpc_tools_list,
    "tools/call": _rpc_tools_call,
}


async def dispatch_rpc(session: Session, body: Any) -> dict[str, Any] | None:
    """Dispatch one JSON-RPC message; notifications yield no response."""
    if not isinstance(body, dict):
        return rpc_error(None, INVALID_REQUEST, "Invalid Request: messages must be objects")

    request_id = body.get("id")
    is_notification = "id" not in body
    if body.get("jsonrpc") != "2.0":
        return rpc_error(request_id, INVALID_REQUEST, "Invalid MCP protocol message")

    method = body.get("method")
    if not isinstance(method, str) or method == "":
        return rpc_error(request_id, INVALID_REQUEST, "Invalid Request: missing method")

    if is_notification:
        _gateway_log.debug("notification method=%s session_id=%s", method, session.session_id)
        return None

    handler = _MCP_RPC_HANDLERS.get(method)
    if handler is None:
        return rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    params = body.get("params")
    params_dict = cast(dict[str, Any], params) if isinstance(params, dict) else {}
    try:
        return rpc_result(request_id, await handler(session, params_dict))
    except ValueError as e:
        return rpc_error(request_id, INVALID_PARAMS, str(e))
    except Exception as e:
        _gateway_log.exception(
            "rpc_error method=%s session_id=%s",
            method,
            session.session_id,
            extra={"method": method, "session_id": session.session_id},
        )
        return rpc_error(request_id, INTERNAL_ERROR, f"Internal error: {e}")


async def dispatch_body(session: Session, body: Any) -> dict[str, Any] | list[dict[str, Any]] | None:
    """Dispatch a single message or a batch against one session."""
    if isinstance(body, list):
        if not body:
            return rpc_error(None, INVALID_REQUEST, "Invalid Request: empty batch")
        responses = [await dispatch_rpc(session, item) for item in body]
        replies = [r for r in responses if r is not None]
        return replies or None
    return await dispatch_rpc(session, body)


# ============================================================================
# HTTP application
# ============================================================================


def create_app(config: ServerConfig, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Build the FastAPI app serving ``/mcp`` and ``/healthz``.

    Args:
        config: Loaded server configuration.
        transport: Optional httpx transport for upstream calls (tests pass a mock).
    """
    sessions = SessionManager(ttl_ms=config.session_ttl_ms)
    auth = GatewayAuth(config.gateway_username, config.gateway_password)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await sessions.close_all()

    app = FastAPI(title="Omniscope Workflow MCP", version=SERVER_VERSION, lifespan=lifespan)
    app.state.config = config
    app.state.sessions = sessions

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(config.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=[SESSION_HEADER],
        )

    def _json_error(status_code: int, code: int, message: str, request_id: Any = None) -> JSONResponse:
        return JSONResponse(status_code=status_code, content=rpc_error(request_id, code, message))

    def _check_auth(request: Request) -> JSONResponse | None:
        if auth.validate(request.headers.get("authorization")):
            return None
        response = _json_error(401, UNAUTHORIZED, "Unauthorized")
        response.headers["WWW-Authenticate"] = 'Basic realm="omniscope-mcp"'
        return response

    async def _resolve_session(request: Request, body: Any) -> Session | JSONResponse:
        session_id = request.headers.get(SESSION_HEADER)
        request_id = body.get("id") if isinstance(body, dict) else None

        session = sessions.get_session(session_id)
        if session is not None:
            return session
        if session_id:
            return _json_error(404, UNKNOWN_SESSION, f"Session not found: {session_id}", request_id)
        if is_initialize_request(body):
            return sessions.create_session(WorkflowTools(config, transport=transport))
        return _json_error(400, MISSING_SESSION, "Bad Request: No valid session ID provided", request_id)

    @app.post("/mcp")
    async def mcp_endpoint(request: Request) -> Response:
        """MCP protocol endpoint: JSON-RPC envelopes routed to the caller's session."""
        denied = _check_auth(request)
        if denied is not None:
            return denied

        await sessions.prune_expired()

        try:
            body = json.loads(await request.body())
        except (ValueError, UnicodeDecodeError):
            return _json_error(400, PARSE_ERROR, "Parse error")
        if not isinstance(body, (dict, list)):
            return _json_error(400, INVALID_REQUEST, "Invalid request payload")

        resolved = await _resolve_session(request, body)
        if isinstance(resolved, JSONResponse):
            return resolved
        session = resolved
        request_id = body.get("id") if isinstance(body, dict) else None

        try:
            async with session.lock:
                # The session may have been closed while this request waited.
                if session.closed:
                    return _json_error(404, UNKNOWN_SESSION, f"Session not found: {session.session_id}", request_id)
                session.touch()
                payload = await dispatch_body(session, body)
        except Exception as e:
            _gateway_log.exception("mcp_request_failed session_id=%s", session.session_id)
            payload = rpc_error(request_id, INTERNAL_ERROR, f"Internal error: {e}")

        headers = {SESSION_HEADER: session.session_id}
        if payload is None:
            return Response(status_code=202, headers=headers)
        return JSONResponse(content=payload, headers=headers)

    @app.delete("/mcp")
    async def mcp_close_session(request: Request) -> Response:
        """Explicitly terminate the session named by the session header."""
        denied = _check_auth(request)
        if denied is not None:
            return denied

        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return _json_error(400, MISSING_SESSION, "Bad Request: No valid session ID provided")
        if not await sessions.close_session(session_id):
            return _json_error(404, UNKNOWN_SESSION, f"Session not found: {session_id}")
        return Response(status_code=204)

    @app.get("/healthz")
    async def health_check() -> JSONResponse:
        """Health check; optionally reads one project's parameters upstream."""
        if not config.health_project_path:
            return JSONResponse({"status": "ok", "message": "No health check project configured"})

        try:
            async with httpx.AsyncClient(transport=transport, timeout=None) as http:
                client = create_workflow_client(config, http)
                await client.get_parameters(config.health_project_path)
        except OmniscopeError as e:
            return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})
        return JSONResponse({"status": "ok"})

    return app


# ============================================================================
# Main Entry Point
# ============================================================================


def main_http(config: ServerConfig, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    """Run the MCP server over HTTP."""
    app = create_app(config)

    print(f"Omniscope Workflow MCP server listening on http://{host}:{port}", file=sys.stderr)
    print(f"Omniscope base URL: {config.default_base_url}", file=sys.stderr)
    if config.gateway_username and config.gateway_password:
        print("Authentication: ENABLED", file=sys.stderr)
    else:
        print("Authentication: DISABLED (not recommended for production)", file=sys.stderr)

    uvicorn.run(app, host=host, port=port, log_level="info")
