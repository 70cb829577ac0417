"""Constants and defaults for the Omniscope Workflow MCP gateway."""

SERVER_NAME = "omniscope-workflow-mcp"
SERVER_VERSION = "0.1.0"
MCP_PROTOCOL_VERSION = "2025-03-26"
# Versions echoed back on initialize; anything else gets MCP_PROTOCOL_VERSION.
SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")

SESSION_HEADER = "mcp-session-id"

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_POLL_INTERVAL_S = 2.0

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
# Implementation-defined server errors
MISSING_SESSION = -32000
UNKNOWN_SESSION = -32001
UNAUTHORIZED = -32002

ENV_BASE_URL = "OMNI_BASE_URL"
ENV_ALLOW_BASE_URLS = "OMNI_ALLOW_BASE_URLS"
ENV_ALLOWED_PROJECT_PREFIXES = "OMNI_ALLOWED_PROJECT_PREFIXES"
ENV_TIMEOUT_MS = "OMNI_TIMEOUT_MS"
ENV_BEARER_TOKEN = "OMNI_BEARER_TOKEN"
ENV_BASIC_USERNAME = "OMNI_BASIC_USERNAME"
ENV_BASIC_PASSWORD = "OMNI_BASIC_PASSWORD"
ENV_HEALTHCHECK_PROJECT_PATH = "OMNI_HEALTHCHECK_PROJECT_PATH"
ENV_LOG_TOOLS = "MCP_LOG_TOOLS"
ENV_GATEWAY_USERNAME = "MCP_AUTH_USERNAME"
ENV_GATEWAY_PASSWORD = "MCP_AUTH_PASSWORD"
ENV_SESSION_TTL_MS = "MCP_SESSION_TTL_MS"
ENV_CORS_ORIGINS = "MCP_CORS_ORIGINS"
ENV_HOST = "HOST"
ENV_PORT = "PORT"
