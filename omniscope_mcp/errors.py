"""Error types for the Omniscope Workflow MCP gateway."""

from __future__ import annotations


class OmniscopeError(Exception):
    """Base class for gateway failures."""


class ConfigError(OmniscopeError):
    """Invalid or missing configuration. Fatal at startup."""


class ValidationError(OmniscopeError, ValueError):
    """Request rejected before any upstream call was made."""


class UpstreamError(OmniscopeError):
    """The Workflow API could not be reached or returned garbage."""


class UpstreamHTTPError(UpstreamError):
    """The Workflow API answered with a non-success status."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Workflow API error ({status_code}): {message}")


class UpstreamTimeoutError(UpstreamError):
    """An upstream call was cancelled after the configured timeout."""

    def __init__(self, url: str, timeout_ms: int) -> None:
        self.url = url
        self.timeout_ms = timeout_ms
        super().__init__(f"Workflow API request timed out after {timeout_ms}ms: {url}")
