"""Omniscope Workflow MCP gateway - MCP tools over the Omniscope Workflow REST API."""

from typing import TYPE_CHECKING, Any

from omniscope_mcp.config import ServerConfig, load_config

if TYPE_CHECKING:
    from omniscope_mcp.server import create_app


def __getattr__(name: str) -> Any:
    if name == "create_app":
        from omniscope_mcp.server import create_app

        return create_app
    raise AttributeError(f"module 'omniscope_mcp' has no attribute '{name}'")


__all__ = ["ServerConfig", "create_app", "load_config"]
