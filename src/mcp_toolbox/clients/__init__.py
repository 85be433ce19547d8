"""Connections to the MCP servers that provide tools."""

from .manager import (
    InitState,
    ManagerListener,
    ServerState,
    ServerStatus,
    ToolSourceManager,
)
from .sources import LocalToolSource, RemoteToolSource, ToolSource, create_tool_source

__all__ = [
    "InitState",
    "LocalToolSource",
    "ManagerListener",
    "RemoteToolSource",
    "ServerState",
    "ServerStatus",
    "ToolSource",
    "ToolSourceManager",
    "create_tool_source",
]
