"""Clients for the MCP servers that provide tools."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from typing import Any, Literal, Protocol

from fastmcp import Client
from fastmcp.client.transports import (
    ClientTransport,
    SSETransport,
    StdioTransport,
    StreamableHttpTransport,
)
from mcp.types import Tool

from mcp_toolbox.config import LocalServerConfig, RemoteServerConfig, ServerConfig
from mcp_toolbox.exceptions import ToolSourceError
from mcp_toolbox.utils.logging import mask_mapping

logger = logging.getLogger("mcp-toolbox.sources")

RemoteTransportType = Literal["streamable-http", "sse"]


class ToolSource(Protocol):
    """A connection to one MCP server."""

    async def connect(self) -> None: ...

    async def list_tools(self) -> list[Tool]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]: ...

    async def close(self) -> None: ...


class MCPToolSource(ABC):
    """Tool source backed by a fastmcp client over a single transport."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._client: Client | None = None
        self._stack: AsyncExitStack | None = None
        self._tools_cache: list[Tool] | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def cached_tools(self) -> list[Tool] | None:
        return self._tools_cache

    async def _open(self, transport: ClientTransport) -> None:
        stack = AsyncExitStack()
        try:
            client = await stack.enter_async_context(Client(transport))
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._client = client

    def _require_client(self) -> Client:
        if self._client is None:
            raise ToolSourceError(f"Tool source {self.name} is not connected")
        return self._client

    @abstractmethod
    async def connect(self) -> None:
        """Open the transport and start the client session."""

    async def list_tools(self) -> list[Tool]:
        tools = await self._require_client().list_tools()
        self._tools_cache = list(tools)
        return self._tools_cache

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        result = await self._require_client().call_tool_mcp(name, arguments)
        return result.model_dump(mode="json", exclude_none=True)

    async def close(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
        self._stack = None
        self._client = None
        self._tools_cache = None


class LocalToolSource(MCPToolSource):
    """Spawns the configured command and talks to it over stdio."""

    def __init__(self, name: str, config: LocalServerConfig) -> None:
        super().__init__(name)
        self.config = config

    async def connect(self) -> None:
        command, *args = self.config.command
        logger.debug(
            f"Starting local source {self.name}: {command} {args}, "
            f"environment: {mask_mapping(self.config.environment)}"
        )
        transport = StdioTransport(
            command=command,
            args=args,
            env={**os.environ, **self.config.environment},
        )
        await self._open(transport)


class RemoteToolSource(MCPToolSource):
    """Connects over Streamable HTTP, falling back to legacy SSE."""

    def __init__(self, name: str, config: RemoteServerConfig) -> None:
        super().__init__(name)
        self.config = config
        self.transport_type: RemoteTransportType | None = None

    async def connect(self) -> None:
        url = str(self.config.url)
        headers = dict(self.config.headers)
        self.transport_type = None
        logger.debug(
            f"Connecting to remote source {self.name} at {url}, "
            f"headers: {mask_mapping(headers)}"
        )

        try:
            await self._open(StreamableHttpTransport(url, headers=headers))
            self.transport_type = "streamable-http"
            return
        except Exception as e:
            logger.debug(
                f"Streamable HTTP failed for {self.name}, falling back to SSE: {e}"
            )

        sse_headers = {"Accept": "text/event-stream", **headers}
        await self._open(SSETransport(url, headers=sse_headers))
        self.transport_type = "sse"

    async def close(self) -> None:
        await super().close()
        self.transport_type = None


def create_tool_source(name: str, config: ServerConfig) -> ToolSource:
    """Default factory: build the client matching the config's type."""
    if isinstance(config, LocalServerConfig):
        return LocalToolSource(name, config)
    if isinstance(config, RemoteServerConfig):
        return RemoteToolSource(name, config)
    raise ToolSourceError(f"Unknown server type for {name}: {type(config).__name__}")
