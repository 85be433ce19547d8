"""Toolbox server: search the tool catalog and execute what was found."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from typing import Annotated, Any

from fastmcp import FastMCP
from pydantic import Field

from mcp_toolbox.clients.manager import (
    InitState,
    ManagerListener,
    ServerStatus,
    ToolSourceManager,
)
from mcp_toolbox.config import ToolboxConfig, load_config
from mcp_toolbox.exceptions import ToolboxConfigError, ToolboxError
from mcp_toolbox.servers.discovery.index import BM25Index
from mcp_toolbox.servers.discovery.regex import MAX_PATTERN_LENGTH, search_with_regex
from mcp_toolbox.servers.discovery.types import CatalogEntry, MatchError, SearchResult
from mcp_toolbox.utils.logging import get_log_level_from_env, setup_logging
from mcp_toolbox.utils.profiler import Profiler

logger = logging.getLogger("mcp-toolbox.server")

USAGE_HINT = (
    "Use toolbox_execute({ name: '<tool_name>', arguments: '<json>' }) "
    "to run a discovered tool"
)

BM25_DESCRIPTION = """Search extended toolbox by natural language. ALWAYS search before saying "I cannot do that."

Returns tools with schemas. Use toolbox_execute() to run them."""

REGEX_DESCRIPTION = """Search extended toolbox by regex pattern on tool names. ALWAYS search before saying "I cannot do that."

Use when you know part of a tool name or server prefix (e.g., "time_.*", "exa_.*search.*").

Returns tools with schemas. Use toolbox_execute() to run them."""

EXECUTE_DESCRIPTION = """Execute a tool discovered via toolbox_search_bm25 or toolbox_search_regex.

Pass arguments as JSON string matching the tool's schema."""

SYSTEM_PROMPT_BASE = """# Extended Toolbox

You have access to an extended toolbox with additional capabilities (web search, time utilities, code search, etc.).

## Rule
ALWAYS search before saying "I cannot do that" or "I don't have access to."

## Workflow
1. Search: toolbox_search_bm25({ text: "what you need" }) or toolbox_search_regex({ pattern: "prefix_.*" })
2. Execute: toolbox_execute({ name: "tool_name", arguments: '{"key": "value"}' })"""


def _dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _error(message: Any) -> str:
    return _dumps({"success": False, "error": message})


def parse_tool_name(full_name: str) -> tuple[str, str] | None:
    """Split ``server_tool`` at the first underscore.

    Returns:
        ``(server_name, tool_name)``, or None if there is no underscore.
    """
    server_name, sep, tool_name = full_name.partition("_")
    if not sep:
        return None
    return server_name, tool_name


def format_search_results(
    results: Sequence[SearchResult], catalog: Mapping[str, CatalogEntry]
) -> str:
    """Serialize search results together with each tool's full schema."""
    tools = []
    for result in results:
        entry = catalog.get(result.id_string)
        tools.append(
            {
                "name": result.id_string,
                "description": entry.description if entry else result.preview,
                "signature": result.signature,
                "score": result.score,
                "schema": entry.input_schema if entry else None,
            }
        )
    return _dumps({"count": len(results), "tools": tools, "usage": USAGE_HINT})


class Toolbox(ManagerListener):
    """Search and execution over every tool the configured servers provide.

    Tools are indexed as each server connects, so searches work as soon as
    the first server is ready.
    """

    def __init__(
        self,
        config: ToolboxConfig,
        manager: ToolSourceManager | None = None,
        profiler: Profiler | None = None,
    ) -> None:
        self.config = config
        self.profiler = profiler or (manager.profiler if manager else Profiler())
        self.manager = manager or ToolSourceManager(
            connection=config.connection, profiler=self.profiler
        )
        self.index = BM25Index()
        self.manager.add_listener(self)

    @property
    def default_limit(self) -> int:
        return self.config.settings.default_limit

    # ------------------------------------------------------------------
    # Manager notifications
    # ------------------------------------------------------------------

    async def on_server_connected(
        self, name: str, entries: list[CatalogEntry]
    ) -> None:
        await self.index.add_tools_async(
            entries, self.config.settings.index_chunk_size
        )
        self.profiler.record_incremental_update(len(entries))
        logger.debug(f"Indexed {len(entries)} tools from {name}")

    async def on_server_error(self, name: str, message: str) -> None:
        logger.warning(f"Tools from {name} are not searchable: {message}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ensure_initialized(self) -> InitState:
        """Start connecting to servers once, and wait for the first one.

        Raises:
            ToolboxError: If initialization failed
        """
        try:
            self.manager.initialize_background(self.config.mcp)
            return await self.manager.wait_for_partial()
        except Exception as e:
            logger.error(f"Failed to initialize tool sources: {e}")
            raise ToolboxError(f"Failed to initialize: {e}") from e

    async def rebuild_index(self) -> None:
        """Rebuild the whole index from the current catalog."""
        entries = self.manager.get_all_catalog_entries()
        self.profiler.mark("index.build")
        await self.index.index_tools_async(
            entries, self.config.settings.index_chunk_size
        )
        duration = self.profiler.measure("index.build", "index.build")
        self.profiler.record_index_build(duration, len(entries))

    async def close(self) -> None:
        await self.manager.close_all()
        self.index.clear()

    def catalog(self) -> dict[str, CatalogEntry]:
        return {e.id_string: e for e in self.manager.get_all_catalog_entries()}

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_by_relevance(
        self, text: str, limit: int | None = None
    ) -> list[SearchResult]:
        """Rank tools against a natural language description.

        Raises:
            ToolboxError: If the tool sources could not be initialized
        """
        await self.ensure_initialized()
        if limit is None:
            limit = self.default_limit
        with self.profiler.timer("search.bm25"):
            return self.index.search(text, limit)

    async def search_by_pattern(
        self, pattern: str, limit: int | None = None
    ) -> list[SearchResult] | MatchError:
        """Find tools whose searchable text matches a regex."""
        try:
            await self.ensure_initialized()
        except ToolboxError as e:
            return MatchError(code="unavailable", message=str(e))

        if limit is None:
            limit = self.default_limit
        with self.profiler.timer("search.regex"):
            return search_with_regex(
                self.manager.get_all_catalog_entries(), pattern, limit
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, name: str, arguments: str | None = None) -> str:
        """Run a discovered tool and return the outcome as JSON."""
        try:
            await self.ensure_initialized()
        except ToolboxError as e:
            return _error(str(e))

        entry = self.manager.get_entry(name)
        if entry is not None:
            server_name, tool_name = entry.id.origin, entry.id.name
        else:
            parsed = parse_tool_name(name)
            if parsed is None:
                return _error(
                    f"Invalid tool name format: {name}. Expected format: "
                    "serverName_toolName (e.g., 'time_get_current_time')"
                )
            server_name, tool_name = parsed

        tool_args: dict[str, Any] = {}
        if arguments:
            try:
                tool_args = json.loads(arguments)
            except json.JSONDecodeError as e:
                return _error(f"Failed to parse arguments as JSON: {e}")
            if not isinstance(tool_args, dict):
                return _error("Arguments must be a JSON object")

        try:
            with self.profiler.timer("tool.execute"):
                result = await self.manager.call_tool(server_name, tool_name, tool_args)
        except Exception as e:
            logger.error(f"Tool execution failed for {name}: {e}")
            return _error(f"Tool execution failed: {e}")

        return _dumps({"success": True, "result": result})

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def system_prompt(self) -> str:
        """Usage instructions plus the tool ids of every connected server."""
        toolbox_schema = {
            server.name: [entry.id_string for entry in server.entries]
            for server in self.manager.get_all_servers()
            if server.status is ServerStatus.CONNECTED and server.entries
        }
        if not toolbox_schema:
            return SYSTEM_PROMPT_BASE

        return (
            f"{SYSTEM_PROMPT_BASE}\n\n"
            "## Toolbox Schema\n"
            "Tool names use `<server>_<tool>` format. "
            "Pass exact names to toolbox_execute().\n"
            f"```json\n{_dumps(toolbox_schema)}\n```"
        )

    def status(self) -> dict[str, Any]:
        return {
            "init_state": self.manager.init_state.value,
            "indexed_tools": self.index.size,
            "servers": [
                {
                    "name": server.name,
                    "status": server.status.value,
                    "tool_count": len(server.entries),
                    "error": server.error,
                }
                for server in self.manager.get_all_servers()
            ],
            "metrics": self.profiler.export(),
        }


def create_server(toolbox: Toolbox) -> FastMCP:
    """Build the FastMCP server exposing the toolbox tools."""
    mcp = FastMCP(name="MCP Toolbox", instructions=toolbox.system_prompt())

    @mcp.tool(description=BM25_DESCRIPTION, tags={"toolbox", "search", "read"})
    async def toolbox_search_bm25(
        text: Annotated[
            str,
            Field(
                description="Natural language description of the tool you're looking for (e.g., 'get current time', 'search the web')"
            ),
        ],
        limit: Annotated[
            int | None,
            Field(
                description="Maximum number of results to return (default: 5)",
                ge=1,
            ),
        ] = None,
    ) -> str:
        try:
            results = await toolbox.search_by_relevance(text, limit)
        except ToolboxError as e:
            return _error(str(e))
        return format_search_results(results, toolbox.catalog())

    @mcp.tool(description=REGEX_DESCRIPTION, tags={"toolbox", "search", "read"})
    async def toolbox_search_regex(
        pattern: Annotated[
            str,
            Field(
                description=f'Regex pattern to match tool names (max {MAX_PATTERN_LENGTH} chars). Examples: "time_.*", "exa_.*search.*"'
            ),
        ],
        limit: Annotated[
            int | None,
            Field(
                description="Maximum number of results to return (default: 5)",
                ge=1,
            ),
        ] = None,
    ) -> str:
        result = await toolbox.search_by_pattern(pattern, limit)
        if isinstance(result, MatchError):
            return _error(result.to_dict())
        return format_search_results(result, toolbox.catalog())

    @mcp.tool(description=EXECUTE_DESCRIPTION, tags={"toolbox", "execute", "write"})
    async def toolbox_execute(
        name: Annotated[
            str,
            Field(
                description="Full tool name from search results (e.g., 'time_get_current_time', 'exa_web_search')"
            ),
        ],
        arguments: Annotated[
            str | None,
            Field(
                description="JSON-encoded arguments for the tool, matching its schema. Use '{}' or omit for tools with no required arguments."
            ),
        ] = None,
    ) -> str:
        return await toolbox.execute(name, arguments)

    @mcp.tool(tags={"toolbox", "meta", "read"})
    async def toolbox_status() -> str:
        """Report connection state, indexed tool count and performance metrics."""
        return _dumps(toolbox.status())

    return mcp


async def serve(config: ToolboxConfig) -> None:
    """Connect to the configured servers and serve the toolbox over stdio."""
    toolbox = Toolbox(config)
    try:
        await toolbox.ensure_initialized()
    except ToolboxError as e:
        logger.warning(f"Starting without tools: {e}")

    server = create_server(toolbox)
    try:
        await server.run_async(transport="stdio")
    finally:
        await toolbox.close()


def main() -> None:
    setup_logging(get_log_level_from_env())
    try:
        config = load_config()
    except ToolboxConfigError as e:
        logger.error(str(e))
        raise SystemExit(1) from e
    asyncio.run(serve(config))
