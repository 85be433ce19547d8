"""Discovery of tools from the configured MCP servers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from mcp_toolbox.config import ConnectionConfig, ServerConfig
from mcp_toolbox.exceptions import ToolSourceError, ToolSourceTimeoutError
from mcp_toolbox.servers.discovery.catalog import normalize_tools
from mcp_toolbox.servers.discovery.types import CatalogEntry
from mcp_toolbox.utils.profiler import Profiler

from .sources import ToolSource, create_tool_source

logger = logging.getLogger("mcp-toolbox.manager")

T = TypeVar("T")

ToolSourceFactory = Callable[[str, ServerConfig], ToolSource]

MAX_RETRY_DELAY_MS = 30000


class InitState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    PARTIAL = "partial"
    READY = "ready"
    DEGRADED = "degraded"


class ServerStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ServerState:
    """Known state of one configured tool source."""

    name: str
    config: ServerConfig
    status: ServerStatus
    entries: list[CatalogEntry] = field(default_factory=list)
    error: str | None = None


class ManagerListener:
    """Receives progress notifications from a ToolSourceManager.

    Subclasses override the hooks they care about; the defaults do nothing.
    """

    async def on_server_connected(
        self, name: str, entries: list[CatalogEntry]
    ) -> None:
        """A source connected and its tools were listed."""

    async def on_server_error(self, name: str, message: str) -> None:
        """A source failed after all retry attempts."""

    async def on_init_partial(self) -> None:
        """The first source is ready while others are still pending."""

    async def on_init_complete(self, state: InitState) -> None:
        """Every source has either connected or failed."""


def retry_delay_ms(base_delay: int, attempt: int) -> int:
    """Exponential backoff for the given 1-based attempt, capped at 30s."""
    return min(base_delay * (2 ** (attempt - 1)), MAX_RETRY_DELAY_MS)


async def _with_timeout(awaitable: Awaitable[T], timeout_ms: int, message: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        raise ToolSourceTimeoutError(message) from e


class ToolSourceManager:
    """Connects to tool sources and keeps the catalog of their tools.

    Sources connect concurrently. Listeners are notified as each source
    becomes available, so tools can be indexed progressively.
    """

    def __init__(
        self,
        *,
        source_factory: ToolSourceFactory | None = None,
        connection: ConnectionConfig | None = None,
        profiler: Profiler | None = None,
    ) -> None:
        self._source_factory = source_factory or create_tool_source
        self.connection = connection or ConnectionConfig()
        self.profiler = profiler or Profiler()

        self._servers: dict[str, ServerState] = {}
        self._sources: dict[str, ToolSource] = {}
        self._listeners: list[ManagerListener] = []

        self._init_state = InitState.IDLE
        self._init_task: asyncio.Task[None] | None = None
        self._partial_event = asyncio.Event()
        self._servers_pending = 0
        self._servers_completed = 0

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: ManagerListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ManagerListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    @property
    def init_state(self) -> InitState:
        return self._init_state

    def is_ready(self) -> bool:
        """True once at least one source is usable or all have been tried."""
        return self._init_state in (
            InitState.PARTIAL,
            InitState.READY,
            InitState.DEGRADED,
        )

    def is_complete(self) -> bool:
        """True once every source has either connected or failed."""
        return self._init_state in (InitState.READY, InitState.DEGRADED)

    async def initialize(self, servers: Mapping[str, ServerConfig]) -> None:
        """Connect to every configured source and wait for all of them.

        Calling this again while initialization is running or finished
        waits on the existing work instead of reconnecting.
        """
        self.initialize_background(servers)
        if self._init_task is not None:
            await asyncio.shield(self._init_task)

    def initialize_background(self, servers: Mapping[str, ServerConfig]) -> None:
        """Start initialization without waiting for it."""
        if self._init_state is not InitState.IDLE:
            return

        self.profiler.init_start()
        self._init_state = InitState.INITIALIZING
        self._partial_event.clear()
        self._servers_pending = len(servers)
        self._servers_completed = 0
        self._init_task = asyncio.create_task(self._run_initialization(dict(servers)))

    async def _run_initialization(self, servers: dict[str, ServerConfig]) -> None:
        logger.info(f"Connecting to {len(servers)} tool sources")
        try:
            await asyncio.gather(
                *(
                    self._connect_with_retry(name, config)
                    for name, config in servers.items()
                )
            )
            await self._finalize_init()
        finally:
            # Waiters must wake up even if a listener raised
            self._partial_event.set()

    async def _finalize_init(self) -> None:
        connected = [
            s for s in self._servers.values() if s.status is ServerStatus.CONNECTED
        ]
        if len(connected) == len(self._servers):
            self._init_state = InitState.READY
        else:
            self._init_state = InitState.DEGRADED

        self.profiler.init_complete(self._init_state.value)
        self._partial_event.set()
        logger.info(
            f"Initialization complete: {len(connected)}/{len(self._servers)} "
            f"sources connected ({self._init_state.value})"
        )
        for listener in self._listeners:
            await listener.on_init_complete(self._init_state)

    async def _connect_with_retry(self, name: str, config: ServerConfig) -> None:
        max_attempts = self.connection.retry_attempts + 1
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                entries = await self._connect(name, config)
            except Exception as e:
                last_error = e
                logger.debug(
                    f"Connection attempt {attempt}/{max_attempts} to {name} failed: {e}"
                )
                if attempt < max_attempts:
                    delay = retry_delay_ms(self.connection.retry_delay, attempt)
                    await asyncio.sleep(delay / 1000)
                continue

            became_partial = self._record_completion()
            for listener in self._listeners:
                await listener.on_server_connected(name, entries)
            if became_partial:
                await self._notify_partial()
            return

        message = str(last_error) if last_error else "Connection failed after retries"
        self._servers[name] = ServerState(
            name=name, config=config, status=ServerStatus.ERROR, error=message
        )
        self.profiler.record_server_connect(name, -1, 0, "error", message)
        logger.warning(f"Tool source {name} unavailable: {message}")

        became_partial = self._record_completion()
        for listener in self._listeners:
            await listener.on_server_error(name, message)
        if became_partial:
            await self._notify_partial()

    async def _connect(self, name: str, config: ServerConfig) -> list[CatalogEntry]:
        start = time.perf_counter()
        self._servers[name] = ServerState(
            name=name, config=config, status=ServerStatus.CONNECTING
        )

        source = self._source_factory(name, config)
        try:
            await _with_timeout(
                source.connect(),
                self.connection.connect_timeout,
                f"Connection to {name} timed out after "
                f"{self.connection.connect_timeout}ms",
            )
            tools = await _with_timeout(
                source.list_tools(),
                self.connection.request_timeout,
                f"Listing tools from {name} timed out after "
                f"{self.connection.request_timeout}ms",
            )
        except BaseException:
            await self._close_quietly(name, source)
            raise

        entries = normalize_tools(name, tools)
        connect_time = (time.perf_counter() - start) * 1000

        self._servers[name] = ServerState(
            name=name,
            config=config,
            status=ServerStatus.CONNECTED,
            entries=entries,
        )
        self._sources[name] = source
        self.profiler.record_server_connect(
            name, connect_time, len(entries), "connected"
        )
        logger.info(
            f"Connected to {name} with {len(entries)} tools in {connect_time:.0f}ms"
        )
        return entries

    @staticmethod
    async def _close_quietly(name: str, source: ToolSource) -> None:
        try:
            await source.close()
        except Exception as e:
            logger.debug(f"Error closing failed source {name}: {e}")

    def _record_completion(self) -> bool:
        """Count a finished source and enter the partial state if due.

        Must run before any listener is awaited.

        Returns:
            True if this call moved initialization to PARTIAL.
        """
        self._servers_completed += 1
        if self._init_state is not InitState.INITIALIZING:
            return False
        if self._servers_completed >= self._servers_pending:
            return False
        if not any(
            s.status is ServerStatus.CONNECTED for s in self._servers.values()
        ):
            return False

        self._init_state = InitState.PARTIAL
        self._partial_event.set()
        return True

    async def _notify_partial(self) -> None:
        for listener in self._listeners:
            await listener.on_init_partial()

    async def wait_for_ready(self) -> InitState:
        """Wait until every source has connected or failed."""
        if not self.is_complete() and self._init_task is not None:
            await asyncio.shield(self._init_task)
        return self._init_state

    async def wait_for_partial(self) -> InitState:
        """Wait until at least one source is ready, or all have been tried."""
        if not self.is_ready() and self._init_task is not None:
            await self._partial_event.wait()
            if self._init_task.done() and not self._init_task.cancelled():
                # Re-raise a failure from the initialization task
                self._init_task.result()
        return self._init_state

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def get_all_catalog_entries(self) -> list[CatalogEntry]:
        """Entries from every connected source."""
        return [
            entry
            for server in self._servers.values()
            if server.status is ServerStatus.CONNECTED
            for entry in server.entries
        ]

    def get_entry(self, id_string: str) -> CatalogEntry | None:
        for entry in self.get_all_catalog_entries():
            if entry.id_string == id_string:
                return entry
        return None

    def get_server(self, name: str) -> ServerState | None:
        return self._servers.get(name)

    def get_all_servers(self) -> list[ServerState]:
        return list(self._servers.values())

    # ------------------------------------------------------------------
    # Execution and shutdown
    # ------------------------------------------------------------------

    async def call_tool(
        self, server_name: str, tool_name: str, arguments: dict[str, Any]
    ) -> dict[str, Any]:
        """Call a tool on one of the connected sources.

        Raises:
            ToolSourceError: If the source is not connected
            ToolSourceTimeoutError: If the call exceeds the request timeout
        """
        source = self._sources.get(server_name)
        if source is None:
            raise ToolSourceError(f"MCP client not found for server: {server_name}")

        return await _with_timeout(
            source.call_tool(tool_name, arguments),
            self.connection.request_timeout,
            f"Tool execution timed out after {self.connection.request_timeout}ms",
        )

    async def close_all(self) -> None:
        """Close every source and return to the idle state."""
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            try:
                await self._init_task
            except asyncio.CancelledError:
                pass

        await asyncio.gather(*(source.close() for source in self._sources.values()))
        self._servers.clear()
        self._sources.clear()
        self._init_state = InitState.IDLE
        self._init_task = None
        self._partial_event.clear()
