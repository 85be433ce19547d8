class ToolboxError(Exception):
    """Base exception for MCP Toolbox errors."""


class ToolboxConfigError(ToolboxError):
    """Raised when the toolbox configuration cannot be read or is invalid."""


class ToolSourceError(ToolboxError):
    """Raised when a tool source is unknown, unreachable or misconfigured."""


class ToolSourceTimeoutError(ToolSourceError):
    """Raised when a tool source does not answer within its timeout."""
