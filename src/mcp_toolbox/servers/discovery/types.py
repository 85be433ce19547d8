"""Data types for tool discovery."""

from dataclasses import dataclass, field
from typing import Any, Literal

MatchErrorCode = Literal["invalid_pattern", "pattern_too_long", "unavailable"]


@dataclass(frozen=True)
class ToolIdentifier:
    """Where a tool comes from and what its origin calls it."""

    origin: str  # name of the upstream MCP server
    name: str  # tool name as reported by that server

    @property
    def id_string(self) -> str:
        return f"{self.origin}_{self.name}"


@dataclass(frozen=True)
class ToolArgument:
    """A single declared argument of a tool."""

    name: str
    description: str | None = None


@dataclass(frozen=True)
class CatalogEntry:
    """Indexed tool information for discovery."""

    id: ToolIdentifier
    id_string: str
    description: str
    input_schema: dict[str, Any]
    searchable_text: str
    arguments: tuple[ToolArgument, ...] = field(default_factory=tuple)


@dataclass
class SearchResult:
    """A matched tool with its score."""

    tool: ToolIdentifier
    id_string: str
    score: float
    preview: str
    signature: str


@dataclass
class MatchError:
    """Why a pattern search could not run."""

    code: MatchErrorCode
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}
