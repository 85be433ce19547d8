"""Tool discovery: catalog normalization, BM25 ranking and regex search."""

from .catalog import normalize_tool, normalize_tools
from .index import BM25Index
from .regex import MAX_PATTERN_LENGTH, search_with_regex
from .scoring import build_signature, tokenize
from .types import CatalogEntry, MatchError, SearchResult, ToolArgument, ToolIdentifier

__all__ = [
    "BM25Index",
    "CatalogEntry",
    "MAX_PATTERN_LENGTH",
    "MatchError",
    "SearchResult",
    "ToolArgument",
    "ToolIdentifier",
    "build_signature",
    "normalize_tool",
    "normalize_tools",
    "search_with_regex",
    "tokenize",
]
