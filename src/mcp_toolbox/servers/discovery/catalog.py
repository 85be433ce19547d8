"""Normalization of raw MCP tool descriptors into catalog entries."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from mcp.types import Tool

from .types import CatalogEntry, ToolArgument, ToolIdentifier

logger = logging.getLogger("mcp-toolbox.discovery")


def extract_arguments(schema: Any) -> tuple[ToolArgument, ...]:
    """Extract declared arguments from a JSON-schema-like object.

    Only an ``object`` schema with a ``properties`` map yields arguments,
    in declaration order. Anything else yields no arguments.

    Args:
        schema: The tool's input schema

    Returns:
        Tuple of arguments, each with its description when that is a string.
    """
    if not isinstance(schema, Mapping) or schema.get("type") != "object":
        return ()

    properties = schema.get("properties")
    if not isinstance(properties, Mapping):
        return ()

    arguments = []
    for name, prop in properties.items():
        description = prop.get("description") if isinstance(prop, Mapping) else None
        if not isinstance(description, str):
            description = None
        arguments.append(ToolArgument(name=str(name), description=description))
    return tuple(arguments)


def build_searchable_text(
    id_string: str,
    name: str,
    description: str,
    arguments: Iterable[ToolArgument],
) -> str:
    """Flatten identifier, name, description and arguments into one string."""
    parts = [id_string, name]
    if description:
        parts.append(description)
    for arg in arguments:
        parts.append(arg.name)
        if arg.description:
            parts.append(arg.description)
    return " ".join(parts)


def _input_schema(tool: Tool) -> dict[str, Any]:
    # Newer clients expose the schema as input_schema and deprecate inputSchema
    schema = getattr(tool, "input_schema", None)
    if schema is None:
        schema = tool.inputSchema
    return schema if isinstance(schema, dict) else {}


def normalize_tool(origin: str, tool: Tool) -> CatalogEntry:
    """Convert a tool reported by an MCP server into a catalog entry.

    Args:
        origin: Name of the server that provides the tool
        tool: The tool as returned by ``list_tools``

    Returns:
        An immutable catalog entry keyed by ``<origin>_<name>``.
    """
    identifier = ToolIdentifier(origin=origin, name=tool.name)
    id_string = identifier.id_string
    description = tool.description or ""
    schema = _input_schema(tool)
    arguments = extract_arguments(schema)

    return CatalogEntry(
        id=identifier,
        id_string=id_string,
        description=description,
        input_schema=schema,
        searchable_text=build_searchable_text(
            id_string, tool.name, description, arguments
        ),
        arguments=arguments,
    )


def normalize_tools(origin: str, tools: Iterable[Tool]) -> list[CatalogEntry]:
    """Normalize every tool reported by one server."""
    entries = [normalize_tool(origin, tool) for tool in tools]
    logger.debug(f"Normalized {len(entries)} tools from {origin}")
    return entries
