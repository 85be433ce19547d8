"""MCP server surface of the toolbox."""
