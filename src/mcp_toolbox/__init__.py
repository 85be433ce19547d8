"""MCP Toolbox: on-demand discovery of tools from many MCP servers."""

__version__ = "0.1.0"


def main() -> None:
    """Run the toolbox server over stdio."""
    from mcp_toolbox.servers.toolbox import main as run_server

    run_server()


__all__ = ["__version__", "main"]
