"""Configuration for MCP Toolbox.

The configuration file is JSON. Keys are camelCase, and any string value may
reference an environment variable as ``{env:VAR_NAME}``.

Example configuration:
    {
        "mcp": {
            "time": {"type": "local", "command": ["uvx", "mcp-server-time"]},
            "exa": {
                "type": "remote",
                "url": "https://mcp.exa.ai/mcp",
                "headers": {"Authorization": "Bearer {env:EXA_API_KEY}"}
            }
        },
        "settings": {"defaultLimit": 5}
    }
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError
from pydantic.alias_generators import to_camel

from .exceptions import ToolboxConfigError

logger = logging.getLogger("mcp-toolbox.config")

CONFIG_PATH_ENV = "MCP_TOOLBOX_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/mcp-toolbox/toolbox.json")

_ENV_REFERENCE = re.compile(r"\{env:([A-Za-z_][A-Za-z0-9_]*)\}")


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


class LocalServerConfig(_ConfigModel):
    """A tool source spawned as a subprocess and spoken to over stdio."""

    type: Literal["local"] = "local"
    command: list[str] = Field(min_length=1)
    environment: dict[str, str] = Field(default_factory=dict)


class RemoteServerConfig(_ConfigModel):
    """A tool source reached over Streamable HTTP, falling back to SSE."""

    type: Literal["remote"] = "remote"
    url: HttpUrl
    headers: dict[str, str] = Field(default_factory=dict)


ServerConfig = Annotated[
    LocalServerConfig | RemoteServerConfig, Field(discriminator="type")
]


class SettingsConfig(_ConfigModel):
    default_limit: int = Field(default=5, ge=1, le=20)
    """Number of search results returned when the caller gives no limit."""

    index_chunk_size: int = Field(default=50, ge=1)
    """Tools indexed between event loop yields."""


class ConnectionConfig(_ConfigModel):
    """Timeouts and retries for tool sources, in milliseconds."""

    connect_timeout: int = Field(default=5000, gt=0)
    request_timeout: int = Field(default=30000, gt=0)
    retry_attempts: int = Field(default=2, ge=0)
    retry_delay: int = Field(default=1000, ge=0)


class ToolboxConfig(_ConfigModel):
    mcp: dict[str, ServerConfig] = Field(default_factory=dict)
    settings: SettingsConfig = Field(default_factory=SettingsConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)


def interpolate_env_vars(value: Any) -> Any:
    """Replace ``{env:VAR}`` references in strings, recursively.

    Unset variables are replaced with an empty string.
    """
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(lambda m: os.getenv(m.group(1), ""), value)
    if isinstance(value, list):
        return [interpolate_env_vars(item) for item in value]
    if isinstance(value, dict):
        return {key: interpolate_env_vars(item) for key, item in value.items()}
    return value


def parse_config(text: str) -> ToolboxConfig:
    """Parse and validate configuration text.

    Raises:
        ToolboxConfigError: If the text is not JSON or fails validation
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ToolboxConfigError(f"Failed to parse config: {e}") from e

    try:
        return ToolboxConfig.model_validate(interpolate_env_vars(data))
    except ValidationError as e:
        raise ToolboxConfigError(f"Invalid config: {e}") from e


def get_config_path() -> Path:
    """Config path from ``MCP_TOOLBOX_CONFIG``, or the default location."""
    return Path(os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH).expanduser()


def load_config(path: Path | str | None = None) -> ToolboxConfig:
    """Load configuration from a file.

    Args:
        path: Config file path; defaults to ``get_config_path()``

    Raises:
        ToolboxConfigError: If the file cannot be read or is invalid
    """
    config_path = Path(path).expanduser() if path else get_config_path()
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ToolboxConfigError(
            f"Failed to read config file {config_path}: {e}"
        ) from e

    config = parse_config(text)
    logger.debug(f"Loaded config from {config_path} with {len(config.mcp)} servers")
    return config
