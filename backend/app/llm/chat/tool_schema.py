"""Normalization of stored tool configurations into a single-server schema.

A stored configuration document is either a multi-server map:

    {"mcpServers": {"alpha": {"command": "npx", "args": [...]}, "beta": {...}}}

or one bare server definition:

    {"command": "npx", "args": [...]}

The backend accepts exactly one server, so a multi-server map is reduced to
its first server in declaration order.
"""

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

import httpx

from app.llm.chat.errors import ConfigResolutionError
from app.llm.chat.models import Identity, ToolConfig

logger = logging.getLogger(__name__)

TOOL_CONFIGS_PATH = "/api/mcp-configs"
SERVERS_KEY = "mcpServers"

ToolRegistry = Mapping[str, ToolConfig]


def build_registry(configs: Iterable[ToolConfig]) -> dict[str, ToolConfig]:
    """Index tool configurations by id, keeping the first of any duplicates."""
    registry: dict[str, ToolConfig] = {}
    for config in configs:
        registry.setdefault(config.id, config)
    return registry


def normalize_schema(config: ToolConfig) -> dict[str, Any]:
    """Reduce a stored configuration to one server definition with a name.

    Raises:
        ConfigResolutionError: If the document is not valid JSON, is not an
            object, or declares an empty server map.
    """
    try:
        document = json.loads(config.schema_json)
    except (json.JSONDecodeError, TypeError) as e:
        raise ConfigResolutionError(f"Invalid tool schema JSON in '{config.name}': {e}") from e

    if not isinstance(document, dict):
        raise ConfigResolutionError(f"Tool schema '{config.name}' is not a JSON object")

    servers = document.get(SERVERS_KEY)
    if isinstance(servers, dict):
        if not servers:
            raise ConfigResolutionError(
                f"No servers found in {SERVERS_KEY} of tool schema '{config.name}'"
            )
        # json.loads keeps declaration order, so the first key is stable
        server_name = next(iter(servers))
        server = servers[server_name]
        if not isinstance(server, dict):
            raise ConfigResolutionError(
                f"Server '{server_name}' in tool schema '{config.name}' is not an object"
            )
        return {**server, "name": config.name or server_name}

    return {**document, "name": config.name}


class ToolSchemaResolver:
    """Resolves the selected tool configuration for a turn."""

    def resolve(self, selected_config_id: str | None, registry: ToolRegistry) -> dict[str, Any] | None:
        """Return the normalized schema, or None when nothing usable is selected.

        Never raises; resolution failures are logged and degrade to no schema.
        """
        if not selected_config_id:
            return None

        config = registry.get(selected_config_id)
        if config is None:
            logger.warning(f"Selected tool configuration not found: {selected_config_id}")
            return None

        try:
            schema = normalize_schema(config)
        except ConfigResolutionError as e:
            logger.error(f"Tool schema resolution failed: {e}")
            return None

        logger.debug(f"Using tool schema '{schema['name']}' from configuration {config.id}")
        return schema


async def fetch_tool_configs(client: httpx.AsyncClient, identity: Identity) -> list[ToolConfig]:
    """Read the tool configurations visible to an identity.

    Raises:
        ConfigResolutionError: If the registry cannot be read.
    """
    headers = {}
    if identity.auth_token:
        headers["Authorization"] = f"Bearer {identity.auth_token}"

    try:
        response = await client.get(
            TOOL_CONFIGS_PATH, params={"userId": identity.user_id}, headers=headers
        )
        response.raise_for_status()
        body = response.json()
    except (httpx.HTTPError, ValueError) as e:
        raise ConfigResolutionError(f"Failed to read tool configurations: {e}") from e

    if not isinstance(body, dict) or not body.get("success"):
        raise ConfigResolutionError("Tool configuration registry reported failure")

    configs: list[ToolConfig] = []
    for raw in body.get("mcpConfigs") or []:
        try:
            configs.append(ToolConfig.model_validate(raw))
        except ValueError as e:
            logger.warning(f"Skipping invalid tool configuration: {e}")
    return configs
