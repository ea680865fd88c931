"""
Home Assistant tools for the La Casa Libre agentic loop.

Four tools, each exposing ``TOOL_DEFINITION`` and ``as_dispatcher_entry()``:

- ``SmartSearchTool`` (``ha_smart_search``) - synonym/fuzzy entity search
  backed by the shared ``EntityResolver``.
- ``ListEntitiesTool`` (``ha_list_entities``) - plain listing with domain and
  substring filters.
- ``GetEntityStateTool`` (``ha_get_entity_state``) - one entity's state.
- ``CallServiceTool`` (``ha_call_service``) - control a device.

Failures raise ``ToolError``; the dispatcher turns them into error results
the model can read and react to.  ``register_home_assistant_tools`` wires all
four into a ``ToolRegistry``.
"""

from __future__ import annotations

import logging
from typing import Any

from casalibre.conversation.providers import ToolDefinition
from casalibre.conversation.tools.registry import AsyncToolHandler, ToolError, ToolRegistry
from casalibre.homeassistant.allowlist import Allowlist
from casalibre.homeassistant.client import HomeAssistantClient, HomeAssistantError
from casalibre.homeassistant.resolver import DEFAULT_LIMIT, EntityResolver, EntityRecord

logger = logging.getLogger(__name__)


def _optional_str(args: dict[str, Any], key: str) -> str | None:
    value = args.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ToolError(f"Argument {key!r} must be a string")
    return value


def _required_str(args: dict[str, Any], key: str) -> str:
    value = _optional_str(args, key)
    if value is None:
        raise ToolError(f"Missing required argument: {key}")
    return value


class SmartSearchTool:
    """Ranked entity search with synonym expansion and typo tolerance."""

    TOOL_DEFINITION: ToolDefinition = ToolDefinition(
        name="ha_smart_search",
        description=(
            "Smart entity search with synonym matching and fuzzy search. Use this when "
            "the user refers to devices with common names or synonyms. Examples: "
            '"blinds" will find shutters/shades/covers, "ac" will find climate entities, '
            '"lights" will find lamps. Handles typos. PREFER THIS TOOL over '
            "ha_list_entities when dealing with natural language queries."
        ),
        parameters={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": (
                        'Natural language search query (e.g., "blinds", "ac", '
                        '"bedroom lights").'
                    ),
                },
                "domain": {
                    "type": ["string", "null"],
                    "description": (
                        'Optional domain filter (e.g., "cover", "climate", "switch").'
                    ),
                },
                "location": {
                    "type": ["string", "null"],
                    "description": (
                        'Optional room name (e.g., "bedroom", "kitchen"). '
                        "Boosts matches in this location."
                    ),
                },
            },
            "required": ["query"],
        },
    )

    def __init__(self, resolver: EntityResolver, limit: int = DEFAULT_LIMIT) -> None:
        self.resolver = resolver
        self.limit = limit

    def search(
        self, query: str, domain: str | None = None, location: str | None = None
    ) -> dict[str, Any]:
        matches = self.resolver.resolve(query, domain=domain, location=location, limit=self.limit)
        if not matches:
            message = f'No entities found matching "{query}"'
            if domain:
                message += f' in domain "{domain}"'
            if location:
                message += f' at location "{location}"'
            return {"success": False, "message": message, "matches": []}

        return {
            "success": True,
            "message": f"Found {len(matches)} matching entities",
            "matches": [
                {
                    **m.entity.to_dict(),
                    "match_score": m.score,
                    "match_reason": m.reason,
                }
                for m in matches
            ],
        }

    def as_dispatcher_entry(self) -> AsyncToolHandler:
        async def _call(args: dict[str, Any]) -> dict[str, Any]:
            return self.search(
                _required_str(args, "query"),
                domain=_optional_str(args, "domain"),
                location=_optional_str(args, "location"),
            )

        return _call


class ListEntitiesTool:
    """Lists live entities, optionally filtered by domain and a search term."""

    TOOL_DEFINITION: ToolDefinition = ToolDefinition(
        name="ha_list_entities",
        description=(
            "List and search for Home Assistant entities. Use this to discover available "
            'devices before taking actions. Filter by domain (e.g., "light", "switch", '
            '"climate") and/or by name (e.g., "kitchen"). Returns entity_id, '
            "friendly_name, current state, and domain for matching entities."
        ),
        parameters={
            "type": "object",
            "properties": {
                "domain": {
                    "type": ["string", "null"],
                    "description": "Filter by domain. Leave empty to search all domains.",
                },
                "search_term": {
                    "type": ["string", "null"],
                    "description": "Case-insensitive filter on entity id or name.",
                },
            },
            "required": [],
        },
    )

    def __init__(self, client: HomeAssistantClient, limit: int = 50) -> None:
        self.client = client
        self.limit = limit

    async def list_entities(
        self, domain: str | None = None, search_term: str | None = None
    ) -> dict[str, Any]:
        try:
            states = await self.client.list_all_entities()
        except HomeAssistantError as exc:
            raise ToolError(f"Failed to list entities: {exc}") from exc

        records = [EntityRecord.from_state(s) for s in states]
        if domain:
            records = [r for r in records if r.entity_id.startswith(f"{domain}.")]
        if search_term:
            needle = search_term.lower()
            records = [
                r for r in records
                if needle in r.entity_id.lower() or needle in r.name.lower()
            ]

        return {
            "total_count": len(records),
            "entities": [r.to_dict() for r in records[: self.limit]],
            "truncated": len(records) > self.limit,
        }

    def as_dispatcher_entry(self) -> AsyncToolHandler:
        async def _call(args: dict[str, Any]) -> dict[str, Any]:
            return await self.list_entities(
                domain=_optional_str(args, "domain"),
                search_term=_optional_str(args, "search_term"),
            )

        return _call


class GetEntityStateTool:
    """Reads the current state of one entity."""

    TOOL_DEFINITION: ToolDefinition = ToolDefinition(
        name="ha_get_entity_state",
        description=(
            "Get the current state of a Home Assistant entity. Returns the entity state, "
            'attributes, and last updated time. Example entity_id: "light.living_room", '
            '"switch.bedroom", "sensor.temperature".'
        ),
        parameters={
            "type": "object",
            "properties": {
                "entity_id": {
                    "type": "string",
                    "description": 'The entity ID to query (e.g., "light.living_room").',
                },
            },
            "required": ["entity_id"],
        },
    )

    def __init__(self, client: HomeAssistantClient, allowlist: Allowlist) -> None:
        self.client = client
        self.allowlist = allowlist

    async def get_state(self, entity_id: str) -> dict[str, Any]:
        if not self.allowlist.is_entity_allowed(entity_id):
            logger.warning("Denied read of entity %r", entity_id)
            raise ToolError(f"Access denied: entity_id '{entity_id}' is not in the allowlist")
        try:
            state = await self.client.get_entity_state(entity_id)
        except HomeAssistantError as exc:
            raise ToolError(f"Failed to get entity state: {exc}") from exc
        return {
            "entity_id": state.get("entity_id", entity_id),
            "state": state.get("state"),
            "attributes": state.get("attributes", {}),
            "last_updated": state.get("last_updated"),
        }

    def as_dispatcher_entry(self) -> AsyncToolHandler:
        async def _call(args: dict[str, Any]) -> dict[str, Any]:
            return await self.get_state(_required_str(args, "entity_id"))

        return _call


class CallServiceTool:
    """Calls a Home Assistant service to control devices."""

    TOOL_DEFINITION: ToolDefinition = ToolDefinition(
        name="ha_call_service",
        description=(
            "Call a Home Assistant service to control devices. Common services: "
            "light.turn_on, light.turn_off, switch.toggle, climate.set_temperature. "
            "The data parameter should include entity_id and any service-specific "
            "parameters."
        ),
        parameters={
            "type": "object",
            "properties": {
                "domain": {
                    "type": "string",
                    "description": 'The domain of the service (e.g., "light", "switch").',
                },
                "service": {
                    "type": "string",
                    "description": 'The service to call (e.g., "turn_on", "turn_off").',
                },
                "data": {
                    "type": ["object", "null"],
                    "description": (
                        "Service data. Should include entity_id, e.g. "
                        '{"entity_id": "light.living_room", "brightness": 255}.'
                    ),
                },
            },
            "required": ["domain", "service"],
        },
    )

    def __init__(self, client: HomeAssistantClient, allowlist: Allowlist) -> None:
        self.client = client
        self.allowlist = allowlist

    async def call(
        self, domain: str, service: str, data: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        if not self.allowlist.is_service_allowed(domain, service):
            logger.warning("Denied service call %s.%s", domain, service)
            raise ToolError(
                f"Access denied: service '{domain}.{service}' is not in the allowlist"
            )
        try:
            result = await self.client.call_service(domain, service, data)
        except HomeAssistantError as exc:
            raise ToolError(f"Failed to call service: {exc}") from exc
        return {
            "success": True,
            "service": f"{domain}.{service}",
            "data": data or {},
            "result": result.get("result"),
        }

    def as_dispatcher_entry(self) -> AsyncToolHandler:
        async def _call(args: dict[str, Any]) -> dict[str, Any]:
            data = args.get("data")
            if data is not None and not isinstance(data, dict):
                raise ToolError("Argument 'data' must be an object")
            return await self.call(
                _required_str(args, "domain"),
                _required_str(args, "service"),
                data,
            )

        return _call


def register_home_assistant_tools(
    registry: ToolRegistry,
    client: HomeAssistantClient,
    resolver: EntityResolver,
    allowlist: Allowlist | None = None,
    search_limit: int = DEFAULT_LIMIT,
    list_limit: int = 50,
) -> None:
    """Register all Home Assistant tools, smart search first."""
    allowlist = allowlist or Allowlist()
    tools = [
        SmartSearchTool(resolver, limit=search_limit),
        ListEntitiesTool(client, limit=list_limit),
        GetEntityStateTool(client, allowlist),
        CallServiceTool(client, allowlist),
    ]
    for tool in tools:
        registry.register(tool.TOOL_DEFINITION, tool.as_dispatcher_entry())
