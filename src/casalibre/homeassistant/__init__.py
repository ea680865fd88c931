"""Home Assistant collaborators: REST client, allow-list and entity resolver."""

from casalibre.homeassistant.allowlist import Allowlist
from casalibre.homeassistant.client import HomeAssistantClient, HomeAssistantError
from casalibre.homeassistant.resolver import (
    COMMON_SYNONYMS,
    EntityRecord,
    EntityRefresher,
    EntityResolver,
    EntitySnapshot,
    MatchResult,
    ResolverRefreshError,
)

__all__ = [
    "Allowlist",
    "COMMON_SYNONYMS",
    "EntityRecord",
    "EntityRefresher",
    "EntityResolver",
    "EntitySnapshot",
    "HomeAssistantClient",
    "HomeAssistantError",
    "MatchResult",
    "ResolverRefreshError",
]
