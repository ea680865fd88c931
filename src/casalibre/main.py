"""
La Casa Libre agent - main entry point.

Builds every long-lived service object exactly once and hands them to the
HTTP app:

    Settings -> OpenAICompatibleProvider
             -> HomeAssistantClient -> EntityResolver -> EntityRefresher
             -> ToolRegistry (Home Assistant tools) -> dispatcher
             -> CasaLibreConversationEntity -> FastAPI app -> uvicorn
"""

from __future__ import annotations

import argparse
import logging
from typing import Any

from casalibre.config import Settings, get_settings
from casalibre.conversation.entity import CasaLibreConversationEntity
from casalibre.conversation.loop import DEFAULT_SYSTEM_PROMPT, compose_system_prompt
from casalibre.conversation.providers import CostEstimator, OpenAICompatibleProvider, RateLimiter
from casalibre.conversation.server import create_conversation_app
from casalibre.conversation.threads import InMemoryThreadStore
from casalibre.conversation.tools.home_assistant import register_home_assistant_tools
from casalibre.conversation.tools.registry import ToolRegistry
from casalibre.homeassistant.allowlist import Allowlist
from casalibre.homeassistant.client import HomeAssistantClient
from casalibre.homeassistant.resolver import EntityRefresher, EntityResolver

logger = logging.getLogger(__name__)


def build_system_prompt(settings: Settings) -> str:
    """Return the base prompt plus the configured house context, if any.

    ``house_context_file`` wins over the inline ``house_context`` setting.
    A missing file raises ``OSError`` at startup.
    """
    house_context = settings.house_context
    if settings.house_context_file is not None:
        house_context = settings.house_context_file.read_text(encoding="utf-8")
        logger.info("Loaded house context from %s", settings.house_context_file)
    return compose_system_prompt(settings.system_prompt or DEFAULT_SYSTEM_PROMPT, house_context)


def build_app(settings: Settings) -> Any:
    """Wire the service graph described by *settings* into a FastAPI app."""
    rate_limiter = (
        RateLimiter(settings.llm_calls_per_minute) if settings.llm_calls_per_minute else None
    )
    provider = OpenAICompatibleProvider(
        base_url=settings.llm_base_url,
        model=settings.llm_model,
        api_key=settings.llm_api_key,
        temperature=settings.llm_temperature,
        rate_limiter=rate_limiter,
        cost_estimator=CostEstimator(),
    )

    ha_client = HomeAssistantClient(
        base_url=settings.ha_base_url,
        token=settings.ha_token,
        timeout=settings.ha_timeout,
    )
    resolver = EntityResolver(ha_client.list_all_entities)
    refresher = EntityRefresher(resolver, interval=settings.resolver_refresh_interval)

    allowlist = Allowlist(
        allow_all_entities=settings.allow_all_entities,
        allow_all_services=settings.allow_all_services,
        read_entities=frozenset(settings.read_entities),
        write_services=frozenset(settings.write_services),
    )
    registry = ToolRegistry()
    register_home_assistant_tools(
        registry,
        ha_client,
        resolver,
        allowlist=allowlist,
        search_limit=settings.resolver_result_limit,
        list_limit=settings.list_entities_limit,
    )

    entity = CasaLibreConversationEntity(
        provider=provider,
        tool_dispatcher=registry.build_dispatcher(
            timeout=settings.tool_timeout,
            max_retries=settings.tool_max_retries,
        ),
        tools=registry.get_definitions(),
        system_prompt=build_system_prompt(settings),
        max_iterations=settings.max_iterations,
        store=InMemoryThreadStore(),
    )
    logger.info(
        "Agent ready: model=%s, tools=%s, max_iterations=%d",
        settings.llm_model,
        registry.names(),
        settings.max_iterations,
    )
    return create_conversation_app(
        entity,
        refresher=refresher,
        model_info={
            "model": settings.llm_model,
            "temperature": settings.llm_temperature,
        },
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="La Casa Libre home automation agent")
    parser.add_argument("--host", default=None, help="Bind address (overrides settings)")
    parser.add_argument("--port", type=int, default=None, help="Port (overrides settings)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> None:
    """Console entry point."""
    import uvicorn

    args = parse_args(argv)
    settings = get_settings()
    log_level = "DEBUG" if args.debug else settings.log_level.upper()

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = build_app(settings)
    host = args.host or settings.host
    port = args.port or settings.port
    logger.info("Starting La Casa Libre agent on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())


if __name__ == "__main__":
    run()
