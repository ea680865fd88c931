"""
Configuration management for the La Casa Libre agent.

This module provides a Settings class that loads configuration from environment
variables (prefix ``CASALIBRE_``) or a ``.env`` file, allowing easy
configuration without code changes.
"""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 3000

    # LLM settings
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str = ""
    llm_model: str = "gpt-4o"
    llm_temperature: float = 0.0
    llm_calls_per_minute: int | None = None
    system_prompt: str | None = None
    # Rooms, aliases and device mappings appended to the system prompt
    house_context: str | None = None
    house_context_file: Path | None = None

    # Orchestration
    max_iterations: int = 10
    tool_timeout: float = 30.0
    tool_max_retries: int = 0

    # Home Assistant
    ha_base_url: str = "http://homeassistant.local:8123"
    ha_token: str = ""
    ha_timeout: float = 10.0

    # Entity resolver
    resolver_refresh_interval: float = 300.0
    resolver_result_limit: int = 10
    list_entities_limit: int = 50

    # Allow-list
    allow_all_entities: bool = True
    allow_all_services: bool = True
    read_entities: list[str] = []
    write_services: list[str] = []

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CASALIBRE_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


def get_settings() -> Settings:
    """Get the application settings instance."""
    return Settings()
