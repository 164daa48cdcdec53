"""Configuration management for the shop chat agent.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """LLM provider configuration."""
    provider: str = Field(default="anthropic", description="LLM provider: anthropic, openai, azure_openai, mock")
    model: str = Field(default="claude-sonnet-4-5", description="Model name")
    api_key: Optional[str] = Field(default=None, description="API key")
    api_base: Optional[str] = Field(default=None, description="API base URL")
    api_version: Optional[str] = Field(default="2024-02-15-preview", description="Azure API version")
    deployment_name: Optional[str] = Field(default=None, description="Azure deployment name")
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=2000, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore"
    )


class ShopifySettings(BaseSettings):
    """Capability sources and the fallback catalog search."""
    storefront_mcp_path: str = Field(default="/api/mcp")
    customer_mcp_url: Optional[str] = Field(
        default=None,
        description="Customer account MCP endpoint; may contain {shop}"
    )
    customer_access_token: Optional[str] = Field(default=None)
    mcp_timeout: float = Field(default=30.0, gt=0)

    # Storefront GraphQL fallback
    storefront_api_version: str = Field(default="2024-10")
    storefront_access_token: Optional[str] = Field(default=None)
    fallback_result_limit: int = Field(default=5, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="SHOPIFY_",
        env_file=".env",
        extra="ignore"
    )


class ChatSettings(BaseSettings):
    """Chat service configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Loop guards
    max_calls_per_tool: int = Field(default=2, gt=0)
    max_total_tool_calls: int = Field(default=5, gt=0)

    # History
    history_limit: int = Field(default=20, gt=0)
    store_backend: str = Field(default="memory", description="memory or jsonl")
    store_path: str = Field(default="data/conversations")
    persist_attempts: int = Field(default=3, gt=0)

    # Prompts
    default_prompt_type: str = Field(default="standardAssistant")
    prompts_path: Optional[str] = Field(default=None)

    max_products: int = Field(default=3, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    shopify: ShopifySettings = Field(default_factory=ShopifySettings)
    chat: ChatSettings = Field(default_factory=ChatSettings)

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("CHAT_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
