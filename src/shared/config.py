"""Configuration management for mailpilot.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.models import ProviderCredential


class LLMSettings(BaseSettings):
    """LLM provider configuration."""
    provider: str = Field(
        default="github",
        description="LLM provider: openai, github, anthropic, azure, hosted, mock"
    )
    model: str = Field(default="gpt-4o", description="Model name")
    api_key: Optional[SecretStr] = Field(default=None, description="User-supplied (BYOK) API key")
    api_base: Optional[str] = Field(default=None, description="API base URL override")
    api_version: Optional[str] = Field(default="2024-02-01", description="Azure API version")
    deployment_name: Optional[str] = Field(default=None, description="Azure deployment name")

    # Hosted proxy (shared key held by the operator)
    use_hosted_key: bool = Field(default=False)
    hosted_url: str = Field(default="http://localhost:3001/api/ai")
    hosted_api_key: Optional[SecretStr] = Field(default=None)

    # Single fallback target
    fallback_provider: Optional[str] = Field(default=None)
    fallback_model: Optional[str] = Field(default=None)
    fallback_api_key: Optional[SecretStr] = Field(default=None)

    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=4096, gt=0)
    timeout_seconds: float = Field(default=60.0, gt=0)
    max_attempts: int = Field(default=2, ge=1, le=5)

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore"
    )

    def _overrides(self) -> dict[str, str]:
        overrides = {}
        if self.api_base:
            overrides["base_url"] = self.api_base
        if self.api_version:
            overrides["api_version"] = self.api_version
        if self.deployment_name:
            overrides["deployment_name"] = self.deployment_name
        return overrides

    def credentials(self) -> list[ProviderCredential]:
        """
        Resolve the ordered credential chain for a request.

        The first entry is the primary target (hosted proxy or BYOK key);
        the optional second entry is the fallback provider/model.
        """
        if self.use_hosted_key:
            primary = ProviderCredential(
                provider="hosted",
                api_key=self.hosted_api_key,
                model=self.model,
                endpoint_overrides={"base_url": self.hosted_url},
            )
        else:
            primary = ProviderCredential(
                provider=self.provider,
                api_key=self.api_key,
                model=self.model,
                endpoint_overrides=self._overrides(),
            )

        chain = [primary]
        if self.fallback_provider or self.fallback_model:
            chain.append(ProviderCredential(
                provider=self.fallback_provider or primary.provider,
                api_key=self.fallback_api_key or primary.api_key,
                model=self.fallback_model or primary.model,
                endpoint_overrides=(
                    primary.endpoint_overrides
                    if not self.fallback_provider or self.fallback_provider == primary.provider
                    else {}
                ),
            ))
        return chain


class OrchestratorSettings(BaseSettings):
    """Orchestrator configuration."""
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)

    # Conversation
    history_window: int = Field(default=20, gt=0)
    max_tool_iterations: int = Field(default=5, gt=0)
    session_ttl_minutes: int = Field(default=120)

    # Audit trail
    enable_audit: bool = Field(default=True)
    audit_log_path: str = Field(default="logs/approvals.log")

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
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
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)

    model_config = SettingsConfigDict(
        env_prefix="MAILPILOT_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file; a missing file means defaults."""
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
    config_path = os.environ.get("MAILPILOT_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
