"""
Voice provider configuration.

Loaded from OS env + .env with the ``PROVIDER_`` prefix.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderType(str, Enum):
    """Supported voice provider types."""

    SUBVERSE = "subverse"
    MOCK = "mock"


class ProviderConfig(BaseSettings):
    """Voice provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="PROVIDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider_type: ProviderType = Field(default=ProviderType.SUBVERSE)

    # Credentials; an empty key is only detected at first use
    api_key: str = Field(default="")
    base_url: str = Field(default="https://api.subverseai.com")
    agent_name: str = Field(default="driver_outreach_agent")

    timeout_seconds: float = Field(default=15.0, gt=0, le=120)

    def endpoint(self, path: str) -> str:
        base = self.base_url.rstrip("/")
        return f"{base}/{path.lstrip('/')}"


def get_provider_config() -> ProviderConfig:
    """Load provider configuration from environment."""
    return ProviderConfig()
