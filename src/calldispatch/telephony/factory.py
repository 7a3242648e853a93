"""
Voice provider factory.

Single source of truth for configuration: ProviderConfig (Pydantic Settings)
loaded from OS env + .env.
"""

from __future__ import annotations

from functools import lru_cache

from calldispatch.shared.logging import get_logger
from calldispatch.telephony.adapters.mock import MockProviderGateway
from calldispatch.telephony.config import ProviderConfig, ProviderType
from calldispatch.telephony.config import get_provider_config as _load_provider_config
from calldispatch.telephony.interface import ProviderGateway
from calldispatch.telephony.subverse_adapter import SubverseAdapter

logger = get_logger(__name__)


def _mask(s: str, keep: int = 4) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


@lru_cache(maxsize=1)
def get_provider_config() -> ProviderConfig:
    """Return the cached ProviderConfig."""
    return _load_provider_config()


def create_provider_gateway(config: ProviderConfig) -> ProviderGateway:
    """Build a gateway for the configured provider type."""
    logger.info(
        "Voice provider config resolved",
        extra={
            "provider_type": config.provider_type.value,
            "api_key": _mask(config.api_key),
            "base_url": config.base_url,
            "agent_name": config.agent_name,
            "timeout_seconds": config.timeout_seconds,
        },
    )

    if config.provider_type == ProviderType.SUBVERSE:
        return SubverseAdapter(config)

    if config.provider_type == ProviderType.MOCK:
        return MockProviderGateway()

    raise ValueError(f"Unsupported provider_type: {config.provider_type}")


@lru_cache(maxsize=1)
def get_provider_gateway() -> ProviderGateway:
    """Create and cache the provider gateway."""
    return create_provider_gateway(get_provider_config())
