"""
AdapterRegistry - Static mapping from provider_type to adapter instance

Adapters are registered once while the application is composed. There is no
dynamic plugin loading; build_default_registry registers every provider the
service ships with.
"""

import logging
from typing import Callable, Optional

import httpx

from config import Settings
from .domain import ProviderType, utcnow
from .errors import ValidationError
from .ports import ProviderAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Registry of provider adapter instances.

    Usage:
        registry = AdapterRegistry()
        registry.register(KeepTruckinAdapter(config))
        adapter = registry.get(ProviderType.KEEPTRUCKIN)
    """

    def __init__(self):
        self._adapters: dict[ProviderType, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        """
        Register an adapter under its provider_type.

        Raises:
            ValueError: If the provider type is already registered
        """
        provider_type = adapter.provider_type
        if provider_type in self._adapters:
            raise ValueError(
                f"Adapter for '{provider_type.value}' is already registered "
                f"({self._adapters[provider_type].__class__.__name__})"
            )
        self._adapters[provider_type] = adapter
        logger.info(
            f"Registered adapter {adapter.__class__.__name__}",
            extra={"provider_type": provider_type.value},
        )

    def get(self, provider_type) -> ProviderAdapter:
        """
        Resolve the adapter for a provider.

        Raises:
            ValidationError: If the provider is unknown or not registered
        """
        try:
            provider_type = ProviderType(provider_type)
        except ValueError as e:
            raise ValidationError(f"Unknown provider type: {provider_type}") from e

        adapter = self._adapters.get(provider_type)
        if adapter is None:
            available = ", ".join(self.list_available()) or "none"
            raise ValidationError(
                f"No adapter registered for '{provider_type.value}'. Available: {available}"
            )
        return adapter

    def list_available(self) -> list[str]:
        return sorted(p.value for p in self._adapters)

    def is_registered(self, provider_type) -> bool:
        try:
            return ProviderType(provider_type) in self._adapters
        except ValueError:
            return False

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()


def build_default_registry(
    settings: Settings,
    *,
    transport: Optional[httpx.BaseTransport] = None,
    clock: Callable = utcnow,
    sftp_client_factory: Optional[Callable] = None,
) -> AdapterRegistry:
    """Register every shipped provider adapter.

    Args:
        settings: Application settings with per-provider endpoints
        transport: Optional httpx transport (tests use httpx.MockTransport)
        clock: Time source for token expiry computation
        sftp_client_factory: Optional SFTP client factory for TMS file exchange
    """
    from .adapters import ADAPTER_CLASSES

    registry = AdapterRegistry()
    for adapter_cls in ADAPTER_CLASSES:
        config = settings.provider_config(adapter_cls.provider_type.value)
        registry.register(adapter_cls(
            config,
            timeout=settings.PROVIDER_CALL_TIMEOUT_SECONDS,
            transport=transport,
            clock=clock,
            sftp_client_factory=sftp_client_factory,
        ))
    return registry
