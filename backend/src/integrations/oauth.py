"""OAuth authorization-code bootstrap for ELD connections.

A one-time flow: build the provider's authorize URL with the caller's
redirect_uri and an opaque CSRF state, then exchange the returned code for
tokens and create the connection with them.
"""

import logging
import secrets
from typing import Any, Optional

from .connection_manager import ConnectionManager, CreateConnectionParams
from .credentials import IntegrationType
from .domain import Connection, Owner, OwnerType, ProviderType
from .errors import ValidationError
from .ports import AuthorizationCode
from .registry import AdapterRegistry

logger = logging.getLogger(__name__)


def generate_state() -> str:
    """Opaque state value for CSRF protection. Callers store it and compare on callback."""
    return secrets.token_urlsafe(32)


class OAuthBootstrap:
    def __init__(self, registry: AdapterRegistry, manager: ConnectionManager):
        self._registry = registry
        self._manager = manager

    def get_authorization_url(self, driver_id: str, provider_type, redirect_uri: str, state: str) -> str:
        """Build the provider authorize URL.

        Raises:
            ValidationError: Missing redirect_uri/state, or the provider does
                not use OAuth
        """
        if not redirect_uri or not state:
            raise ValidationError("redirect_uri and state are required")
        adapter = self._registry.get(provider_type)
        if not adapter.supports(IntegrationType.OAUTH):
            raise ValidationError(f"{adapter.provider_type.value} does not use OAuth")
        url = adapter.get_authorization_url(redirect_uri, state)
        logger.info(
            "Built authorization URL",
            extra={"provider_type": adapter.provider_type.value, "owner_id": driver_id},
        )
        return url

    def exchange_code_for_tokens(
        self,
        driver_id: str,
        provider_type,
        code: str,
        redirect_uri: str,
        settings: Optional[dict[str, Any]] = None,
    ) -> Connection:
        """Exchange an authorization code and create the driver's connection.

        Raises:
            ValidationError: Missing code
            AuthenticationError: Provider rejected the code
            ConflictError: Driver already has an ACTIVE connection to the provider
        """
        if not code:
            raise ValidationError("Authorization code is required")
        adapter = self._registry.get(provider_type)
        credential = adapter.authenticate(AuthorizationCode(code=code, redirect_uri=redirect_uri))
        return self._manager.create(CreateConnectionParams(
            owner=Owner(OwnerType.DRIVER, driver_id),
            provider_type=ProviderType(adapter.provider_type),
            integration_type=IntegrationType.OAUTH,
            credentials=credential,
            settings=dict(settings or {}),
        ))
