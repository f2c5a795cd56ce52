"""Error taxonomy for the integration framework.

Provider adapters classify every failure into one of these types before it
leaves the adapter boundary; callers never see raw httpx or paramiko errors.
"""

from typing import Any, Optional


class IntegrationError(Exception):
    """Base exception for integration failures.

    Attributes:
        message: Human-readable error message
        provider_type: Provider the error originated from, if any
        details: Structured context safe to log (never secrets)
    """

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        provider_type: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider_type = provider_type
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(IntegrationError):
    """Malformed input or unsupported operation. Not retried."""


class AuthenticationError(IntegrationError):
    """Bad, expired or revoked credential.

    Attributes:
        token_expired: Provider reported the access token as expired
        revoked: Provider signalled permanent revocation (refresh token rejected)
        connection_level: The credential itself is bad (False for a scope or
            permission problem limited to one resource)
    """

    def __init__(
        self,
        message: str,
        *,
        token_expired: bool = False,
        revoked: bool = False,
        connection_level: bool = True,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.token_expired = token_expired
        self.revoked = revoked
        self.connection_level = connection_level


class ProviderUnavailableError(IntegrationError):
    """Network failure, 5xx or timeout. Retried with backoff."""

    retryable = True


class RateLimitError(ProviderUnavailableError):
    """Provider answered 429.

    Attributes:
        retry_after: Seconds the provider asked us to wait, if given
    """

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ConflictError(IntegrationError):
    """Duplicate connection, concurrent sync or lost compare-and-set."""


class NotFoundError(IntegrationError):
    """Unknown connection_id or provider resource."""


class WebhookVerificationError(IntegrationError):
    """Webhook signature missing or invalid. Logged and dropped."""
