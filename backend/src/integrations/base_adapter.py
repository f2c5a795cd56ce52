"""
Base adapters - shared HTTP plumbing, error mapping and OAuth2 flows

HttpProviderAdapter owns the httpx client, measures latency, records metrics
and classifies every failure into the integrations.errors taxonomy before it
leaves the adapter. OAuth2ProviderAdapter adds the authorization-code and
refresh-token grants used by the ELD providers.
"""

import logging
import time
from abc import ABC
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx

from config import ProviderConfig
from observability.metrics import provider_call_latency_ms, provider_calls_total
from .credentials import ApiKeyCredential, Credential, IntegrationType, OAuthCredential
from .domain import Connection, utcnow
from .errors import (
    AuthenticationError,
    ConflictError,
    IntegrationError,
    NotFoundError,
    ProviderUnavailableError,
    RateLimitError,
    ValidationError,
)
from .ports import AuthorizationArtifact, AuthorizationCode, ProviderAdapter

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str], now: datetime) -> Optional[float]:
    """Parse a Retry-After header given as seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, (retry_at - now).total_seconds())


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        description = body.get("error_description") or body.get("message") or body.get("detail")
        if isinstance(error, str) and description:
            return f"{error}: {description}"
        if error or description:
            return str(description or error)
    return str(body)[:200]


def map_http_error(response: httpx.Response, provider_type: str, now: Optional[datetime] = None) -> IntegrationError:
    """Classify a non-2xx provider response.

    401 is connection-level (the credential itself); 403 is a permission
    problem limited to the requested resource.
    """
    status = response.status_code
    detail = _error_text(response)
    message = f"{provider_type} returned HTTP {status}: {detail}"
    details = {"status_code": status}

    if status == 401:
        challenge = response.headers.get("WWW-Authenticate", "")
        token_expired = "expired" in detail.lower() or "expired" in challenge.lower()
        return AuthenticationError(
            message, token_expired=token_expired, provider_type=provider_type, details=details
        )
    if status == 403:
        return AuthenticationError(
            message, connection_level=False, provider_type=provider_type, details=details
        )
    if status == 404:
        return NotFoundError(message, provider_type=provider_type, details=details)
    if status == 409:
        return ConflictError(message, provider_type=provider_type, details=details)
    if status == 429:
        retry_after = parse_retry_after(response.headers.get("Retry-After"), now or utcnow())
        return RateLimitError(
            message, retry_after=retry_after, provider_type=provider_type, details=details
        )
    if status >= 500:
        return ProviderUnavailableError(message, provider_type=provider_type, details=details)
    return ValidationError(message, provider_type=provider_type, details=details)


def _outcome(exc: IntegrationError) -> str:
    if isinstance(exc, AuthenticationError):
        return "auth_error"
    if isinstance(exc, RateLimitError):
        return "rate_limited"
    if isinstance(exc, ProviderUnavailableError):
        return "unavailable"
    return "error"


class HttpProviderAdapter(ProviderAdapter, ABC):
    """
    Base class for HTTP provider adapters.

    Provides:
    - One httpx.Client per adapter with a per-call timeout
    - Error mapping into the integration taxonomy
    - Latency measurement, metrics and structured logging per call

    Subclasses implement the provider endpoints and _auth_headers().
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
        sftp_client_factory: Optional[Callable] = None,
    ):
        self.config = config
        self.retry_attempts = config.retry_attempts
        self.timeout = timeout
        self._clock = clock
        self._sftp_client_factory = sftp_client_factory
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def base_url(self, connection: Optional[Connection] = None) -> str:
        if connection is not None and connection.settings.get("base_url"):
            return str(connection.settings["base_url"]).rstrip("/")
        return self.config.api_url.rstrip("/")

    def _auth_headers(self, credential: Credential) -> dict[str, str]:
        if isinstance(credential, OAuthCredential):
            return {"Authorization": f"{credential.token_type or 'Bearer'} {credential.access_token}"}
        if isinstance(credential, ApiKeyCredential):
            return {"Authorization": f"Bearer {credential.key}"}
        raise ValidationError(
            f"{self.provider_type.value} cannot authenticate HTTP calls with "
            f"{credential.integration_type.value} credentials"
        )

    def measure_latency(self, operation_name: str):
        """
        Context manager for measuring provider call latency.

        Usage:
            with self.measure_latency("hos_status") as timer:
                ...
            timer.latency_ms
        """
        provider = self.provider_type.value

        class LatencyMeasurer:
            def __init__(self, name: str):
                self.name = name
                self.start_time = None
                self.latency_ms = 0

            def __enter__(self):
                self.start_time = time.perf_counter()
                return self

            def __exit__(self, exc_type, exc_val, exc_tb):
                self.latency_ms = int((time.perf_counter() - self.start_time) * 1000)
                provider_call_latency_ms.labels(provider=provider, operation=self.name).observe(self.latency_ms)
                return False

        return LatencyMeasurer(operation_name)

    def request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        credential: Optional[Credential] = None,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        data: Optional[dict[str, Any]] = None,
        content: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """
        Perform a provider call and return the decoded JSON body.

        Raises:
            IntegrationError subclasses only
        """
        provider = self.provider_type.value
        request_headers = dict(headers or {})
        if credential is not None:
            request_headers.update(self._auth_headers(credential))

        try:
            with self.measure_latency(operation) as timer:
                try:
                    response = self._client.request(
                        method,
                        url,
                        params=params,
                        json=json,
                        data=data,
                        content=content,
                        headers=request_headers,
                    )
                except httpx.TimeoutException as e:
                    raise ProviderUnavailableError(
                        f"{provider} timed out during {operation}", provider_type=provider
                    ) from e
                except httpx.TransportError as e:
                    raise ProviderUnavailableError(
                        f"{provider} unreachable during {operation}: {e}", provider_type=provider
                    ) from e

                if response.is_error:
                    raise map_http_error(response, provider, self._clock())
        except IntegrationError as exc:
            provider_calls_total.labels(provider=provider, operation=operation, outcome=_outcome(exc)).inc()
            logger.warning(
                f"{provider} {operation} failed: {exc}",
                extra={"provider_type": provider, "operation": operation, "latency_ms": timer.latency_ms},
            )
            raise

        provider_calls_total.labels(provider=provider, operation=operation, outcome="success").inc()
        logger.debug(
            f"{provider} {operation} completed in {timer.latency_ms}ms",
            extra={"provider_type": provider, "operation": operation, "latency_ms": timer.latency_ms},
        )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailableError(
                f"{provider} returned a non-JSON body for {operation}", provider_type=provider
            ) from e

    def require_credential(self, connection: Connection) -> Credential:
        if connection.credentials is None:
            raise AuthenticationError(
                f"Connection {connection.connection_id} has no credentials",
                provider_type=self.provider_type.value,
            )
        return connection.credentials


class OAuth2ProviderAdapter(HttpProviderAdapter, ABC):
    """
    HTTP adapter for providers using the OAuth2 authorization-code grant.

    Token endpoint requests are form-encoded with the client credentials in
    the body, and expires_in is converted to an absolute expires_at.
    """

    supported_integration_types = frozenset({IntegrationType.OAUTH})

    def get_authorization_url(self, redirect_uri: str, state: str) -> str:
        if not self.config.auth_url or not self.config.client_id:
            raise ValidationError(
                f"OAuth client for {self.provider_type.value} is not configured",
                provider_type=self.provider_type.value,
            )
        query = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
        }
        if self.config.scopes:
            query["scope"] = self.config.scopes
        return f"{self.config.auth_url}?{urlencode(query)}"

    def authenticate(self, artifact: AuthorizationArtifact) -> Credential:
        if isinstance(artifact, OAuthCredential):
            return artifact
        if not isinstance(artifact, AuthorizationCode):
            raise ValidationError(
                f"{self.provider_type.value} requires an OAuth authorization code",
                provider_type=self.provider_type.value,
            )
        return self._token_request(
            {
                "grant_type": "authorization_code",
                "code": artifact.code,
                "redirect_uri": artifact.redirect_uri,
            },
            operation="oauth_code_exchange",
        )

    def refresh_token(self, credential: OAuthCredential) -> OAuthCredential:
        if not credential.refresh_token:
            raise AuthenticationError(
                f"{self.provider_type.value} credential has no refresh token",
                token_expired=True,
                provider_type=self.provider_type.value,
            )
        refreshed = self._token_request(
            {"grant_type": "refresh_token", "refresh_token": credential.refresh_token},
            operation="oauth_refresh",
        )
        if refreshed.refresh_token is None:
            # Providers that do not rotate refresh tokens omit it from the response.
            refreshed = OAuthCredential(
                access_token=refreshed.access_token,
                refresh_token=credential.refresh_token,
                expires_at=refreshed.expires_at,
                token_type=refreshed.token_type,
                scope=refreshed.scope or credential.scope,
            )
        return refreshed

    def _token_request(self, form: dict[str, Any], operation: str) -> OAuthCredential:
        provider = self.provider_type.value
        if not self.config.token_url:
            raise ValidationError(f"Token URL for {provider} is not configured", provider_type=provider)

        body = {**form, "client_id": self.config.client_id, "client_secret": self.config.client_secret}
        try:
            payload = self.request("POST", self.config.token_url, operation=operation, data=body)
        except ValidationError as exc:
            # 400 from a token endpoint means the grant was rejected.
            raise self._grant_rejected(exc) from exc
        except AuthenticationError as exc:
            raise self._grant_rejected(exc) from exc

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise ProviderUnavailableError(f"{provider} token response missing access_token", provider_type=provider)

        expires_at = None
        if payload.get("expires_in") is not None:
            expires_at = self._clock() + timedelta(seconds=int(payload["expires_in"]))

        return OAuthCredential(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            token_type=payload.get("token_type") or "Bearer",
            scope=payload.get("scope"),
        )

    def _grant_rejected(self, exc: IntegrationError) -> AuthenticationError:
        """invalid_grant means the refresh token or code is dead for good."""
        revoked = "invalid_grant" in exc.message or "revoked" in exc.message.lower()
        return AuthenticationError(
            f"{self.provider_type.value} rejected the grant: {exc.message}",
            revoked=revoked,
            token_expired=not revoked,
            provider_type=self.provider_type.value,
            details=exc.details,
        )
