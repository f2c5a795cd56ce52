"""Credential variants, one per integration type.

A connection carries exactly one of these. Each variant validates its own
required fields on construction, and credential_from_dict refuses a payload
whose shape does not match the declared integration type, so an invalid
combination cannot be built.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from .errors import ValidationError


class IntegrationType(str, Enum):
    OAUTH = "oauth"
    API_KEY = "api_key"
    SFTP = "sftp"
    EDI = "edi"


def _require(cls_name: str, **values: Any) -> None:
    missing = [name for name, value in values.items() if value in (None, "")]
    if missing:
        raise ValidationError(f"{cls_name} missing required fields: {', '.join(missing)}")


@dataclass(frozen=True)
class OAuthCredential:
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None

    integration_type: ClassVar[IntegrationType] = IntegrationType.OAUTH

    def __post_init__(self):
        _require("OAuthCredential", access_token=self.access_token)
        if self.expires_at is not None and self.expires_at.tzinfo is None:
            object.__setattr__(self, "expires_at", self.expires_at.replace(tzinfo=timezone.utc))

    def expires_within(self, now: datetime, margin: timedelta) -> bool:
        """True if the access token expires before now + margin.

        A token without a known expiry is treated as long-lived.
        """
        if self.expires_at is None:
            return False
        return self.expires_at <= now + margin

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthCredential":
        data = dict(data)
        expires_at = data.get("expires_at")
        if isinstance(expires_at, str):
            data["expires_at"] = datetime.fromisoformat(expires_at)
        return cls(**data)


@dataclass(frozen=True)
class ApiKeyCredential:
    key: str = field(repr=False)
    secret: Optional[str] = field(default=None, repr=False)

    integration_type: ClassVar[IntegrationType] = IntegrationType.API_KEY

    def __post_init__(self):
        _require("ApiKeyCredential", key=self.key)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApiKeyCredential":
        return cls(**data)


@dataclass(frozen=True)
class SftpCredential:
    host: str
    user: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    path: str = "/"

    integration_type: ClassVar[IntegrationType] = IntegrationType.SFTP

    def __post_init__(self):
        _require("SftpCredential", host=self.host, user=self.user)
        if not self.password and not self.private_key:
            raise ValidationError("SftpCredential requires either password or private_key")
        try:
            port = int(self.port)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"SftpCredential port is not a number: {self.port!r}") from e
        if not (0 < port < 65536):
            raise ValidationError(f"SftpCredential port out of range: {port}")
        object.__setattr__(self, "port", port)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SftpCredential":
        return cls(**data)


@dataclass(frozen=True)
class EdiCredential:
    trading_partner_id: str
    interchange_id: str
    qualifier: str
    password: Optional[str] = field(default=None, repr=False)
    endpoint_url: Optional[str] = None

    integration_type: ClassVar[IntegrationType] = IntegrationType.EDI

    def __post_init__(self):
        _require(
            "EdiCredential",
            trading_partner_id=self.trading_partner_id,
            interchange_id=self.interchange_id,
            qualifier=self.qualifier,
        )
        if len(self.qualifier) != 2:
            raise ValidationError(f"EdiCredential qualifier must be 2 characters, got '{self.qualifier}'")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EdiCredential":
        return cls(**data)


Credential = Union[OAuthCredential, ApiKeyCredential, SftpCredential, EdiCredential]

CREDENTIAL_TYPES: dict[IntegrationType, type] = {
    IntegrationType.OAUTH: OAuthCredential,
    IntegrationType.API_KEY: ApiKeyCredential,
    IntegrationType.SFTP: SftpCredential,
    IntegrationType.EDI: EdiCredential,
}


def credential_from_dict(integration_type: Union[IntegrationType, str], data: dict[str, Any]) -> Credential:
    """Build the credential variant for an integration type.

    Raises:
        ValidationError: Unknown integration type, unknown or missing fields
    """
    try:
        integration_type = IntegrationType(integration_type)
    except ValueError as e:
        raise ValidationError(f"Unknown integration type: {integration_type}") from e

    credential_cls = CREDENTIAL_TYPES[integration_type]
    allowed = {f.name for f in fields(credential_cls)}
    unknown = set(data) - allowed
    if unknown:
        raise ValidationError(
            f"Unexpected fields for {integration_type.value} credentials: {', '.join(sorted(unknown))}"
        )
    try:
        return credential_cls.from_dict(data)
    except TypeError as e:
        raise ValidationError(f"Invalid {integration_type.value} credentials: {e}") from e


def ensure_matches(integration_type: IntegrationType, credential: Credential) -> None:
    """Raise ValidationError unless the credential variant matches the integration type."""
    if credential.integration_type != integration_type:
        raise ValidationError(
            f"Credential variant '{credential.integration_type.value}' does not match "
            f"integration type '{integration_type.value}'"
        )
