"""Parsing helpers shared by provider adapters."""

from datetime import datetime, timezone
from typing import Any, Optional

from ..errors import ProviderUnavailableError, ValidationError


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings or epoch seconds/milliseconds into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def ms_to_minutes(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value) // 60_000


def as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def unwrap(body: Any, key: str, provider_type: str) -> Any:
    """Return body[key], treating a missing envelope as a malformed provider response."""
    if not isinstance(body, dict) or key not in body:
        raise ProviderUnavailableError(
            f"{provider_type} response missing '{key}'", provider_type=provider_type
        )
    return body[key]


def require_event_type(payload: dict[str, Any], *keys: str) -> str:
    for key in keys:
        if payload.get(key):
            return str(payload[key])
    raise ValidationError(f"Webhook payload has no event type (looked for {', '.join(keys)})")


def date_param(value: Optional[datetime]) -> Optional[str]:
    return value.date().isoformat() if value else None


def iso_param(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z") if value else None
