"""Connection status state machine.

    PENDING --validate ok--> ACTIVE
    ACTIVE  --auth failure--> ERROR
    ACTIVE  --expiry, refresh failed--> EXPIRED
    ERROR | EXPIRED --validate ok--> ACTIVE
    PENDING | ACTIVE | ERROR | EXPIRED --revocation--> REVOKED

REVOKED has no outgoing edge. PENDING may also fall to ERROR or EXPIRED when
its background validation fails. Besides validation, a stored token refresh
moves EXPIRED back to ACTIVE (ConnectionManager.store_refreshed_credentials).
"""

from .domain import ConnectionStatus
from .errors import ValidationError

ALLOWED_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.PENDING: frozenset({
        ConnectionStatus.ACTIVE,
        ConnectionStatus.ERROR,
        ConnectionStatus.EXPIRED,
        ConnectionStatus.REVOKED,
    }),
    ConnectionStatus.ACTIVE: frozenset({
        ConnectionStatus.ERROR,
        ConnectionStatus.EXPIRED,
        ConnectionStatus.REVOKED,
    }),
    ConnectionStatus.ERROR: frozenset({ConnectionStatus.ACTIVE, ConnectionStatus.REVOKED}),
    ConnectionStatus.EXPIRED: frozenset({ConnectionStatus.ACTIVE, ConnectionStatus.REVOKED}),
    ConnectionStatus.REVOKED: frozenset(),
}


def can_transition(current: ConnectionStatus, target: ConnectionStatus) -> bool:
    """True if current -> target is an edge of the graph (self-loops excluded)."""
    return target in ALLOWED_TRANSITIONS[current]


def resolve_transition(current: ConnectionStatus, target: ConnectionStatus) -> ConnectionStatus:
    """Return the status a connection ends in when `target` is requested.

    A self-transition is a no-op; any other edge outside the graph leaves
    the current status unchanged.
    """
    if current == target or can_transition(current, target):
        return target
    return current


def require_transition(current: ConnectionStatus, target: ConnectionStatus) -> None:
    """Raise ValidationError for an explicitly requested edge outside the graph."""
    if current != target and not can_transition(current, target):
        raise ValidationError(f"Connection cannot move from {current.value} to {target.value}")
