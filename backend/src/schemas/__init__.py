"""Pydantic schemas for the integration framework"""

from .integration import (
    parse,
    ConnectionSettings,
    ConnectionCreate,
    ConnectionUpdate,
    ConnectionRead,
    SyncRequestIn,
    SyncOperationRead,
    AuthorizationUrlRequest,
    CodeExchangeRequest,
    LoadIn,
)

__all__ = [
    "parse",
    # Connections
    "ConnectionSettings",
    "ConnectionCreate",
    "ConnectionUpdate",
    "ConnectionRead",
    # Sync
    "SyncRequestIn",
    "SyncOperationRead",
    # OAuth
    "AuthorizationUrlRequest",
    "CodeExchangeRequest",
    # TMS
    "LoadIn",
]
