"""
Integrations module - ELD and TMS connection and synchronization framework

This module provides one capability interface (ProviderAdapter) over six
providers and handles:
- Connection lifecycle and status state machine (ConnectionManager)
- Just-in-time OAuth token refresh (TokenRefreshGuard)
- Synchronization with per-entity failure isolation (SyncOrchestrator)
- ELD reads and TMS load pushes (ProviderGateway)
- OAuth authorization-code bootstrap (OAuthBootstrap)
- Error classification and retry policy

Services are composed once in integrations.container.
"""
