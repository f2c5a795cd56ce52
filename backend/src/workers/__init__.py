"""Background workers for the integration framework.

Celery tasks:
- integrations.process_webhook: normalize one queued webhook delivery
- integrations.validate_connection: background test of a PENDING connection
- integrations.refresh_expiring_tokens: proactive OAuth refresh sweep
- integrations.run_scheduled_syncs: auto-sync sweep over due connections

Tasks resolve their collaborators through integrations.container and accept
only serializable arguments (connection ids, webhook messages).
"""
