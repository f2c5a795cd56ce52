"""Webhooks module - inbound provider notifications

This module handles:
- HMAC signature verification per provider
- Deduplication within a retention window
- Normalization into canonical events
- Intake that queues deliveries and never fails toward the provider
"""
