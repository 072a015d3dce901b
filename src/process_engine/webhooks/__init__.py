"""
Inbound webhooks
"""
from .dispatcher import (
    FixedWindowRateLimiter, WebhookDispatcher, SIGNATURE_HEADER, resolve_client_ip, sign,
)

__all__ = ["FixedWindowRateLimiter", "WebhookDispatcher", "SIGNATURE_HEADER", "resolve_client_ip", "sign"]
