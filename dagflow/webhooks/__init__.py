"""
Webhooks package - Delivery of execution lifecycle events.
"""

from dagflow.webhooks.dispatcher import (
    WebhookDelivery,
    HttpWebhookDelivery,
    WebhookDispatcher,
    subscription_matches,
    build_payload,
)

__all__ = [
    "WebhookDelivery",
    "HttpWebhookDelivery",
    "WebhookDispatcher",
    "subscription_matches",
    "build_payload",
]
