"""Interfaces and adapters for the store, quota service, secrets and queue."""

from plansync.integrations.base import (
    CreatedCredential,
    MessageQueue,
    Page,
    SecretStore,
    SubscriptionStore,
    UsagePlanService,
)

__all__ = [
    "CreatedCredential",
    "MessageQueue",
    "Page",
    "SecretStore",
    "SubscriptionStore",
    "UsagePlanService",
]
