"""Subscription tiers, plan catalog and lifecycle services."""

from plansync.billing.catalog import PlanCatalog, load_catalog, parse_catalog
from plansync.billing.schemas import (
    CardToken,
    CredentialBinding,
    DowngradeCandidate,
    RenewalCursor,
    Subscription,
)
from plansync.billing.tiers import (
    MAX_ACTIVE_FREE_SUBSCRIPTIONS,
    PAID_TIERS,
    QuotaTier,
    SubscriptionStatus,
    status_for_tier,
    tier_for_status,
)

__all__ = [
    "MAX_ACTIVE_FREE_SUBSCRIPTIONS",
    "PAID_TIERS",
    "CardToken",
    "CredentialBinding",
    "DowngradeCandidate",
    "PlanCatalog",
    "QuotaTier",
    "RenewalCursor",
    "Subscription",
    "SubscriptionStatus",
    "load_catalog",
    "parse_catalog",
    "status_for_tier",
    "tier_for_status",
]
