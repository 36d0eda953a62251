"""Quota tiers and the subscription lifecycle statuses derived from them."""

import enum


class QuotaTier(str, enum.Enum):
    """Quota tier enum."""

    FREE = "free"
    PRO = "pro"
    EXECUTIVE = "executive"


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle status.

    There is exactly one active status per tier, plus ``INACTIVE``.
    """

    INACTIVE = "inactive"
    ACTIVE_FREE = "active_free"
    ACTIVE_PRO = "active_pro"
    ACTIVE_EXECUTIVE = "active_executive"


TIER_TO_STATUS: dict[QuotaTier, SubscriptionStatus] = {
    QuotaTier.FREE: SubscriptionStatus.ACTIVE_FREE,
    QuotaTier.PRO: SubscriptionStatus.ACTIVE_PRO,
    QuotaTier.EXECUTIVE: SubscriptionStatus.ACTIVE_EXECUTIVE,
}

STATUS_TO_TIER: dict[SubscriptionStatus, QuotaTier] = {
    status: tier for tier, status in TIER_TO_STATUS.items()
}

# Tiers scanned by the renewal driver
PAID_TIERS: tuple[QuotaTier, ...] = (QuotaTier.PRO, QuotaTier.EXECUTIVE)

MAX_ACTIVE_FREE_SUBSCRIPTIONS = 3


def status_for_tier(tier: QuotaTier) -> SubscriptionStatus:
    """Get the active status for a tier.

    Args:
        tier: The quota tier

    Returns:
        The single active status associated with the tier
    """
    return TIER_TO_STATUS[QuotaTier(tier)]


def tier_for_status(status: SubscriptionStatus) -> QuotaTier:
    """Get the tier implied by an active status.

    Raises:
        ValueError: If the status is ``INACTIVE``
    """
    status = SubscriptionStatus(status)
    if status not in STATUS_TO_TIER:
        raise ValueError(f"Status {status.value} does not imply a tier")
    return STATUS_TO_TIER[status]


def normalize_tier_name(value: str) -> QuotaTier:
    """Parse a user or gateway supplied tier name.

    Names are compared lower-cased and trimmed.

    Raises:
        ValueError: If the name is not a known tier
    """
    return QuotaTier(value.strip().lower())
