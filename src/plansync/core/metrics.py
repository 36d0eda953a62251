"""Prometheus metrics for subscription lifecycle processing."""

from prometheus_client import Counter

renewal_charges_total = Counter(
    "plansync_renewal_charges_total",
    "Renewal charge attempts by final outcome",
    ["tier", "outcome"],
)

downgrades_total = Counter(
    "plansync_downgrades_total",
    "Downgrade reconciliations by outcome",
    ["outcome"],
)

webhook_events_total = Counter(
    "plansync_webhook_events_total",
    "Inbound payment webhook events by outcome",
    ["outcome"],
)

membership_mutations_total = Counter(
    "plansync_membership_mutations_total",
    "Usage plan membership mutations sent to the quota service",
    ["operation"],
)


def track_renewal_charge(tier: str, outcome: str) -> None:
    """Track the final outcome of one subscription's renewal charge.

    Args:
        tier: Quota tier being renewed
        outcome: 'charged', 'downgraded' or 'escalation_failed'
    """
    renewal_charges_total.labels(tier=tier, outcome=outcome).inc()


def track_downgrade(outcome: str) -> None:
    """Track a downgrade reconciliation outcome ('demoted' or 'disabled')."""
    downgrades_total.labels(outcome=outcome).inc()


def track_webhook_event(outcome: str) -> None:
    """Track a webhook ingestion outcome."""
    webhook_events_total.labels(outcome=outcome).inc()


def track_membership_mutation(operation: str) -> None:
    """Track an attach, detach, enable or disable sent to the quota service."""
    membership_mutations_total.labels(operation=operation).inc()
