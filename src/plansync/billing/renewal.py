"""Billing renewal driver.

Finds paid subscriptions whose next payment date has passed, charges each
stored card with bounded retry, and hands failed charges to the downgrade
queue. A run processes one page per paid tier and returns either a
``Continuation`` carrying the cursor for the next run or ``Done``. Sending the
continuation is left to the caller.
"""

from __future__ import annotations

import asyncio
import enum
from datetime import UTC, datetime

from plansync.billing.catalog import PlanCatalog
from plansync.billing.schemas import (
    Continuation,
    Done,
    DowngradeCandidate,
    RenewalCursor,
    RenewalReport,
    RenewalStep,
    Subscription,
)
from plansync.billing.tiers import PAID_TIERS, QuotaTier, status_for_tier
from plansync.core.cache import ProcessCache
from plansync.core.config import Settings, get_settings
from plansync.core.exceptions import TerminalError, TransientError
from plansync.core.fanout import run_isolated
from plansync.core.logging import LoggerMixin
from plansync.core.metrics import track_renewal_charge
from plansync.core.retry import RetryConfig, retry_async
from plansync.integrations.base import MessageQueue, Page, SubscriptionStore
from plansync.payments.gateway import PaymentGatewayClient
from plansync.payments.schemas import ChargeRequest, PaymentMetadata


class RenewalOutcome(str, enum.Enum):
    """Final outcome of one subscription's renewal attempt."""

    CHARGED = "charged"
    DOWNGRADED = "downgraded"
    ESCALATION_FAILED = "escalation_failed"


def renewal_tx_ref(subscription: Subscription) -> str:
    """Build the gateway idempotency reference for a renewal charge.

    Stable for a given billing period: retries within a run and reruns of
    the same period reuse it.
    """
    due = subscription.next_payment_date
    due_ms = int(due.timestamp() * 1000) if due is not None else 0
    return f"{subscription.project_id}-{due_ms}"


def subscription_key(subscription: Subscription) -> str:
    return f"{subscription.owner_id}/{subscription.project_id}"


class RenewalDriver(LoggerMixin):
    """Charges due paid subscriptions one page at a time."""

    def __init__(
        self,
        store: SubscriptionStore,
        gateway: PaymentGatewayClient,
        queue: MessageQueue,
        cache: ProcessCache,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the driver.

        Args:
            store: Subscription store
            gateway: Payment gateway client
            queue: Queue used to escalate failed charges
            cache: Process cache providing the catalog and gateway token
            settings: Page size, retry policy and queue names
        """
        self.store = store
        self.gateway = gateway
        self.queue = queue
        self.cache = cache
        self.settings = settings or get_settings()
        self.retry_config = RetryConfig(
            max_attempts=self.settings.charge_max_attempts,
            delay=self.settings.charge_retry_delay_seconds,
            retry_exceptions=(TransientError,),
        )

    async def _scan(
        self,
        tier: QuotaTier,
        cursor: RenewalCursor | None,
        now: datetime,
    ) -> Page:
        return await self.store.query_due(
            status_for_tier(tier),
            now,
            cursor=cursor.for_tier(tier) if cursor is not None else None,
            limit=self.settings.renewal_page_size,
        )

    async def run(
        self,
        cursor: RenewalCursor | None = None,
        now: datetime | None = None,
    ) -> RenewalStep:
        """Process one page of due subscriptions per paid tier.

        A run without a cursor scans every paid tier from the start. A
        continuation only resumes the tiers whose cursor is still set.

        Args:
            cursor: Resume points from the previous run, or None
            now: Reference time for "due" (defaults to current UTC time)

        Returns:
            Continuation if any tier has more pages, else Done

        Raises:
            ConfigurationError: If secrets or the plan catalog cannot be loaded
        """
        now = now or datetime.now(UTC)
        if cursor is None:
            tiers = list(PAID_TIERS)
        else:
            tiers = [tier for tier in PAID_TIERS if cursor.for_tier(tier) is not None]

        pages = dict(
            zip(
                tiers,
                await asyncio.gather(*(self._scan(tier, cursor, now) for tier in tiers)),
                strict=True,
            )
        )
        due = [subscription for page in pages.values() for subscription in page.items]

        report = RenewalReport(scanned=len(due))
        if all(page.is_empty for page in pages.values()):
            self.logger.info("renewal_nothing_due", tiers=[t.value for t in tiers])
            return Done(report=report)

        catalog = await self.cache.get_catalog()
        await self.cache.payment_gateway_token()

        result = await run_isolated(
            {
                subscription_key(subscription): (
                    lambda s=subscription: self.renew(s, catalog)
                )
                for subscription in due
            }
        )

        for outcome in result.results.values():
            if outcome == RenewalOutcome.CHARGED:
                report.charged += 1
            elif outcome == RenewalOutcome.DOWNGRADED:
                report.downgraded += 1
            else:
                report.failed += 1
        for key, error in result.failures.items():
            report.failed += 1
            report.failed_ids.append(key)
            self.logger.error(
                "renewal_failed",
                subscription=key,
                error=str(error),
                error_type=type(error).__name__,
            )

        next_cursor = RenewalCursor(
            pro=pages[QuotaTier.PRO].next_cursor if QuotaTier.PRO in pages else None,
            executive=(
                pages[QuotaTier.EXECUTIVE].next_cursor
                if QuotaTier.EXECUTIVE in pages
                else None
            ),
        )

        self.logger.info(
            "renewal_page_processed",
            **report.to_dict(),
            has_more=not next_cursor.is_exhausted,
        )

        if next_cursor.is_exhausted:
            return Done(report=report)
        return Continuation(cursor=next_cursor, report=report)

    async def renew(self, subscription: Subscription, catalog: PlanCatalog) -> RenewalOutcome:
        """Charge one subscription, escalating to downgrade on failure.

        A declined charge is escalated at once. Transient failures are
        retried up to the configured attempt budget first.
        """
        try:
            await retry_async(
                lambda: self._charge(subscription, catalog),
                self.retry_config,
                operation="renewal_charge",
                owner_id=subscription.owner_id,
                project_id=subscription.project_id,
            )
        except TerminalError as e:
            self.logger.warning(
                "renewal_charge_declined",
                owner_id=subscription.owner_id,
                project_id=subscription.project_id,
                status_code=e.status_code,
            )
        except TransientError as e:
            self.logger.warning(
                "renewal_charge_retries_exhausted",
                owner_id=subscription.owner_id,
                project_id=subscription.project_id,
                attempts=self.retry_config.max_attempts,
                error=str(e),
            )
        else:
            track_renewal_charge(subscription.tier.value, RenewalOutcome.CHARGED.value)
            return RenewalOutcome.CHARGED

        outcome = await self._escalate(subscription)
        track_renewal_charge(subscription.tier.value, outcome.value)
        return outcome

    async def _charge(self, subscription: Subscription, catalog: PlanCatalog) -> None:
        if subscription.card is None:
            raise TerminalError(
                "Subscription has no stored card token",
                service="payment_gateway",
                details={"project_id": subscription.project_id},
            )

        resolved = await self.gateway.resolve_plan(subscription.tier, catalog)
        charge = ChargeRequest(
            token=subscription.card.token,
            email=subscription.email,
            currency=resolved.details.currency,
            country=self.settings.charge_country_code,
            amount=resolved.details.amount,
            tx_ref=renewal_tx_ref(subscription),
            narration=f"Renewal charge for project: {subscription.project_name}",
            meta=PaymentMetadata(
                owner_id=subscription.owner_id,
                project_id=subscription.project_id,
                usage_plan_id=resolved.usage_plan_id,
                tier=subscription.tier,
                project_name=subscription.project_name,
            ),
        )
        await self.gateway.create_tokenized_charge(charge)

    async def _escalate(self, subscription: Subscription) -> RenewalOutcome:
        """Enqueue a downgrade candidate; send failures are logged only."""
        candidate = DowngradeCandidate.from_subscription(subscription)
        try:
            await self.queue.send(self.settings.downgrade_queue, candidate.to_message())
        except Exception as e:
            self.logger.error(
                "downgrade_enqueue_failed",
                owner_id=subscription.owner_id,
                project_id=subscription.project_id,
                error=str(e),
            )
            return RenewalOutcome.ESCALATION_FAILED

        self.logger.info(
            "downgrade_enqueued",
            owner_id=subscription.owner_id,
            project_id=subscription.project_id,
            tier=subscription.tier.value,
        )
        return RenewalOutcome.DOWNGRADED
