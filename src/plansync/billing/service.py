"""Subscription service: provisioning, subscribe and cancel flows."""

from datetime import UTC, datetime
from uuid import uuid4

from plansync.billing.membership import MembershipSynchronizer
from plansync.billing.schemas import (
    CardToken,
    CredentialBinding,
    SubscribeRequest,
    SubscribeResult,
    Subscription,
)
from plansync.billing.tiers import QuotaTier, SubscriptionStatus, status_for_tier
from plansync.core.cache import ProcessCache
from plansync.core.config import Settings, get_settings
from plansync.core.exceptions import SubscriptionNotFoundError
from plansync.core.logging import LoggerMixin
from plansync.integrations.base import SubscriptionStore, UsagePlanService
from plansync.payments.gateway import PaymentGatewayClient
from plansync.payments.schemas import CustomerInfo, PaymentInitialization, PaymentMetadata


def credential_name(project_name: str, owner_id: str) -> str:
    """Build the quota service name of a project's API credential."""
    return f"{project_name.replace(' ', '_')}_{owner_id}"


class SubscriptionService(LoggerMixin):
    """Service for creating, changing and cancelling subscriptions."""

    def __init__(
        self,
        store: SubscriptionStore,
        synchronizer: MembershipSynchronizer,
        usage_plans: UsagePlanService,
        gateway: PaymentGatewayClient,
        cache: ProcessCache,
        settings: Settings | None = None,
    ) -> None:
        """Initialize subscription service.

        Args:
            store: Subscription store
            synchronizer: Usage plan membership synchronizer
            usage_plans: Quota service client, used to create credentials
            gateway: Payment gateway client
            cache: Process cache providing the plan catalog
            settings: Application settings
        """
        self.store = store
        self.synchronizer = synchronizer
        self.usage_plans = usage_plans
        self.gateway = gateway
        self.cache = cache
        self.settings = settings or get_settings()

    async def provision(
        self,
        *,
        owner_id: str,
        project_id: str,
        project_name: str,
        email: str,
        tier: QuotaTier,
        card: CardToken | None = None,
        current_billing_date: datetime | None = None,
        next_payment_date: datetime | None = None,
        created_at: datetime | None = None,
    ) -> Subscription:
        """Create a credential, attach it to the tier's plan and store it.

        Args:
            owner_id: Owning user
            project_id: New project id
            project_name: Display name of the project
            email: Billing contact
            tier: Quota tier to provision
            card: Card token for paid tiers
            current_billing_date: Start of the current billing period
            next_payment_date: When the next renewal is due
            created_at: Creation timestamp (defaults to now)

        Returns:
            The stored subscription
        """
        catalog = await self.cache.get_catalog()
        plan_id = catalog.plan_for(tier)

        created = await self.usage_plans.create_credential(
            credential_name(project_name, owner_id)
        )
        await self.synchronizer.ensure_attached(created.credential_id, plan_id)

        subscription = Subscription(
            owner_id=owner_id,
            project_id=project_id,
            project_name=project_name,
            email=email,
            tier=tier,
            status=status_for_tier(tier),
            credential=CredentialBinding(
                credential_id=created.credential_id,
                usage_plan_id=plan_id,
            ),
            api_key=created.value,
            card=card,
            current_billing_date=current_billing_date,
            next_payment_date=next_payment_date,
            created_at=created_at or datetime.now(UTC),
        )
        await self.store.put(subscription)

        self.logger.info(
            "subscription_provisioned",
            owner_id=owner_id,
            project_id=project_id,
            tier=QuotaTier(tier).value,
            credential_id=created.credential_id,
        )
        return subscription

    async def subscribe(self, request: SubscribeRequest) -> SubscribeResult:
        """Subscribe a project to a tier.

        Free tier requests are applied immediately. Paid tier requests start
        a hosted checkout; the subscription is written when the gateway's
        payment webhook arrives.
        """
        project_id = request.project_id or str(uuid4())

        if request.tier != QuotaTier.FREE:
            return await self._start_checkout(request, project_id)

        existing = None
        if request.project_id:
            existing = await self.store.get(request.owner_id, request.project_id)

        if existing is None:
            subscription = await self.provision(
                owner_id=request.owner_id,
                project_id=project_id,
                project_name=request.project_name,
                email=request.email,
                tier=QuotaTier.FREE,
            )
            return SubscribeResult(
                project_id=project_id,
                tier=QuotaTier.FREE,
                subscription=subscription,
                provisioned=True,
            )

        catalog = await self.cache.get_catalog()
        free_plan_id = catalog.plan_for(QuotaTier.FREE)
        credential_id = existing.credential.credential_id

        await self.synchronizer.migrate(
            credential_id,
            existing.credential.usage_plan_id,
            free_plan_id,
        )
        await self.synchronizer.reactivate_if_inactive(credential_id, existing.status)
        subscription = await self.store.update(
            existing.owner_id,
            existing.project_id,
            tier=QuotaTier.FREE,
            status=SubscriptionStatus.ACTIVE_FREE,
            credential=CredentialBinding(
                credential_id=credential_id,
                usage_plan_id=free_plan_id,
            ),
            next_payment_date=None,
        )

        self.logger.info(
            "subscription_moved_to_free",
            owner_id=existing.owner_id,
            project_id=existing.project_id,
            previous_tier=existing.tier.value,
        )
        return SubscribeResult(
            project_id=project_id,
            tier=QuotaTier.FREE,
            subscription=subscription,
        )

    async def _start_checkout(
        self,
        request: SubscribeRequest,
        project_id: str,
    ) -> SubscribeResult:
        catalog = await self.cache.get_catalog()
        resolved = await self.gateway.resolve_plan(request.tier, catalog)

        payment = PaymentInitialization(
            tx_ref=str(uuid4()),
            amount=resolved.details.amount,
            currency=resolved.details.currency,
            redirect_url=self.settings.payment_redirect_url,
            customer=CustomerInfo(email=request.email, name=request.customer_name or ""),
            customizations={"title": self.settings.app_name},
            meta=PaymentMetadata(
                owner_id=request.owner_id,
                project_id=project_id,
                usage_plan_id=resolved.usage_plan_id,
                tier=request.tier,
                project_name=request.project_name,
            ),
        )
        checkout = await self.gateway.initialize_payment(payment)

        return SubscribeResult(
            project_id=project_id,
            tier=request.tier,
            checkout=checkout,
        )

    async def cancel(self, owner_id: str, project_id: str) -> Subscription:
        """Disable a subscription's credential and mark it inactive.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
        """
        existing = await self.store.get(owner_id, project_id)
        if existing is None:
            raise SubscriptionNotFoundError(owner_id, project_id)

        await self.synchronizer.set_enabled(existing.credential.credential_id, False)
        subscription = await self.store.update(
            owner_id,
            project_id,
            status=SubscriptionStatus.INACTIVE,
        )

        self.logger.info(
            "subscription_cancelled",
            owner_id=owner_id,
            project_id=project_id,
            tier=existing.tier.value,
        )
        return subscription
