"""Component wiring shared by the API and the workers."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from plansync.billing.downgrade import DowngradeReconciler
from plansync.billing.membership import MembershipSynchronizer
from plansync.billing.renewal import RenewalDriver
from plansync.billing.service import SubscriptionService
from plansync.core.cache import ProcessCache
from plansync.core.config import Settings, get_settings
from plansync.integrations.base import (
    MessageQueue,
    SecretStore,
    SubscriptionStore,
    UsagePlanService,
)
from plansync.payments.gateway import PaymentGatewayClient
from plansync.payments.webhook import WebhookIngestion


@dataclass
class Runtime:
    """Fully wired set of services for one process."""

    settings: Settings
    store: SubscriptionStore
    usage_plans: UsagePlanService
    secrets: SecretStore
    queue: MessageQueue
    cache: ProcessCache
    gateway: PaymentGatewayClient
    synchronizer: MembershipSynchronizer
    subscriptions: SubscriptionService
    webhook: WebhookIngestion
    reconciler: DowngradeReconciler
    renewal: RenewalDriver

    async def close(self) -> None:
        await self.gateway.close()


def build_runtime(
    settings: Settings | None = None,
    *,
    store: SubscriptionStore | None = None,
    usage_plans: UsagePlanService | None = None,
    secrets: SecretStore | None = None,
    queue: MessageQueue | None = None,
    gateway_transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    """Build all services, defaulting each adapter to its production backend.

    Args:
        settings: Application settings
        store: Subscription store (default: SQL)
        usage_plans: Quota service (default: API Gateway)
        secrets: Secret store (default: Secrets Manager)
        queue: Message queue (default: Celery)
        gateway_transport: httpx transport for the payment gateway client

    Returns:
        Wired runtime
    """
    settings = settings or get_settings()

    if store is None:
        from plansync.core.database import get_session_factory
        from plansync.integrations.sql_store import SqlSubscriptionStore

        store = SqlSubscriptionStore(get_session_factory())
    if usage_plans is None or secrets is None:
        from plansync.integrations.aws import ApiGatewayUsagePlanService, SecretsManagerStore

        usage_plans = usage_plans or ApiGatewayUsagePlanService(region_name=settings.aws_region)
        secrets = secrets or SecretsManagerStore(region_name=settings.aws_region)
    if queue is None:
        from plansync.integrations.celery_queue import CeleryMessageQueue
        from plansync.workers.celery_app import QUEUE_TASKS, celery_app

        queue = CeleryMessageQueue(celery_app, QUEUE_TASKS)

    cache = ProcessCache(secrets, settings)
    gateway = PaymentGatewayClient(
        settings.payment_gateway_url,
        cache,
        timeout=settings.payment_gateway_timeout,
        transport=gateway_transport,
    )
    synchronizer = MembershipSynchronizer(usage_plans)
    subscriptions = SubscriptionService(
        store,
        synchronizer,
        usage_plans,
        gateway,
        cache,
        settings,
    )

    return Runtime(
        settings=settings,
        store=store,
        usage_plans=usage_plans,
        secrets=secrets,
        queue=queue,
        cache=cache,
        gateway=gateway,
        synchronizer=synchronizer,
        subscriptions=subscriptions,
        webhook=WebhookIngestion(store, synchronizer, subscriptions, gateway, cache),
        reconciler=DowngradeReconciler(
            store,
            synchronizer,
            cache,
            free_quota=settings.max_active_free_subscriptions,
        ),
        renewal=RenewalDriver(store, gateway, queue, cache, settings),
    )
