"""Tests for downgrade reconciliation."""

from __future__ import annotations

import json
from collections.abc import Callable

import pytest

from plansync.billing.downgrade import DowngradeOutcome
from plansync.billing.schemas import DowngradeCandidate, Subscription
from plansync.billing.tiers import QuotaTier, SubscriptionStatus
from plansync.core.exceptions import ExternalServiceError, SubscriptionNotFoundError
from plansync.core.fanout import QueueMessage
from plansync.runtime import Runtime

from conftest import CATALOG, FakeUsagePlanService, InMemorySubscriptionStore

MakeSubscription = Callable[..., Subscription]


def seed_free(
    store: InMemorySubscriptionStore,
    make_subscription: MakeSubscription,
    owner_id: str,
    count: int,
) -> None:
    for _ in range(count):
        store.seed(make_subscription(owner_id=owner_id, tier=QuotaTier.FREE))


def active_free_count(store: InMemorySubscriptionStore, owner_id: str) -> int:
    return sum(
        1
        for s in store.items.values()
        if s.owner_id == owner_id and s.status == SubscriptionStatus.ACTIVE_FREE
    )


class TestReconcile:
    """Tests for the demote-or-disable decision."""

    @pytest.mark.asyncio
    async def test_demotes_under_quota(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        usage_plans: FakeUsagePlanService,
        make_subscription: MakeSubscription,
    ) -> None:
        subscription = make_subscription(tier=QuotaTier.PRO)
        store.seed(subscription)
        seed_free(store, make_subscription, "owner-1", 1)
        credential_id = subscription.credential.credential_id
        usage_plans.seed(credential_id, CATALOG["pro"])

        outcome = await runtime.reconciler.reconcile(
            DowngradeCandidate.from_subscription(subscription)
        )

        assert outcome == DowngradeOutcome.DEMOTED
        stored = store.items[("owner-1", subscription.project_id)]
        assert stored.tier == QuotaTier.FREE
        assert stored.status == SubscriptionStatus.ACTIVE_FREE
        assert stored.credential.usage_plan_id == CATALOG["free"]
        assert stored.next_payment_date is None
        assert usage_plans.plans_of(credential_id) == {CATALOG["free"]}

    @pytest.mark.asyncio
    async def test_disables_at_quota(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        usage_plans: FakeUsagePlanService,
        make_subscription: MakeSubscription,
    ) -> None:
        subscription = make_subscription(tier=QuotaTier.EXECUTIVE)
        store.seed(subscription)
        seed_free(store, make_subscription, "owner-1", 3)
        credential_id = subscription.credential.credential_id
        usage_plans.seed(credential_id, CATALOG["executive"])

        outcome = await runtime.reconciler.reconcile(
            DowngradeCandidate.from_subscription(subscription)
        )

        assert outcome == DowngradeOutcome.DISABLED
        stored = store.items[("owner-1", subscription.project_id)]
        assert stored.status == SubscriptionStatus.INACTIVE
        assert stored.tier == QuotaTier.EXECUTIVE
        assert usage_plans.enabled[credential_id] is False
        assert usage_plans.plans_of(credential_id) == {CATALOG["executive"]}
        assert active_free_count(store, "owner-1") == 3

    @pytest.mark.asyncio
    async def test_quota_is_per_owner(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        subscription = make_subscription(owner_id="owner-1")
        store.seed(subscription)
        seed_free(store, make_subscription, "owner-2", 3)

        outcome = await runtime.reconciler.reconcile(
            DowngradeCandidate.from_subscription(subscription)
        )

        assert outcome == DowngradeOutcome.DEMOTED

    @pytest.mark.asyncio
    async def test_count_failure_disables(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        usage_plans: FakeUsagePlanService,
        make_subscription: MakeSubscription,
    ) -> None:
        """An unknown free count is treated as the quota being reached."""
        subscription = make_subscription()
        store.seed(subscription)
        store.count_error = RuntimeError("database unavailable")

        outcome = await runtime.reconciler.reconcile(
            DowngradeCandidate.from_subscription(subscription)
        )

        assert outcome == DowngradeOutcome.DISABLED
        assert usage_plans.enabled[subscription.credential.credential_id] is False

    @pytest.mark.asyncio
    async def test_reactivates_inactive_credential_on_demote(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        usage_plans: FakeUsagePlanService,
        make_subscription: MakeSubscription,
    ) -> None:
        subscription = make_subscription(status=SubscriptionStatus.INACTIVE)
        store.seed(subscription)
        credential_id = subscription.credential.credential_id
        usage_plans.seed(credential_id, CATALOG["pro"], enabled=False)

        outcome = await runtime.reconciler.reconcile(
            DowngradeCandidate.from_subscription(subscription)
        )

        assert outcome == DowngradeOutcome.DEMOTED
        assert usage_plans.enabled[credential_id] is True

    @pytest.mark.asyncio
    async def test_redelivery_after_demote_is_unchanged(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        usage_plans: FakeUsagePlanService,
        make_subscription: MakeSubscription,
    ) -> None:
        subscription = make_subscription()
        store.seed(subscription)
        candidate = DowngradeCandidate.from_subscription(subscription)

        assert await runtime.reconciler.reconcile(candidate) == DowngradeOutcome.DEMOTED
        usage_plans.calls.clear()

        assert await runtime.reconciler.reconcile(candidate) == DowngradeOutcome.UNCHANGED
        assert usage_plans.mutations == []

    @pytest.mark.asyncio
    async def test_uses_stored_binding_not_snapshot(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        usage_plans: FakeUsagePlanService,
        make_subscription: MakeSubscription,
    ) -> None:
        """The stored credential binding wins over the queued snapshot."""
        subscription = make_subscription(tier=QuotaTier.PRO)
        candidate = DowngradeCandidate.from_subscription(subscription)
        upgraded = subscription.model_copy(
            update={
                "tier": QuotaTier.EXECUTIVE,
                "status": SubscriptionStatus.ACTIVE_EXECUTIVE,
                "credential": subscription.credential.model_copy(
                    update={"usage_plan_id": CATALOG["executive"]}
                ),
            }
        )
        store.seed(upgraded)
        credential_id = subscription.credential.credential_id
        usage_plans.seed(credential_id, CATALOG["executive"])

        await runtime.reconciler.reconcile(candidate)

        assert ("detach", credential_id, CATALOG["executive"]) in usage_plans.mutations
        assert usage_plans.plans_of(credential_id) == {CATALOG["free"]}

    @pytest.mark.asyncio
    async def test_missing_subscription(
        self,
        runtime: Runtime,
        make_subscription: MakeSubscription,
    ) -> None:
        candidate = DowngradeCandidate.from_subscription(make_subscription())
        with pytest.raises(SubscriptionNotFoundError):
            await runtime.reconciler.reconcile(candidate)


class TestHandleBatch:
    """Tests for batch reconciliation with per-message isolation."""

    @pytest.mark.asyncio
    async def test_failures_are_isolated(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        present = make_subscription(project_id="proj-present")
        missing = make_subscription(project_id="proj-missing")
        store.seed(present)

        messages = [
            QueueMessage(
                message_id="m-1",
                body=json.dumps(DowngradeCandidate.from_subscription(present).to_message()),
            ),
            QueueMessage(
                message_id="m-2",
                body=DowngradeCandidate.from_subscription(missing).to_message(),
            ),
            QueueMessage(message_id="m-3", body="{not json"),
        ]

        result = await runtime.reconciler.handle_batch(messages)

        assert set(result.failed_ids) == {"m-2", "m-3"}
        assert store.items[("owner-1", "proj-present")].tier == QuotaTier.FREE
        assert result.to_dict() == {
            "batchItemFailures": [
                {"itemIdentifier": item_id} for item_id in result.failed_ids
            ]
        }

    @pytest.mark.asyncio
    async def test_quota_service_failure_marks_item(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        usage_plans: FakeUsagePlanService,
        make_subscription: MakeSubscription,
    ) -> None:
        subscription = make_subscription()
        store.seed(subscription)
        usage_plans.errors["attach"] = ExternalServiceError("boom", service="apigateway")

        result = await runtime.reconciler.handle_batch(
            [
                QueueMessage(
                    message_id="m-1",
                    body=DowngradeCandidate.from_subscription(subscription).to_message(),
                )
            ]
        )

        assert result.failed_ids == ("m-1",)
        # Not written back, so a redelivery repeats the move
        assert store.items[("owner-1", subscription.project_id)].tier == QuotaTier.PRO

    @pytest.mark.asyncio
    async def test_empty_batch(self, runtime: Runtime) -> None:
        result = await runtime.reconciler.handle_batch([])
        assert result.failed_ids == ()

    @pytest.mark.asyncio
    async def test_free_quota_never_exceeded(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        """Sequential candidates for one owner stop demoting at the quota."""
        candidates = [make_subscription(project_id=f"proj-{i}") for i in range(5)]
        store.seed(*candidates)

        for subscription in candidates:
            await runtime.reconciler.handle_batch(
                [
                    QueueMessage(
                        message_id=subscription.project_id,
                        body=DowngradeCandidate.from_subscription(subscription).to_message(),
                    )
                ]
            )

        assert active_free_count(store, "owner-1") == 3
        inactive = [
            s for s in store.items.values() if s.status == SubscriptionStatus.INACTIVE
        ]
        assert len(inactive) == 2

    @pytest.mark.asyncio
    async def test_same_owner_batch_respects_quota(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        usage_plans: FakeUsagePlanService,
        make_subscription: MakeSubscription,
    ) -> None:
        """Candidates of one owner in a single batch see each other's demotions."""
        seed_free(store, make_subscription, "owner-1", 2)
        candidates = [make_subscription(project_id=f"proj-{i}") for i in range(3)]
        other_owner = make_subscription(owner_id="owner-2", project_id="proj-other")
        store.seed(*candidates, other_owner)

        result = await runtime.reconciler.handle_batch(
            [
                QueueMessage(
                    message_id=subscription.project_id,
                    body=DowngradeCandidate.from_subscription(subscription).to_message(),
                )
                for subscription in [*candidates, other_owner]
            ]
        )

        assert result.failed_ids == ()
        assert active_free_count(store, "owner-1") == 3
        assert active_free_count(store, "owner-2") == 1
        disabled = [
            s
            for s in store.items.values()
            if s.owner_id == "owner-1" and s.status == SubscriptionStatus.INACTIVE
        ]
        assert len(disabled) == 2
        for subscription in disabled:
            assert usage_plans.enabled[subscription.credential.credential_id] is False

    @pytest.mark.asyncio
    async def test_only_failing_message_is_reported(
        self,
        runtime: Runtime,
        store: InMemorySubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        first = make_subscription(project_id="proj-1")
        missing = make_subscription(project_id="proj-2")
        third = make_subscription(project_id="proj-3")
        store.seed(first, third)

        result = await runtime.reconciler.handle_batch(
            [
                QueueMessage(
                    message_id=f"m-{i}",
                    body=DowngradeCandidate.from_subscription(subscription).to_message(),
                )
                for i, subscription in enumerate([first, missing, third], start=1)
            ]
        )

        assert result.failed_ids == ("m-2",)
        for project_id in ("proj-1", "proj-3"):
            stored = store.items[("owner-1", project_id)]
            assert stored.status == SubscriptionStatus.ACTIVE_FREE
            assert stored.credential.usage_plan_id == CATALOG["free"]
