"""Downgrade reconciliation for subscriptions whose renewal failed.

A subscription that could not be charged is either demoted to the free tier
or, when its owner already holds the maximum number of active free
subscriptions, has its credential disabled.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Iterable

from plansync.billing.membership import MembershipSynchronizer
from plansync.billing.schemas import CredentialBinding, DowngradeCandidate
from plansync.billing.tiers import (
    MAX_ACTIVE_FREE_SUBSCRIPTIONS,
    QuotaTier,
    SubscriptionStatus,
)
from plansync.core.cache import ProcessCache
from plansync.core.exceptions import SubscriptionNotFoundError
from plansync.core.fanout import BatchResult, QueueMessage, run_isolated
from plansync.core.logging import LoggerMixin
from plansync.core.metrics import track_downgrade
from plansync.integrations.base import SubscriptionStore


class DowngradeOutcome(str, enum.Enum):
    """Result of reconciling one downgrade candidate."""

    DEMOTED = "demoted"
    DISABLED = "disabled"
    UNCHANGED = "unchanged"


class DowngradeReconciler(LoggerMixin):
    """Demote-or-disable decisions under the per-owner free tier quota."""

    def __init__(
        self,
        store: SubscriptionStore,
        synchronizer: MembershipSynchronizer,
        cache: ProcessCache,
        free_quota: int = MAX_ACTIVE_FREE_SUBSCRIPTIONS,
    ) -> None:
        """Initialize the reconciler.

        Args:
            store: Subscription store
            synchronizer: Usage plan membership synchronizer
            cache: Process cache providing the plan catalog
            free_quota: Maximum active free subscriptions per owner
        """
        self.store = store
        self.synchronizer = synchronizer
        self.cache = cache
        self.free_quota = free_quota

    async def _count_active_free(self, owner_id: str) -> int:
        """Count the owner's active free subscriptions, up to the quota.

        A failed count is treated as the quota being reached.
        """
        try:
            return await self.store.count_by_owner_status(
                owner_id,
                SubscriptionStatus.ACTIVE_FREE,
                limit=self.free_quota,
            )
        except Exception as e:
            self.logger.warning(
                "free_quota_count_failed",
                owner_id=owner_id,
                error=str(e),
            )
            return self.free_quota

    async def reconcile(self, candidate: DowngradeCandidate) -> DowngradeOutcome:
        """Demote a candidate to free, or disable it when over quota.

        Args:
            candidate: Snapshot from the downgrade queue

        Returns:
            The action taken

        Raises:
            SubscriptionNotFoundError: If the subscription no longer exists
        """
        stored, free_count = await asyncio.gather(
            self.store.get(candidate.owner_id, candidate.project_id),
            self._count_active_free(candidate.owner_id),
        )
        if stored is None:
            raise SubscriptionNotFoundError(candidate.owner_id, candidate.project_id)

        if stored.status == SubscriptionStatus.ACTIVE_FREE:
            self.logger.info(
                "downgrade_already_applied",
                owner_id=stored.owner_id,
                project_id=stored.project_id,
            )
            return DowngradeOutcome.UNCHANGED

        credential_id = stored.credential.credential_id

        if free_count < self.free_quota:
            catalog = await self.cache.get_catalog()
            free_plan_id = catalog.plan_for(QuotaTier.FREE)

            await self.synchronizer.migrate(
                credential_id,
                stored.credential.usage_plan_id,
                free_plan_id,
            )
            await self.synchronizer.reactivate_if_inactive(credential_id, stored.status)
            await self.store.update(
                stored.owner_id,
                stored.project_id,
                tier=QuotaTier.FREE,
                status=SubscriptionStatus.ACTIVE_FREE,
                credential=CredentialBinding(
                    credential_id=credential_id,
                    usage_plan_id=free_plan_id,
                ),
                next_payment_date=None,
            )
            outcome = DowngradeOutcome.DEMOTED
        else:
            await self.synchronizer.set_enabled(credential_id, False)
            await self.store.update(
                stored.owner_id,
                stored.project_id,
                status=SubscriptionStatus.INACTIVE,
            )
            outcome = DowngradeOutcome.DISABLED

        track_downgrade(outcome.value)
        self.logger.info(
            "subscription_downgraded",
            owner_id=stored.owner_id,
            project_id=stored.project_id,
            previous_tier=stored.tier.value,
            outcome=outcome.value,
            active_free_count=free_count,
        )
        return outcome

    async def _reconcile_message(
        self,
        message: QueueMessage,
        owner_locks: dict[str, asyncio.Lock],
    ) -> DowngradeOutcome:
        if isinstance(message.body, str):
            candidate = DowngradeCandidate.model_validate_json(message.body)
        else:
            candidate = DowngradeCandidate.model_validate(message.body)

        # Count-then-write is serialized per owner within a batch.
        lock = owner_locks.setdefault(candidate.owner_id, asyncio.Lock())
        async with lock:
            return await self.reconcile(candidate)

    async def handle_batch(self, messages: Iterable[QueueMessage]) -> BatchResult:
        """Reconcile a batch of downgrade messages.

        Messages for different owners run concurrently; messages for the same
        owner run one after another so each sees its siblings' demotions in
        the free tier count. Each message succeeds or fails on its own and a
        failing message never prevents its siblings from being processed.

        Returns:
            BatchResult listing exactly the failed message ids
        """
        messages = list(messages)
        owner_locks: dict[str, asyncio.Lock] = {}
        result = await run_isolated(
            {
                message.message_id: (
                    lambda m=message: self._reconcile_message(m, owner_locks)
                )
                for message in messages
            }
        )

        for message_id, error in result.failures.items():
            self.logger.error(
                "downgrade_message_failed",
                message_id=message_id,
                error=str(error),
                error_type=type(error).__name__,
            )

        self.logger.info(
            "downgrade_batch_processed",
            total=len(messages),
            failed=len(result.failures),
        )
        return BatchResult.from_failures(result.failed_ids)
