"""Usage plan membership synchronization.

Moves an API credential between usage plans so that after a successful call
it is a member of the target plan and not of the previous one. Every step
checks current membership first, so a repeated or partially applied move is
safe to run again.
"""

from __future__ import annotations

from plansync.billing.tiers import SubscriptionStatus
from plansync.core.exceptions import NotFoundError
from plansync.core.logging import LoggerMixin
from plansync.core.metrics import track_membership_mutation
from plansync.integrations.base import UsagePlanService


class MembershipSynchronizer(LoggerMixin):
    """Idempotent attach/detach of credentials to usage plans."""

    def __init__(self, usage_plans: UsagePlanService) -> None:
        """Initialize the synchronizer.

        Args:
            usage_plans: Quota service client
        """
        self.usage_plans = usage_plans

    async def is_member(self, credential_id: str, plan_id: str) -> bool:
        """Check whether a credential is attached to a plan.

        A not-found answer from the quota service means "not a member". Any
        other error propagates.
        """
        try:
            return await self.usage_plans.is_member(credential_id, plan_id)
        except NotFoundError:
            return False

    async def ensure_detached(self, credential_id: str, plan_id: str) -> bool:
        """Detach a credential from a plan if it is currently a member.

        Returns:
            True if a detach call was made
        """
        if not await self.is_member(credential_id, plan_id):
            self.logger.debug(
                "membership_detach_skipped",
                credential_id=credential_id,
                plan_id=plan_id,
            )
            return False

        await self.usage_plans.detach(credential_id, plan_id)
        track_membership_mutation("detach")
        self.logger.info(
            "credential_detached",
            credential_id=credential_id,
            plan_id=plan_id,
        )
        return True

    async def ensure_attached(self, credential_id: str, plan_id: str) -> bool:
        """Attach a credential to a plan unless it is already a member.

        Returns:
            True if an attach call was made
        """
        if await self.is_member(credential_id, plan_id):
            self.logger.debug(
                "membership_attach_skipped",
                credential_id=credential_id,
                plan_id=plan_id,
            )
            return False

        await self.usage_plans.attach(credential_id, plan_id)
        track_membership_mutation("attach")
        self.logger.info(
            "credential_attached",
            credential_id=credential_id,
            plan_id=plan_id,
        )
        return True

    async def migrate(
        self,
        credential_id: str,
        current_plan_id: str,
        target_plan_id: str,
    ) -> None:
        """Move a credential from ``current_plan_id`` to ``target_plan_id``.

        Makes no quota service calls when both ids are equal. Otherwise the
        detach runs to completion before the attach starts, so a crash in
        between leaves the credential unattached and never attached to two
        plans.

        Args:
            credential_id: Credential to move
            current_plan_id: Plan the credential is believed to be on
            target_plan_id: Plan the credential must end up on
        """
        if current_plan_id == target_plan_id:
            return

        await self.ensure_detached(credential_id, current_plan_id)
        await self.ensure_attached(credential_id, target_plan_id)

        self.logger.info(
            "credential_migrated",
            credential_id=credential_id,
            from_plan_id=current_plan_id,
            to_plan_id=target_plan_id,
        )

    async def set_enabled(self, credential_id: str, enabled: bool) -> None:
        """Enable or disable a credential without touching membership."""
        await self.usage_plans.set_enabled(credential_id, enabled)
        track_membership_mutation("enable" if enabled else "disable")
        self.logger.info(
            "credential_enabled_changed",
            credential_id=credential_id,
            enabled=enabled,
        )

    async def reactivate_if_inactive(
        self,
        credential_id: str,
        previous_status: SubscriptionStatus,
    ) -> bool:
        """Re-enable a credential whose subscription was inactive.

        Returns:
            True if the credential was re-enabled
        """
        if previous_status != SubscriptionStatus.INACTIVE:
            return False
        await self.set_enabled(credential_id, True)
        return True
