"""Signed payment webhook ingestion.

A ``charge.completed`` event whose charge the gateway confirms either
provisions a new subscription or moves an existing one onto the paid-for
tier and rolls its billing dates forward by one calendar month.
"""

from __future__ import annotations

import hmac
import json
from datetime import UTC, datetime
from typing import Any

from dateutil.relativedelta import relativedelta
from pydantic import ValidationError as PydanticValidationError

from plansync.billing.membership import MembershipSynchronizer
from plansync.billing.schemas import CardToken, CredentialBinding
from plansync.billing.service import SubscriptionService
from plansync.billing.tiers import status_for_tier
from plansync.core.cache import ProcessCache
from plansync.core.exceptions import (
    PaymentNotSuccessfulError,
    SignatureMismatchError,
    WebhookPayloadError,
)
from plansync.core.logging import LoggerMixin
from plansync.core.metrics import track_webhook_event
from plansync.integrations.base import SubscriptionStore
from plansync.payments.gateway import PaymentGatewayClient
from plansync.payments.schemas import WebhookEvent, WebhookOutcome

SIGNATURE_HEADER = "verif-hash"


def next_billing_date(billed_at: datetime) -> datetime:
    """One calendar month after ``billed_at``, clamped to the month's end."""
    return billed_at + relativedelta(months=1)


class WebhookIngestion(LoggerMixin):
    """Verifies payment events and applies them to subscriptions."""

    def __init__(
        self,
        store: SubscriptionStore,
        synchronizer: MembershipSynchronizer,
        subscriptions: SubscriptionService,
        gateway: PaymentGatewayClient,
        cache: ProcessCache,
    ) -> None:
        self.store = store
        self.synchronizer = synchronizer
        self.subscriptions = subscriptions
        self.gateway = gateway
        self.cache = cache

    async def verify_signature(self, signature: str | None) -> None:
        """Compare the signature header with the shared webhook secret.

        Raises:
            SignatureMismatchError: If the header is missing or differs
        """
        secret = await self.cache.webhook_secret()
        if not signature or not hmac.compare_digest(
            signature.encode("utf-8"),
            secret.encode("utf-8"),
        ):
            track_webhook_event("rejected")
            self.logger.warning("webhook_signature_mismatch", header_present=bool(signature))
            raise SignatureMismatchError()

    def parse_event(self, payload: bytes | str | dict[str, Any]) -> WebhookEvent:
        """Validate the event envelope.

        Raises:
            WebhookPayloadError: If the body is not JSON or fails validation
        """
        if isinstance(payload, (bytes, str)):
            try:
                payload = json.loads(payload)
            except ValueError as e:
                raise WebhookPayloadError(
                    "Webhook body is not valid JSON",
                    errors=[{"field": "", "message": str(e)}],
                ) from e

        try:
            return WebhookEvent.model_validate(payload)
        except PydanticValidationError as e:
            errors = [
                {
                    "field": ".".join(str(loc) for loc in error["loc"]),
                    "message": error["msg"],
                }
                for error in e.errors()
            ]
            self.logger.error("webhook_schema_validation_failed", errors=errors)
            raise WebhookPayloadError(errors=errors) from e

    async def handle(
        self,
        signature: str | None,
        payload: bytes | str | dict[str, Any],
    ) -> WebhookOutcome:
        """Verify and apply one webhook event.

        Args:
            signature: Value of the ``verif-hash`` header
            payload: Raw or decoded request body

        Returns:
            What was done with the event

        Raises:
            SignatureMismatchError: Signature missing or wrong
            WebhookPayloadError: Envelope failed validation
            PaymentNotSuccessfulError: Gateway did not confirm the charge
        """
        await self.verify_signature(signature)
        event = self.parse_event(payload)
        meta = event.meta_data

        if not event.data.is_successful:
            track_webhook_event("ignored")
            self.logger.info(
                "webhook_event_ignored",
                owner_id=meta.owner_id,
                project_id=meta.project_id,
                charge_status=event.data.status,
            )
            return WebhookOutcome(
                status="ignored",
                owner_id=meta.owner_id,
                project_id=meta.project_id,
            )

        if event.data.id is None:
            raise WebhookPayloadError(
                errors=[{"field": "data.id", "message": "Field required"}],
            )

        verification = await self.gateway.verify_transaction(event.data.id)
        if not verification.data.is_successful:
            track_webhook_event("unverified")
            self.logger.error(
                "webhook_payment_not_successful",
                owner_id=meta.owner_id,
                project_id=meta.project_id,
                verified_status=verification.data.status,
            )
            raise PaymentNotSuccessfulError()

        catalog = await self.cache.get_catalog()
        plan_id = catalog.plan_for(meta.tier)
        if meta.usage_plan_id != plan_id:
            self.logger.warning(
                "webhook_usage_plan_mismatch",
                project_id=meta.project_id,
                event_usage_plan_id=meta.usage_plan_id,
                catalog_usage_plan_id=plan_id,
            )

        billed_at = event.data.created_at or datetime.now(UTC)
        if billed_at.tzinfo is None:
            billed_at = billed_at.replace(tzinfo=UTC)
        next_payment = next_billing_date(billed_at)
        card = None
        if verification.data.card is not None:
            card = CardToken(
                token=verification.data.card.token,
                expiry=verification.data.card.expiry,
            )

        existing = await self.store.get(meta.owner_id, meta.project_id)

        if existing is None:
            email = event.data.customer.email if event.data.customer else None
            if not email:
                raise WebhookPayloadError(
                    errors=[{"field": "data.customer.email", "message": "Field required"}],
                )
            await self.subscriptions.provision(
                owner_id=meta.owner_id,
                project_id=meta.project_id,
                project_name=meta.project_name,
                email=email,
                tier=meta.tier,
                card=card,
                current_billing_date=billed_at,
                next_payment_date=next_payment,
                created_at=billed_at,
            )
            status = "created"
        else:
            credential_id = existing.credential.credential_id
            await self.synchronizer.migrate(
                credential_id,
                existing.credential.usage_plan_id,
                plan_id,
            )
            await self.synchronizer.reactivate_if_inactive(credential_id, existing.status)

            fields: dict[str, Any] = {
                "tier": meta.tier,
                "status": status_for_tier(meta.tier),
                "credential": CredentialBinding(
                    credential_id=credential_id,
                    usage_plan_id=plan_id,
                ),
                "current_billing_date": billed_at,
                "next_payment_date": next_payment,
            }
            if card is not None:
                fields["card"] = card
            await self.store.update(existing.owner_id, existing.project_id, **fields)
            status = "updated"

        track_webhook_event(status)
        self.logger.info(
            "webhook_event_applied",
            outcome=status,
            owner_id=meta.owner_id,
            project_id=meta.project_id,
            tier=meta.tier.value,
            next_payment_date=next_payment.isoformat(),
        )
        return WebhookOutcome(
            status=status,
            owner_id=meta.owner_id,
            project_id=meta.project_id,
            tier=meta.tier,
        )
