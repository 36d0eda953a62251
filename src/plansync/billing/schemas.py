"""Pydantic schemas for subscriptions, renewal and downgrade processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from plansync.billing.tiers import QuotaTier, SubscriptionStatus


class CredentialBinding(BaseModel):
    """API credential and the usage plan it is attached to."""

    model_config = ConfigDict(frozen=True)

    credential_id: str = Field(..., min_length=1)
    usage_plan_id: str = Field(..., min_length=1)


class CardToken(BaseModel):
    """Stored card token used for recurring charges."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(..., min_length=1)
    expiry: str | None = None


class Subscription(BaseModel):
    """One subscription per (owner, project)."""

    model_config = ConfigDict(from_attributes=True)

    owner_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
    project_name: str
    email: EmailStr
    tier: QuotaTier
    status: SubscriptionStatus
    credential: CredentialBinding
    api_key: str | None = None
    card: CardToken | None = None
    next_payment_date: datetime | None = None
    current_billing_date: datetime | None = None
    created_at: datetime

    @field_validator("project_name")
    @classmethod
    def normalize_project_name(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def is_active(self) -> bool:
        return self.status != SubscriptionStatus.INACTIVE


class DowngradeCandidate(BaseModel):
    """Snapshot of a subscription whose renewal charge failed.

    The embedded credential binding is a lookup key only; the downgrade
    reconciler re-reads the stored subscription before acting.
    """

    owner_id: str
    project_id: str
    project_name: str
    email: str
    tier: QuotaTier
    next_payment_date: datetime | None = None
    credential: CredentialBinding
    card: CardToken | None = None

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> DowngradeCandidate:
        return cls(
            owner_id=subscription.owner_id,
            project_id=subscription.project_id,
            project_name=subscription.project_name,
            email=subscription.email,
            tier=subscription.tier,
            next_payment_date=subscription.next_payment_date,
            credential=subscription.credential,
            card=subscription.card,
        )

    def to_message(self) -> dict[str, Any]:
        """Serialize for the downgrade queue."""
        return self.model_dump(mode="json")


class RenewalCursor(BaseModel):
    """Resume points of the paid-tier renewal scans.

    Each value is an opaque key produced by the subscription store, or None
    when that tier's scan is exhausted.
    """

    pro: dict[str, Any] | None = None
    executive: dict[str, Any] | None = None

    def for_tier(self, tier: QuotaTier) -> dict[str, Any] | None:
        return getattr(self, QuotaTier(tier).value)

    @property
    def is_exhausted(self) -> bool:
        return self.pro is None and self.executive is None

    def to_message(self) -> dict[str, Any]:
        """Serialize for the renewal queue."""
        return self.model_dump(mode="json")


@dataclass
class RenewalReport:
    """Per-invocation summary of renewal charge outcomes."""

    scanned: int = 0
    charged: int = 0
    downgraded: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "charged": self.charged,
            "downgraded": self.downgraded,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class Continuation:
    """Renewal run that has more pages to process."""

    cursor: RenewalCursor
    report: RenewalReport = field(default_factory=RenewalReport)


@dataclass(frozen=True)
class Done:
    """Renewal run that reached the end of every scan."""

    report: RenewalReport = field(default_factory=RenewalReport)


RenewalStep = Continuation | Done


class SubscribeRequest(BaseModel):
    """Request to subscribe a project to a tier."""

    owner_id: str = Field(..., min_length=1)
    project_id: str | None = None
    project_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    tier: QuotaTier
    customer_name: str | None = Field(None, max_length=200)

    @field_validator("tier", mode="before")
    @classmethod
    def normalize_tier(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("project_name")
    @classmethod
    def normalize_project_name(cls, v: str) -> str:
        return v.strip().lower()


class SubscribeResult(BaseModel):
    """Outcome of a subscribe request.

    Free tier requests complete immediately and carry the subscription.
    Paid tier requests carry the gateway's hosted checkout payload; the
    subscription is created when the payment webhook arrives.
    """

    project_id: str
    tier: QuotaTier
    subscription: Subscription | None = None
    provisioned: bool = False
    checkout: dict[str, Any] | None = None


class SubscriptionResponse(BaseModel):
    """Public view of a subscription."""

    model_config = ConfigDict(from_attributes=True)

    owner_id: str
    project_id: str
    project_name: str
    tier: QuotaTier
    status: SubscriptionStatus
    usage_plan_id: str
    next_payment_date: datetime | None = None
    current_billing_date: datetime | None = None
    created_at: datetime

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> SubscriptionResponse:
        return cls(
            owner_id=subscription.owner_id,
            project_id=subscription.project_id,
            project_name=subscription.project_name,
            tier=subscription.tier,
            status=subscription.status,
            usage_plan_id=subscription.credential.usage_plan_id,
            next_payment_date=subscription.next_payment_date,
            current_billing_date=subscription.current_billing_date,
            created_at=subscription.created_at,
        )
