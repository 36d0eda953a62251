"""Pydantic schemas for the payment gateway API and its webhooks."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from plansync.billing.tiers import QuotaTier, normalize_tier_name


class PaymentMetadata(BaseModel):
    """Charge metadata sent to the gateway and echoed back in webhooks.

    Serialized with ``by_alias=True`` so the keys match what the gateway
    returns in ``meta_data``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    owner_id: str = Field(..., min_length=1, alias="userId")
    usage_plan_id: str = Field(..., min_length=1, alias="usagePlanId")
    project_name: str = Field(..., min_length=1, alias="projectName")
    tier: QuotaTier = Field(..., alias="planName")
    project_id: str = Field(..., min_length=1, alias="projectId")

    @field_validator("tier", mode="before")
    @classmethod
    def normalize_tier(cls, v: Any) -> Any:
        if isinstance(v, str):
            return normalize_tier_name(v)
        return v


class PaymentPlan(BaseModel):
    """Recurring plan configured on the payment gateway."""

    model_config = ConfigDict(extra="ignore")

    id: str | int
    name: str
    amount: float
    currency: str

    @property
    def normalized_name(self) -> str:
        return self.name.strip().lower()


class PaymentPlansResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[PaymentPlan] = Field(default_factory=list)


class ResolvedPlan(BaseModel):
    """Gateway plan details plus the usage plan the tier maps to."""

    tier: QuotaTier
    details: PaymentPlan
    usage_plan_id: str


class ChargeRequest(BaseModel):
    """Recurring charge against a stored card token."""

    token: str
    email: str
    currency: str
    country: str
    amount: float
    tx_ref: str
    narration: str
    meta: PaymentMetadata


class CustomerInfo(BaseModel):
    email: str
    name: str | None = None


class PaymentInitialization(BaseModel):
    """Hosted checkout request for the first payment of a paid tier."""

    tx_ref: str
    amount: float
    currency: str
    redirect_url: str
    customer: CustomerInfo
    customizations: dict[str, str] = Field(default_factory=dict)
    meta: PaymentMetadata
    payment_options: str = "card"


class CardDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str
    expiry: str | None = None


class VerifiedTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | int
    status: str
    card: CardDetails | None = None

    @property
    def is_successful(self) -> bool:
        return self.status.strip().lower() == "successful"


class TransactionVerification(BaseModel):
    """Response of the gateway's transaction verification endpoint."""

    model_config = ConfigDict(extra="ignore")

    status: str | None = None
    data: VerifiedTransaction


class ChargeCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str | None = None
    name: str | None = None


class ChargeData(BaseModel):
    """The ``data`` object of a ``charge.completed`` event."""

    model_config = ConfigDict(extra="allow")

    id: str | int | None = None
    status: str | None = None
    created_at: datetime | None = None
    customer: ChargeCustomer | None = None

    @property
    def is_successful(self) -> bool:
        return (self.status or "").strip().lower() == "successful"


class WebhookEvent(BaseModel):
    """Signed payment event envelope."""

    model_config = ConfigDict(extra="ignore")

    event: Literal["charge.completed"]
    data: ChargeData
    meta_data: PaymentMetadata


class WebhookOutcome(BaseModel):
    """Result of ingesting one webhook event."""

    status: Literal["created", "updated", "ignored"]
    owner_id: str | None = None
    project_id: str | None = None
    tier: QuotaTier | None = None
