"""Subscription endpoints."""

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, EmailStr, Field

from plansync.api.dependencies import OwnerIdDep, RuntimeDep
from plansync.billing.schemas import SubscribeRequest, SubscriptionResponse
from plansync.billing.tiers import QuotaTier

router = APIRouter()


class SubscribeBody(BaseModel):
    """Request body for subscribing a project to a tier."""

    project_id: str | None = None
    project_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    tier: str = Field(..., description="free, pro or executive")
    customer_name: str | None = Field(None, max_length=200)


class SubscribeResponse(BaseModel):
    project_id: str
    tier: QuotaTier
    subscription: SubscriptionResponse | None = None
    api_key: str | None = None
    checkout: dict[str, Any] | None = None


@router.post("", response_model=SubscribeResponse)
async def subscribe(
    body: SubscribeBody,
    owner_id: OwnerIdDep,
    runtime: RuntimeDep,
) -> SubscribeResponse:
    """Subscribe a project to a tier.

    The free tier is applied immediately. Paid tiers return the payment
    gateway's checkout payload; the subscription becomes active once the
    payment webhook is received.
    """
    request = SubscribeRequest(owner_id=owner_id, **body.model_dump())
    result = await runtime.subscriptions.subscribe(request)

    subscription = result.subscription
    return SubscribeResponse(
        project_id=result.project_id,
        tier=result.tier,
        subscription=(
            SubscriptionResponse.from_subscription(subscription) if subscription else None
        ),
        api_key=subscription.api_key if subscription and result.provisioned else None,
        checkout=result.checkout,
    )


@router.post("/{project_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    project_id: str,
    owner_id: OwnerIdDep,
    runtime: RuntimeDep,
) -> SubscriptionResponse:
    """Disable a project's API credential and mark the subscription inactive."""
    subscription = await runtime.subscriptions.cancel(owner_id, project_id)
    return SubscriptionResponse.from_subscription(subscription)
