"""Subscription persistence model."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, Enum, Index, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from plansync.billing.schemas import CardToken, CredentialBinding, Subscription
from plansync.billing.tiers import QuotaTier, SubscriptionStatus


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Declarative base for PlanSync models."""


class SubscriptionRecord(Base):
    """One row per (owner, project) subscription."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_status_next_payment", "status", "next_payment_date"),
        Index("ix_subscriptions_owner_status", "owner_id", "status"),
    )

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    project_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    tier: Mapped[QuotaTier] = mapped_column(
        Enum(QuotaTier, name="quota_tier", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(
            SubscriptionStatus,
            name="subscription_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    credential_id: Mapped[str] = mapped_column(String(128), nullable=False)
    usage_plan_id: Mapped[str] = mapped_column(String(128), nullable=False)
    api_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    card_token: Mapped[str | None] = mapped_column(String(256), nullable=True)
    card_expiry: Mapped[str | None] = mapped_column(String(16), nullable=True)
    next_payment_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    current_billing_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    @classmethod
    def column_values(cls, **fields: Any) -> dict[str, Any]:
        """Translate subscription field values into column values."""
        values: dict[str, Any] = {}
        for name, value in fields.items():
            if name == "credential":
                binding = CredentialBinding.model_validate(value)
                values["credential_id"] = binding.credential_id
                values["usage_plan_id"] = binding.usage_plan_id
            elif name == "card":
                card = CardToken.model_validate(value) if value is not None else None
                values["card_token"] = card.token if card else None
                values["card_expiry"] = card.expiry if card else None
            elif name in ("next_payment_date", "current_billing_date", "created_at"):
                values[name] = as_utc(value)
            elif name in cls.__table__.columns:
                values[name] = value
            else:
                raise ValueError(f"Unknown subscription field: {name}")
        return values

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionRecord":
        return cls(
            owner_id=subscription.owner_id,
            project_id=subscription.project_id,
            **cls.column_values(
                project_name=subscription.project_name,
                email=subscription.email,
                tier=subscription.tier,
                status=subscription.status,
                credential=subscription.credential,
                api_key=subscription.api_key,
                card=subscription.card,
                next_payment_date=subscription.next_payment_date,
                current_billing_date=subscription.current_billing_date,
                created_at=subscription.created_at,
            ),
        )

    def to_subscription(self) -> Subscription:
        card = None
        if self.card_token:
            card = CardToken(token=self.card_token, expiry=self.card_expiry)
        return Subscription(
            owner_id=self.owner_id,
            project_id=self.project_id,
            project_name=self.project_name,
            email=self.email,
            tier=self.tier,
            status=self.status,
            credential=CredentialBinding(
                credential_id=self.credential_id,
                usage_plan_id=self.usage_plan_id,
            ),
            api_key=self.api_key,
            card=card,
            next_payment_date=as_utc(self.next_payment_date),
            current_billing_date=as_utc(self.current_billing_date),
            created_at=as_utc(self.created_at),
        )
