"""SQLAlchemy implementation of the subscription store."""

from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from plansync.billing.models import SubscriptionRecord, as_utc
from plansync.billing.schemas import Subscription
from plansync.billing.tiers import SubscriptionStatus
from plansync.core.database import session_scope
from plansync.core.exceptions import SubscriptionNotFoundError
from plansync.core.logging import LoggerMixin
from plansync.integrations.base import Page, SubscriptionStore


class SqlSubscriptionStore(SubscriptionStore, LoggerMixin):
    """Subscription store backed by the ``subscriptions`` table.

    Due-subscription scans use keyset pagination over
    ``(next_payment_date, owner_id, project_id)``; the cursor is the key of
    the last row of a full page.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get(self, owner_id: str, project_id: str) -> Subscription | None:
        async with session_scope(self.session_factory) as session:
            record = await session.get(SubscriptionRecord, (owner_id, project_id))
            return record.to_subscription() if record is not None else None

    async def put(self, subscription: Subscription) -> None:
        async with session_scope(self.session_factory) as session:
            await session.merge(SubscriptionRecord.from_subscription(subscription))

        self.logger.debug(
            "subscription_stored",
            owner_id=subscription.owner_id,
            project_id=subscription.project_id,
        )

    async def update(self, owner_id: str, project_id: str, **fields: Any) -> Subscription:
        values = SubscriptionRecord.column_values(**fields)
        async with session_scope(self.session_factory) as session:
            record = await session.get(SubscriptionRecord, (owner_id, project_id))
            if record is None:
                raise SubscriptionNotFoundError(owner_id, project_id)
            for column, value in values.items():
                setattr(record, column, value)
            await session.flush()
            return record.to_subscription()

    async def query_due(
        self,
        status: SubscriptionStatus,
        now: datetime,
        cursor: dict[str, Any] | None = None,
        limit: int = 1000,
    ) -> Page:
        query = (
            select(SubscriptionRecord)
            .where(
                SubscriptionRecord.status == status,
                SubscriptionRecord.next_payment_date.is_not(None),
                SubscriptionRecord.next_payment_date <= as_utc(now),
            )
            .order_by(
                SubscriptionRecord.next_payment_date,
                SubscriptionRecord.owner_id,
                SubscriptionRecord.project_id,
            )
            .limit(limit)
        )

        if cursor is not None:
            after = as_utc(datetime.fromisoformat(cursor["next_payment_date"]))
            owner_id = cursor["owner_id"]
            project_id = cursor["project_id"]
            query = query.where(
                or_(
                    SubscriptionRecord.next_payment_date > after,
                    and_(
                        SubscriptionRecord.next_payment_date == after,
                        or_(
                            SubscriptionRecord.owner_id > owner_id,
                            and_(
                                SubscriptionRecord.owner_id == owner_id,
                                SubscriptionRecord.project_id > project_id,
                            ),
                        ),
                    ),
                )
            )

        async with session_scope(self.session_factory) as session:
            result = await session.execute(query)
            items = [record.to_subscription() for record in result.scalars().all()]

        next_cursor = None
        if items and len(items) >= limit:
            last = items[-1]
            next_cursor = {
                "next_payment_date": last.next_payment_date.isoformat(),
                "owner_id": last.owner_id,
                "project_id": last.project_id,
            }

        self.logger.debug(
            "due_subscriptions_queried",
            status=SubscriptionStatus(status).value,
            count=len(items),
            has_more=next_cursor is not None,
        )
        return Page(items=items, next_cursor=next_cursor)

    async def count_by_owner_status(
        self,
        owner_id: str,
        status: SubscriptionStatus,
        limit: int,
    ) -> int:
        bounded = (
            select(SubscriptionRecord.project_id)
            .where(
                SubscriptionRecord.owner_id == owner_id,
                SubscriptionRecord.status == status,
            )
            .limit(limit)
            .subquery()
        )
        async with session_scope(self.session_factory) as session:
            result = await session.execute(select(func.count()).select_from(bounded))
            return int(result.scalar_one())
