"""Tests for the SQLAlchemy subscription store."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from plansync.billing.models import Base, SubscriptionRecord
from plansync.billing.schemas import CardToken, CredentialBinding, Subscription
from plansync.billing.tiers import QuotaTier, SubscriptionStatus
from plansync.core.exceptions import SubscriptionNotFoundError
from plansync.integrations.sql_store import SqlSubscriptionStore

from conftest import NOW

MakeSubscription = Callable[..., Subscription]


@pytest_asyncio.fixture
async def sql_store() -> AsyncGenerator[SqlSubscriptionStore, None]:
    """Store over a fresh in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlSubscriptionStore(factory)

    await engine.dispose()


class TestCrud:
    """Tests for get, put and update."""

    @pytest.mark.asyncio
    async def test_put_and_get(
        self,
        sql_store: SqlSubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        subscription = make_subscription(project_id="proj-1", api_key="key-123")
        await sql_store.put(subscription)

        stored = await sql_store.get("owner-1", "proj-1")

        assert stored == subscription
        assert await sql_store.get("owner-1", "missing") is None

    @pytest.mark.asyncio
    async def test_put_replaces(
        self,
        sql_store: SqlSubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        subscription = make_subscription(project_id="proj-1")
        await sql_store.put(subscription)
        await sql_store.put(subscription.model_copy(update={"email": "new@example.com"}))

        stored = await sql_store.get("owner-1", "proj-1")
        assert stored is not None
        assert stored.email == "new@example.com"

    @pytest.mark.asyncio
    async def test_update_fields(
        self,
        sql_store: SqlSubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        await sql_store.put(make_subscription(project_id="proj-1"))

        updated = await sql_store.update(
            "owner-1",
            "proj-1",
            tier=QuotaTier.FREE,
            status=SubscriptionStatus.ACTIVE_FREE,
            credential=CredentialBinding(credential_id="cred-proj-1", usage_plan_id="plan-free"),
            card=CardToken(token="card-tok-2"),
            next_payment_date=None,
        )

        assert updated.tier == QuotaTier.FREE
        assert updated.credential.usage_plan_id == "plan-free"
        assert updated.card == CardToken(token="card-tok-2")
        assert updated.next_payment_date is None
        assert await sql_store.get("owner-1", "proj-1") == updated

    @pytest.mark.asyncio
    async def test_update_missing(self, sql_store: SqlSubscriptionStore) -> None:
        with pytest.raises(SubscriptionNotFoundError):
            await sql_store.update("owner-1", "missing", status=SubscriptionStatus.INACTIVE)

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValueError):
            SubscriptionRecord.column_values(colour="blue")


class TestQueryDue:
    """Tests for keyset-paginated due scans."""

    @pytest.mark.asyncio
    async def test_filters_by_status_and_date(
        self,
        sql_store: SqlSubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        await sql_store.put(make_subscription(project_id="due"))
        await sql_store.put(
            make_subscription(project_id="future", next_payment_date=NOW + timedelta(days=1))
        )
        await sql_store.put(make_subscription(project_id="exec", tier=QuotaTier.EXECUTIVE))
        await sql_store.put(
            make_subscription(project_id="inactive", status=SubscriptionStatus.INACTIVE)
        )

        page = await sql_store.query_due(SubscriptionStatus.ACTIVE_PRO, NOW)

        assert [s.project_id for s in page.items] == ["due"]
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_pages_cover_everything_once(
        self,
        sql_store: SqlSubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        # Two rows share a due date to exercise the tie-breaker
        same_day = NOW - timedelta(days=2)
        expected = []
        for i, due in enumerate(
            [NOW - timedelta(days=5), same_day, same_day, NOW - timedelta(days=1), NOW]
        ):
            subscription = make_subscription(project_id=f"proj-{i}", next_payment_date=due)
            await sql_store.put(subscription)
            expected.append(subscription.project_id)

        seen: list[str] = []
        cursor = None
        pages = 0
        while True:
            page = await sql_store.query_due(
                SubscriptionStatus.ACTIVE_PRO, NOW, cursor=cursor, limit=2
            )
            pages += 1
            seen.extend(s.project_id for s in page.items)
            if page.next_cursor is None:
                break
            cursor = page.next_cursor

        assert seen == expected
        assert pages == 3

    @pytest.mark.asyncio
    async def test_exact_multiple_ends_with_empty_page(
        self,
        sql_store: SqlSubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        for i in range(2):
            await sql_store.put(make_subscription(project_id=f"proj-{i}"))

        first = await sql_store.query_due(SubscriptionStatus.ACTIVE_PRO, NOW, limit=2)
        assert first.next_cursor is not None

        second = await sql_store.query_due(
            SubscriptionStatus.ACTIVE_PRO, NOW, cursor=first.next_cursor, limit=2
        )
        assert second.is_empty
        assert second.next_cursor is None


class TestCountByOwnerStatus:
    @pytest.mark.asyncio
    async def test_count_is_bounded(
        self,
        sql_store: SqlSubscriptionStore,
        make_subscription: MakeSubscription,
    ) -> None:
        for i in range(5):
            await sql_store.put(make_subscription(project_id=f"free-{i}", tier=QuotaTier.FREE))
        await sql_store.put(
            make_subscription(owner_id="owner-2", project_id="other", tier=QuotaTier.FREE)
        )

        assert (
            await sql_store.count_by_owner_status("owner-1", SubscriptionStatus.ACTIVE_FREE, 3)
            == 3
        )
        assert (
            await sql_store.count_by_owner_status("owner-2", SubscriptionStatus.ACTIVE_FREE, 3)
            == 1
        )
        assert (
            await sql_store.count_by_owner_status("owner-3", SubscriptionStatus.ACTIVE_FREE, 3)
            == 0
        )
