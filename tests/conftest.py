"""Test configuration and fixtures."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from plansync.billing.schemas import CardToken, CredentialBinding, Subscription
from plansync.billing.tiers import QuotaTier, SubscriptionStatus, status_for_tier
from plansync.core.config import Settings
from plansync.core.exceptions import (
    MembershipNotFoundError,
    QueueSendError,
    SubscriptionNotFoundError,
)
from plansync.integrations.base import (
    CreatedCredential,
    MessageQueue,
    Page,
    SecretStore,
    SubscriptionStore,
    UsagePlanService,
)
from plansync.runtime import Runtime, build_runtime

CATALOG = {"free": "plan-free", "pro": "plan-pro", "executive": "plan-exec"}
WEBHOOK_SECRET = "whsec-test"
GATEWAY_TOKEN = "gw-token-test"
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


class InMemorySubscriptionStore(SubscriptionStore):
    """A stateful subscription store that mirrors the SQL store's semantics."""

    def __init__(self) -> None:
        self.items: dict[tuple[str, str], Subscription] = {}
        self.count_error: Exception | None = None
        self.get_calls = 0
        self.query_calls: list[dict[str, Any]] = []

    def seed(self, *subscriptions: Subscription) -> None:
        for subscription in subscriptions:
            self.items[(subscription.owner_id, subscription.project_id)] = subscription

    async def get(self, owner_id: str, project_id: str) -> Subscription | None:
        self.get_calls += 1
        subscription = self.items.get((owner_id, project_id))
        return subscription.model_copy(deep=True) if subscription else None

    async def put(self, subscription: Subscription) -> None:
        self.items[(subscription.owner_id, subscription.project_id)] = subscription.model_copy(
            deep=True
        )

    async def update(self, owner_id: str, project_id: str, **fields: Any) -> Subscription:
        existing = self.items.get((owner_id, project_id))
        if existing is None:
            raise SubscriptionNotFoundError(owner_id, project_id)
        updated = existing.model_copy(update=fields, deep=True)
        self.items[(owner_id, project_id)] = updated
        return updated.model_copy(deep=True)

    async def query_due(
        self,
        status: SubscriptionStatus,
        now: datetime,
        cursor: dict[str, Any] | None = None,
        limit: int = 1000,
    ) -> Page:
        self.query_calls.append({"status": status, "cursor": cursor, "limit": limit})
        due = sorted(
            (
                s
                for s in self.items.values()
                if s.status == status
                and s.next_payment_date is not None
                and s.next_payment_date <= now
            ),
            key=lambda s: (s.next_payment_date, s.owner_id, s.project_id),
        )
        if cursor is not None:
            after = (
                datetime.fromisoformat(cursor["next_payment_date"]),
                cursor["owner_id"],
                cursor["project_id"],
            )
            due = [s for s in due if (s.next_payment_date, s.owner_id, s.project_id) > after]

        items = [s.model_copy(deep=True) for s in due[:limit]]
        next_cursor = None
        if items and len(items) >= limit:
            last = items[-1]
            next_cursor = {
                "next_payment_date": last.next_payment_date.isoformat(),
                "owner_id": last.owner_id,
                "project_id": last.project_id,
            }
        return Page(items=items, next_cursor=next_cursor)

    async def count_by_owner_status(
        self,
        owner_id: str,
        status: SubscriptionStatus,
        limit: int,
    ) -> int:
        if self.count_error is not None:
            raise self.count_error
        count = sum(
            1 for s in self.items.values() if s.owner_id == owner_id and s.status == status
        )
        return min(count, limit)


class FakeUsagePlanService(UsagePlanService):
    """A stateful quota service tracking membership and enabled flags."""

    def __init__(self) -> None:
        self.members: dict[str, set[str]] = {}
        self.enabled: dict[str, bool] = {}
        self.calls: list[tuple[str, ...]] = []
        self.errors: dict[str, Exception] = {}
        self._counter = 0

    def seed(self, credential_id: str, *plan_ids: str, enabled: bool = True) -> None:
        self.members[credential_id] = set(plan_ids)
        self.enabled[credential_id] = enabled

    def _check(self, operation: str) -> None:
        if operation in self.errors:
            raise self.errors[operation]

    def plans_of(self, credential_id: str) -> set[str]:
        return self.members.get(credential_id, set())

    @property
    def mutations(self) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] in ("attach", "detach", "set_enabled")]

    async def create_credential(self, name: str) -> CreatedCredential:
        self.calls.append(("create_credential", name))
        self._check("create_credential")
        self._counter += 1
        credential_id = f"cred-{self._counter}"
        self.members[credential_id] = set()
        self.enabled[credential_id] = True
        return CreatedCredential(credential_id=credential_id, value=str(uuid4()), name=name)

    async def is_member(self, credential_id: str, plan_id: str) -> bool:
        self.calls.append(("is_member", credential_id, plan_id))
        self._check("is_member")
        if plan_id not in self.plans_of(credential_id):
            raise MembershipNotFoundError(resource_type="usage_plan_key")
        return True

    async def attach(self, credential_id: str, plan_id: str) -> None:
        self.calls.append(("attach", credential_id, plan_id))
        self._check("attach")
        self.members.setdefault(credential_id, set()).add(plan_id)

    async def detach(self, credential_id: str, plan_id: str) -> None:
        self.calls.append(("detach", credential_id, plan_id))
        self._check("detach")
        self.members.setdefault(credential_id, set()).discard(plan_id)

    async def set_enabled(self, credential_id: str, enabled: bool) -> None:
        self.calls.append(("set_enabled", credential_id, str(enabled)))
        self._check("set_enabled")
        self.enabled[credential_id] = enabled


class FakeSecretStore(SecretStore):
    def __init__(self, secrets: dict[str, str]) -> None:
        self.secrets = secrets
        self.fetches: list[str] = []

    async def get_secret(self, name: str) -> str:
        self.fetches.append(name)
        return self.secrets.get(name, "")


class FakeMessageQueue(MessageQueue):
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any], float | None]] = []
        self.redelivered: list[tuple[str, int | None]] = []
        self.fail = False
        self.failures_remaining = 0

    def bodies(self, queue_ref: str) -> list[dict[str, Any]]:
        return [body for queue, body, _ in self.sent if queue == queue_ref]

    async def send(
        self,
        queue_ref: str,
        body: dict[str, Any],
        countdown: float | None = None,
        *,
        message_id: str | None = None,
        receive_count: int | None = None,
    ) -> str | None:
        if self.fail or self.failures_remaining > 0:
            self.failures_remaining = max(self.failures_remaining - 1, 0)
            raise QueueSendError("queue unavailable", service="test")
        self.sent.append((queue_ref, json.loads(json.dumps(body)), countdown))
        if message_id is not None:
            self.redelivered.append((message_id, receive_count))
        return message_id or str(uuid4())


class GatewayStub:
    """Scriptable payment gateway served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.plans = [
            {"id": 1, "name": "Pro", "amount": 1000, "currency": "NGN"},
            {"id": 2, "name": "Executive", "amount": 2000, "currency": "NGN"},
        ]
        self.charge_statuses: list[int] = []
        self.default_charge_status = 200
        self.verification: dict[str, Any] = {
            "status": "success",
            "data": {
                "id": 4242,
                "status": "successful",
                "card": {"token": "card-tok-new", "expiry": "09/30"},
            },
        }
        self.verification_status = 200
        self.requests: list[httpx.Request] = []

    def charge_requests(self) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.path.endswith("/tokenized-charges")
        ]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/payment-plans"):
            return httpx.Response(200, json={"status": "success", "data": self.plans})
        if path.endswith("/tokenized-charges"):
            code = self.charge_statuses.pop(0) if self.charge_statuses else self.default_charge_status
            return httpx.Response(code, json={"status": "success" if code < 400 else "error"})
        if path.endswith("/verify"):
            return httpx.Response(self.verification_status, json=self.verification)
        if path.endswith("/payments"):
            return httpx.Response(
                200,
                json={"status": "success", "data": {"link": "https://checkout.test/pay/abc"}},
            )
        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def settings() -> Settings:
    """Settings with no retry delay."""
    return Settings(
        _env_file=None,
        payment_gateway_url="https://gateway.test/v3",
        charge_retry_delay_seconds=0.0,
        renewal_page_size=1000,
    )


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def usage_plans() -> FakeUsagePlanService:
    return FakeUsagePlanService()


@pytest.fixture
def secrets(settings: Settings) -> FakeSecretStore:
    return FakeSecretStore(
        {
            settings.usage_plans_secret_name: json.dumps(CATALOG),
            settings.webhook_secret_name: WEBHOOK_SECRET,
            settings.payment_secret_name: GATEWAY_TOKEN,
        }
    )


@pytest.fixture
def queue() -> FakeMessageQueue:
    return FakeMessageQueue()


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest_asyncio.fixture
async def runtime(
    settings: Settings,
    store: InMemorySubscriptionStore,
    usage_plans: FakeUsagePlanService,
    secrets: FakeSecretStore,
    queue: FakeMessageQueue,
    gateway_stub: GatewayStub,
) -> AsyncGenerator[Runtime, None]:
    """Fully wired services over in-memory fakes."""
    wired = build_runtime(
        settings,
        store=store,
        usage_plans=usage_plans,
        secrets=secrets,
        queue=queue,
        gateway_transport=httpx.MockTransport(gateway_stub.handle),
    )
    yield wired
    await wired.close()


@pytest.fixture
def make_subscription() -> Callable[..., Subscription]:
    """Factory for subscriptions with sensible paid-tier defaults."""

    def _make(
        owner_id: str = "owner-1",
        project_id: str | None = None,
        tier: QuotaTier = QuotaTier.PRO,
        status: SubscriptionStatus | None = None,
        credential_id: str | None = None,
        usage_plan_id: str | None = None,
        next_payment_date: datetime | None = NOW - timedelta(days=1),
        card: CardToken | None = CardToken(token="card-tok-1", expiry="12/29"),
        **overrides: Any,
    ) -> Subscription:
        project_id = project_id or f"proj-{uuid4().hex[:8]}"
        return Subscription(
            owner_id=owner_id,
            project_id=project_id,
            project_name=overrides.pop("project_name", "My Project"),
            email=overrides.pop("email", "owner@example.com"),
            tier=tier,
            status=status or status_for_tier(tier),
            credential=CredentialBinding(
                credential_id=credential_id or f"cred-{project_id}",
                usage_plan_id=usage_plan_id or CATALOG[tier.value],
            ),
            card=card if tier != QuotaTier.FREE else None,
            next_payment_date=next_payment_date if tier != QuotaTier.FREE else None,
            current_billing_date=overrides.pop("current_billing_date", NOW - timedelta(days=31)),
            created_at=overrides.pop("created_at", NOW - timedelta(days=90)),
            **overrides,
        )

    return _make


@pytest_asyncio.fixture
async def client(runtime: Runtime) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the API wired to the in-memory runtime."""
    from plansync.api.main import create_app

    app = create_app(runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
