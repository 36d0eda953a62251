"""Abstract interfaces to the external services PlanSync depends on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from plansync.billing.schemas import Subscription
from plansync.billing.tiers import SubscriptionStatus


@dataclass(frozen=True)
class Page:
    """One page of a keyset-paginated query."""

    items: list[Subscription] = field(default_factory=list)
    next_cursor: dict[str, Any] | None = None

    @property
    def is_empty(self) -> bool:
        return not self.items


@dataclass(frozen=True)
class CreatedCredential:
    """A freshly created API credential."""

    credential_id: str
    value: str
    name: str


class SubscriptionStore(ABC):
    """Key-value store of subscriptions keyed by (owner_id, project_id)."""

    @abstractmethod
    async def get(self, owner_id: str, project_id: str) -> Subscription | None:
        """Get a subscription, or None if it does not exist."""

    @abstractmethod
    async def put(self, subscription: Subscription) -> None:
        """Create or replace a subscription."""

    @abstractmethod
    async def update(self, owner_id: str, project_id: str, **fields: Any) -> Subscription:
        """Update selected fields of an existing subscription.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
        """

    @abstractmethod
    async def query_due(
        self,
        status: SubscriptionStatus,
        now: datetime,
        cursor: dict[str, Any] | None = None,
        limit: int = 1000,
    ) -> Page:
        """Get subscriptions with ``status`` whose next payment is due.

        Ordered by next payment date. ``next_cursor`` is set only when the
        page is full.
        """

    @abstractmethod
    async def count_by_owner_status(
        self,
        owner_id: str,
        status: SubscriptionStatus,
        limit: int,
    ) -> int:
        """Count an owner's subscriptions with ``status``, stopping at ``limit``."""


class UsagePlanService(ABC):
    """Quota service: API credentials and their usage plan membership."""

    @abstractmethod
    async def create_credential(self, name: str) -> CreatedCredential:
        """Create an enabled API credential."""

    @abstractmethod
    async def is_member(self, credential_id: str, plan_id: str) -> bool:
        """Check membership of a credential in a usage plan.

        Raises:
            MembershipNotFoundError: If the credential is not a member
        """

    @abstractmethod
    async def attach(self, credential_id: str, plan_id: str) -> None:
        """Attach a credential to a usage plan."""

    @abstractmethod
    async def detach(self, credential_id: str, plan_id: str) -> None:
        """Detach a credential from a usage plan."""

    @abstractmethod
    async def set_enabled(self, credential_id: str, enabled: bool) -> None:
        """Enable or disable a credential."""


class SecretStore(ABC):
    """Opaque secret lookup by name."""

    @abstractmethod
    async def get_secret(self, name: str) -> str:
        """Get a secret's string value."""


class MessageQueue(ABC):
    """At-least-once message queue."""

    @abstractmethod
    async def send(
        self,
        queue_ref: str,
        body: dict[str, Any],
        countdown: float | None = None,
        *,
        message_id: str | None = None,
        receive_count: int | None = None,
    ) -> str | None:
        """Send one JSON message body to the named queue.

        Args:
            queue_ref: Queue name
            body: JSON-serializable message body
            countdown: Delay in seconds before the message becomes visible
            message_id: Id to keep when redelivering an existing message
            receive_count: Delivery attempt the message will be received as

        Returns:
            The message id, when the queue assigns one

        Raises:
            QueueSendError: If the message could not be sent
        """
