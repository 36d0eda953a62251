"""Per-process cache for secrets and the parsed plan catalog.

A worker or API process fetches each secret once and keeps it for its whole
lifetime. There is no invalidation: rotating a secret requires new processes.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from plansync.billing.catalog import PlanCatalog, load_catalog
from plansync.core.config import Settings, get_settings
from plansync.core.exceptions import ConfigurationError
from plansync.core.logging import LoggerMixin

if TYPE_CHECKING:
    from plansync.integrations.base import SecretStore


class ProcessCache(LoggerMixin):
    """Lazily loaded secrets and plan catalog shared by all components."""

    def __init__(
        self,
        secret_store: SecretStore,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            secret_store: Backing secret store
            settings: Settings providing the secret names
        """
        self._secret_store = secret_store
        self._settings = settings or get_settings()
        self._secrets: dict[str, str] = {}
        self._catalog: PlanCatalog | None = None
        self._lock = asyncio.Lock()

    async def get_secret(self, name: str) -> str:
        """Get a secret value, fetching it on first use.

        Raises:
            ConfigurationError: If the secret is empty
        """
        if name in self._secrets:
            return self._secrets[name]

        async with self._lock:
            if name not in self._secrets:
                value = await self._secret_store.get_secret(name)
                if not value:
                    raise ConfigurationError(
                        f"Secret {name} is empty",
                        details={"secret": name},
                    )
                self._secrets[name] = value
                self.logger.debug("secret_cached", secret=name)

        return self._secrets[name]

    async def get_catalog(self) -> PlanCatalog:
        """Get the plan catalog, loading and validating it on first use."""
        if self._catalog is None:
            serialized = await self.get_secret(self._settings.usage_plans_secret_name)
            self._catalog = load_catalog(serialized)
            self.logger.info(
                "plan_catalog_loaded",
                free=self._catalog.free,
                pro=self._catalog.pro,
                executive=self._catalog.executive,
            )
        return self._catalog

    async def payment_gateway_token(self) -> str:
        return await self.get_secret(self._settings.payment_secret_name)

    async def webhook_secret(self) -> str:
        return await self.get_secret(self._settings.webhook_secret_name)
