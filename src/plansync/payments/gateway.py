"""Payment gateway HTTP client.

Failures are classified for the caller: network errors and 5xx responses
raise ``TransientError`` (safe to retry), any other non-2xx response raises
``TerminalError``.
"""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from plansync.billing.catalog import PlanCatalog
from plansync.billing.tiers import QuotaTier
from plansync.core.cache import ProcessCache
from plansync.core.exceptions import ConfigurationError, TerminalError, TransientError
from plansync.core.logging import LoggerMixin
from plansync.payments.schemas import (
    ChargeRequest,
    PaymentInitialization,
    PaymentPlan,
    PaymentPlansResponse,
    ResolvedPlan,
    TransactionVerification,
)

SERVICE_NAME = "payment_gateway"


class PaymentGatewayClient(LoggerMixin):
    """Async client for plan lookup, tokenized charges and verification."""

    def __init__(
        self,
        base_url: str,
        cache: ProcessCache,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Gateway API root, without trailing slash
            cache: Process cache providing the bearer token
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.cache = cache
        self.http_client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"accept": "application/json"},
        )

    async def close(self) -> None:
        """Close HTTP client."""
        await self.http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        token = await self.cache.payment_gateway_token()
        try:
            response = await self.http_client.request(
                method,
                path,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise TransientError(
                f"Payment gateway request failed: {method} {path}",
                service=SERVICE_NAME,
                details={"error": str(e)},
            ) from e

        if response.is_success:
            return response

        body = _safe_json(response)
        error_cls = TransientError if response.status_code >= 500 else TerminalError
        raise error_cls(
            f"Payment gateway returned {response.status_code} for {method} {path}",
            service=SERVICE_NAME,
            status_code=response.status_code,
            details={"response": body},
        )

    async def list_active_plans(self) -> list[PaymentPlan]:
        """Get all active recurring plans configured on the gateway."""
        response = await self._request("GET", "/payment-plans", params={"status": "active"})
        try:
            return PaymentPlansResponse.model_validate(response.json()).data
        except (ValueError, PydanticValidationError) as e:
            raise TransientError(
                "Malformed payment plan list from gateway",
                service=SERVICE_NAME,
                details={"error": str(e)},
            ) from e

    async def resolve_plan(self, tier: QuotaTier, catalog: PlanCatalog) -> ResolvedPlan:
        """Find the gateway plan whose name matches a tier.

        Names are compared lower-cased and trimmed.

        Raises:
            ConfigurationError: If no active gateway plan matches the tier
        """
        tier = QuotaTier(tier)
        plans = await self.list_active_plans()
        details = next((p for p in plans if p.normalized_name == tier.value), None)
        if details is None:
            raise ConfigurationError(
                f"No active payment plan named {tier.value}",
                details={"available": [p.name for p in plans]},
            )
        return ResolvedPlan(
            tier=tier,
            details=details,
            usage_plan_id=catalog.plan_for(tier),
        )

    async def create_tokenized_charge(self, charge: ChargeRequest) -> dict[str, Any]:
        """Charge a stored card token.

        Raises:
            TransientError: On network failure or a 5xx response
            TerminalError: On any other non-2xx response
        """
        response = await self._request(
            "POST",
            "/tokenized-charges",
            json=charge.model_dump(mode="json", by_alias=True),
        )
        self.logger.info(
            "tokenized_charge_created",
            tx_ref=charge.tx_ref,
            amount=charge.amount,
            currency=charge.currency,
        )
        return _safe_json(response)

    async def verify_transaction(self, transaction_id: str | int) -> TransactionVerification:
        """Re-verify a transaction reported by a webhook."""
        response = await self._request("GET", f"/transactions/{transaction_id}/verify")
        try:
            return TransactionVerification.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise TerminalError(
                "Malformed transaction verification from gateway",
                service=SERVICE_NAME,
                details={"transaction_id": str(transaction_id), "error": str(e)},
            ) from e

    async def initialize_payment(self, payment: PaymentInitialization) -> dict[str, Any]:
        """Start a hosted checkout and return the gateway's response."""
        response = await self._request(
            "POST",
            "/payments",
            json=payment.model_dump(mode="json", by_alias=True),
        )
        self.logger.info(
            "payment_initialized",
            tx_ref=payment.tx_ref,
            project_id=payment.meta.project_id,
            tier=payment.meta.tier.value,
        )
        return _safe_json(response)


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"raw": response.text[:500]}
    return body if isinstance(body, dict) else {"data": body}
