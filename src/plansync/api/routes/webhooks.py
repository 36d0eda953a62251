"""Payment gateway webhook endpoint."""

from typing import Any

from fastapi import APIRouter, Request

from plansync.api.dependencies import RuntimeDep
from plansync.payments.webhook import SIGNATURE_HEADER

router = APIRouter()


@router.post("/payments")
async def payment_webhook(request: Request, runtime: RuntimeDep) -> dict[str, Any]:
    """Apply a signed ``charge.completed`` event from the payment gateway.

    Invalid signatures are rejected with 401 and verification failures with
    400. A malformed envelope yields 500 so that the gateway redelivers it.
    """
    body = await request.body()
    outcome = await runtime.webhook.handle(request.headers.get(SIGNATURE_HEADER), body)
    return {"success": True, "data": outcome.model_dump(mode="json")}
