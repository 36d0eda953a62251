"""AWS adapters: API Gateway usage plans and Secrets Manager.

boto3 clients are synchronous; calls are pushed to a worker thread so the
event loop is never blocked.
"""

from __future__ import annotations

import asyncio
from typing import Any
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from plansync.core.exceptions import (
    ConfigurationError,
    ExternalServiceError,
    MembershipNotFoundError,
    TransientError,
)
from plansync.core.logging import LoggerMixin
from plansync.integrations.base import CreatedCredential, SecretStore, UsagePlanService

THROTTLING_CODES = frozenset(
    {"TooManyRequestsException", "ThrottlingException", "ServiceUnavailableException"}
)


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class ApiGatewayUsagePlanService(UsagePlanService, LoggerMixin):
    """Usage plan membership through the API Gateway management API."""

    def __init__(self, client: Any | None = None, region_name: str | None = None) -> None:
        self.client = client or boto3.client("apigateway", region_name=region_name)

    async def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        method = getattr(self.client, operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except ClientError as e:
            code = _error_code(e)
            if code == "NotFoundException":
                raise MembershipNotFoundError(
                    resource_type="usage_plan_key",
                    resource_id=f"{kwargs.get('usagePlanId')}/{kwargs.get('keyId')}",
                ) from e
            error_cls = TransientError if code in THROTTLING_CODES else ExternalServiceError
            raise error_cls(
                f"API Gateway {operation} failed: {code}",
                service="apigateway",
                details={"operation": operation, "code": code},
            ) from e
        except BotoCoreError as e:
            raise TransientError(
                f"API Gateway {operation} failed",
                service="apigateway",
                details={"operation": operation, "error": str(e)},
            ) from e

    async def create_credential(self, name: str) -> CreatedCredential:
        response = await self._call(
            "create_api_key",
            name=name,
            value=str(uuid4()),
            enabled=True,
        )
        if not response.get("id") or not response.get("value"):
            raise ExternalServiceError(
                f"API Gateway returned an incomplete api key for {name}",
                service="apigateway",
            )
        self.logger.info("api_key_created", credential_id=response["id"], name=name)
        return CreatedCredential(
            credential_id=response["id"],
            value=response["value"],
            name=name,
        )

    async def is_member(self, credential_id: str, plan_id: str) -> bool:
        await self._call("get_usage_plan_key", usagePlanId=plan_id, keyId=credential_id)
        return True

    async def attach(self, credential_id: str, plan_id: str) -> None:
        await self._call(
            "create_usage_plan_key",
            usagePlanId=plan_id,
            keyId=credential_id,
            keyType="API_KEY",
        )

    async def detach(self, credential_id: str, plan_id: str) -> None:
        await self._call("delete_usage_plan_key", usagePlanId=plan_id, keyId=credential_id)

    async def set_enabled(self, credential_id: str, enabled: bool) -> None:
        await self._call(
            "update_api_key",
            apiKey=credential_id,
            patchOperations=[
                {"op": "replace", "path": "/enabled", "value": "true" if enabled else "false"}
            ],
        )


class SecretsManagerStore(SecretStore, LoggerMixin):
    """Secret lookup through AWS Secrets Manager."""

    def __init__(self, client: Any | None = None, region_name: str | None = None) -> None:
        self.client = client or boto3.client("secretsmanager", region_name=region_name)

    async def get_secret(self, name: str) -> str:
        try:
            response = await asyncio.to_thread(self.client.get_secret_value, SecretId=name)
        except ClientError as e:
            code = _error_code(e)
            if code == "ResourceNotFoundException":
                raise ConfigurationError(
                    f"Secret {name} does not exist",
                    details={"secret": name},
                ) from e
            raise ExternalServiceError(
                f"Failed to read secret {name}: {code}",
                service="secretsmanager",
                details={"secret": name, "code": code},
            ) from e

        self.logger.info("secret_fetched", secret=name)
        return response.get("SecretString") or ""
