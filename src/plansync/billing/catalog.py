"""Plan catalog: quota tier to usage plan id mapping."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, StrictStr
from pydantic import ValidationError as PydanticValidationError

from plansync.billing.tiers import QuotaTier
from plansync.core.exceptions import CatalogValidationError, ConfigurationError
from plansync.core.result import Err, Ok, Result


class PlanCatalog(BaseModel):
    """Immutable mapping of every quota tier to its usage plan id."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    free: StrictStr
    pro: StrictStr
    executive: StrictStr

    def plan_for(self, tier: QuotaTier) -> str:
        """Get the usage plan id for a tier."""
        return str(getattr(self, QuotaTier(tier).value))

    def tier_for_plan(self, plan_id: str) -> QuotaTier | None:
        """Get the tier whose usage plan id is ``plan_id``, if any."""
        for tier in QuotaTier:
            if self.plan_for(tier) == plan_id:
                return tier
        return None


def parse_catalog(raw: Any) -> Result[PlanCatalog, CatalogValidationError]:
    """Validate an untyped key/value blob as a plan catalog.

    All three tier keys must be present and string-valued.

    Args:
        raw: Decoded catalog secret

    Returns:
        Ok with the catalog, or Err with a CatalogValidationError
    """
    if not isinstance(raw, dict):
        return Err(
            CatalogValidationError(
                "Plan catalog must be an object",
                errors=[{"field": "", "message": f"expected object, got {type(raw).__name__}"}],
            )
        )

    try:
        return Ok(PlanCatalog.model_validate(raw))
    except PydanticValidationError as e:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
            }
            for error in e.errors()
        ]
        return Err(CatalogValidationError(errors=errors))


def load_catalog(serialized: str) -> PlanCatalog:
    """Decode and validate the serialized catalog secret.

    Raises:
        ConfigurationError: If the secret is not JSON or fails validation
    """
    try:
        raw = json.loads(serialized)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            "Usage plan catalog secret is not valid JSON",
            details={"position": e.pos},
        ) from e

    result = parse_catalog(raw)
    if isinstance(result, Err):
        raise ConfigurationError(
            "Invalid usage plan catalog",
            details=result.error.details,
        ) from result.error
    return result.value
