"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from plansync.runtime import Runtime

OWNER_ID_HEADER = "X-Owner-Id"


def get_runtime(request: Request) -> Runtime:
    """Get the wired services attached to the application."""
    runtime: Runtime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return runtime


def get_owner_id(
    owner_id: Annotated[str | None, Header(alias=OWNER_ID_HEADER)] = None,
) -> str:
    """Get the authenticated owner id set by the upstream authorizer."""
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing owner identity",
        )
    return owner_id


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]
OwnerIdDep = Annotated[str, Depends(get_owner_id)]
