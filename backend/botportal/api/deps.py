"""
Shared FastAPI dependencies.
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request

from ..services.auth_service import CallerIdentity, auth_service, get_current_identity
from ..services.container import PortalServices


def get_services(request: Request) -> PortalServices:
    """Get the service container from app state."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def resolve_caller(
    identity: Optional[CallerIdentity],
    fallback_user_id: Optional[str] = None
) -> Optional[CallerIdentity]:
    """
    Prefer the bearer token; fall back to a request-supplied user id when
    anonymous user ids are enabled.
    """
    if identity is not None:
        return identity
    return auth_service.anonymous_identity(fallback_user_id)


async def get_optional_identity(
    identity: Optional[CallerIdentity] = Depends(get_current_identity)
) -> Optional[CallerIdentity]:
    return identity
