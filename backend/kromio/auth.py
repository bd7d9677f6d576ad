"""
Authentication dependencies for FastAPI endpoints.

Provides JWT verification via Supabase auth.get_user(), an admin guard
backed by user_profiles.is_admin, and the service-role identity used by
webhooks and batch jobs.
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from kromio.services.supabase_client import get_user_profile

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class AuthenticatedUser(BaseModel):
    """Represents a verified caller."""

    id: str
    email: str | None = None
    is_admin: bool = False
    is_service: bool = False

    def can_act_for(self, user_id: str) -> bool:
        """Users act on their own account; admins and the service role on any."""
        return self.is_service or self.is_admin or self.id == user_id


SERVICE_CALLER = AuthenticatedUser(id="service_role", is_service=True)


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        return AuthenticatedUser(id=str(user.id), email=user.email)
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def require_admin(request: Request, user: CurrentUser) -> AuthenticatedUser:
    """
    FastAPI dependency that only lets through users flagged is_admin.

    Raises:
        HTTPException 403: Caller is not an administrator.
    """
    supabase = request.app.state.supabase
    try:
        profile = await get_user_profile(supabase, user.id)
    except Exception as e:
        logger.warning("admin_profile_lookup_failed", user_id=user.id, error=str(e))
        profile = None

    if not profile or profile.get("is_admin") is not True:
        logger.warning("admin_access_denied", user_id=user.id)
        raise HTTPException(status_code=403, detail="Administrator access required")
    return user.model_copy(update={"is_admin": True})


AdminUser = Annotated[AuthenticatedUser, Depends(require_admin)]
