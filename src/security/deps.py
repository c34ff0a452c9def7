"""
FastAPI Security Dependencies
Dependency injection functions for authentication
"""

import logging

from fastapi import Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.config import supabase_config
from src.schemas.auth import AuthenticatedUser
from src.utils.exceptions import APIExceptions, AuthenticationRequired

logger = logging.getLogger(__name__)

# HTTP Bearer security scheme with auto_error=False to allow custom error handling
security = HTTPBearer(auto_error=False)

ERROR_AUTH_REQUIRED = "Unauthorized"


def resolve_user_from_token(token: str) -> AuthenticatedUser | None:
    """
    Look up the Supabase Auth user owning an access token.

    Args:
        token: Supabase access token (JWT) from the Authorization header

    Returns:
        The user, or None when the token is invalid, expired, or unknown
    """
    try:
        response = supabase_config.get_supabase_client().auth.get_user(token)
    except Exception as e:
        logger.warning(f"Supabase token verification failed: {type(e).__name__}: {e}")
        return None

    user = getattr(response, "user", None)
    if user is None or not getattr(user, "id", None):
        return None

    return AuthenticatedUser(id=user.id, email=getattr(user, "email", None))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> AuthenticatedUser:
    """
    Resolve the caller from the bearer token

    Raises:
        HTTPException: 401 if the header is missing or the token does not verify
    """
    if credentials is None or not credentials.credentials:
        raise APIExceptions.from_billing_error(AuthenticationRequired(ERROR_AUTH_REQUIRED))

    # supabase-py is synchronous; keep the event loop free while it verifies
    user = await run_in_threadpool(resolve_user_from_token, credentials.credentials)
    if user is None:
        raise APIExceptions.from_billing_error(AuthenticationRequired(ERROR_AUTH_REQUIRED))

    return user
