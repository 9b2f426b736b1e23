from fastapi import Request
from pydantic import BaseModel, Field
from typing import List, Optional
import logging
from auth import TokenExpired, decode_access_token
from services.errors import SubscriptionError

logger = logging.getLogger(__name__)


class CurrentUser(BaseModel):
    user_id: str
    username: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = Field(default_factory=list)


def _from_gateway_headers(request: Request) -> Optional[CurrentUser]:
    """The API gateway has already validated the token and forwards the identity."""
    user_id = request.headers.get("x-user-id")
    if request.headers.get("x-gateway-authenticated") != "true" or not user_id:
        return None
    roles = request.headers.get("x-roles")
    return CurrentUser(
        user_id=user_id,
        username=request.headers.get("x-username"),
        email=request.headers.get("x-user-email"),
        roles=roles.split(",") if roles else [],
    )


async def get_current_user(request: Request) -> Optional[CurrentUser]:
    """Extract the caller from gateway headers, falling back to a Bearer JWT."""
    user = _from_gateway_headers(request)
    if user:
        logger.debug(f"User authenticated via gateway: {user.user_id}")
        return user

    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    try:
        payload = decode_access_token(token)
    except TokenExpired:
        raise SubscriptionError("Token expired. Please login again.", error_code="TOKEN_EXPIRED", status_code=401)
    if not payload:
        raise SubscriptionError("Invalid or malformed token.", error_code="INVALID_TOKEN", status_code=403)

    user_id = payload.get("id") or payload.get("userId") or payload.get("sub")
    if not user_id:
        raise SubscriptionError("Token carries no user id.", error_code="INVALID_TOKEN", status_code=403)
    return CurrentUser(
        user_id=str(user_id),
        username=payload.get("username"),
        email=payload.get("email"),
        roles=payload.get("roles") or [],
    )


async def require_auth(request: Request) -> CurrentUser:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        logger.warning(f"Unauthenticated request to {request.url.path}")
        raise SubscriptionError(
            "Authentication required. Provide JWT token or use API Gateway.",
            error_code="AUTHENTICATION_REQUIRED",
            status_code=401,
        )
    return user
