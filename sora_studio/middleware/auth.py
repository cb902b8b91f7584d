from fastapi import Header, Request
from typing import Optional
import jwt

from sora_studio.config import get_settings
from sora_studio.errors import AuthenticationError
from sora_studio.schemas.video import ANONYMOUS_OWNER
from sora_studio.utils.logger import logger, request_owner_id_var


def decode_owner_token(token: str, secret: str) -> str:
    """Verify an HS256 token and return its subject"""
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_exp": True, "verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired. Please sign in again.")
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid token: {str(e)}")

    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Invalid token: missing user ID")
    return str(subject)


def _jwt_secret(request) -> Optional[str]:
    services = getattr(request.app.state, "services", None)
    settings = services.settings if services is not None else get_settings()
    return settings.jwt_secret


def owner_from_headers(authorization: Optional[str], x_user_id: Optional[str], jwt_secret: Optional[str]) -> str:
    """Owner named by the request headers; raises AuthenticationError for a bad Bearer token"""
    if authorization and jwt_secret:
        parts = authorization.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise AuthenticationError("Invalid authorization header format. Expected: Bearer <token>")
        owner_id = decode_owner_token(parts[1], jwt_secret)
        logger.debug("[Auth] Owner resolved from token", extra={"owner_id": owner_id})
        return owner_id

    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    return ANONYMOUS_OWNER


async def resolve_owner(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> str:
    """
    Work out who is calling:
    1. Bearer JWT (Authorization: Bearer <token>) when JWT_SECRET is set
    2. X-User-ID header
    3. Otherwise the shared anonymous owner

    Usage:
        @router.get("/endpoint")
        async def endpoint(owner_id: str = Depends(resolve_owner)):
            ...
    """
    owner_id = owner_from_headers(authorization, x_user_id, _jwt_secret(request))
    request_owner_id_var.set(owner_id)
    return owner_id
