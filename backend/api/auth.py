"""
Request identity from a JWT bearer token or the `accessToken` cookie.

Tokens are issued elsewhere; this module only verifies them (HS256) and
maps the claims onto an `Identity`.
"""

from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request

from pipeline.errors import AuthenticationError, AuthorizationError
from schemas.order_definitions import Identity, Role

logger = structlog.get_logger().bind(component="auth")

ALGORITHM = "HS256"
COOKIE_NAME = "accessToken"


def extract_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME)


def decode_identity(token: str, secret: str) -> Identity:
    try:
        claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.InvalidTokenError as e:
        logger.info("token_rejected", error=str(e))
        raise AuthenticationError("Invalid or expired token")

    user_id = claims.get("_id") or claims.get("sub")
    if not user_id:
        raise AuthenticationError("Token carries no user id")

    try:
        role = Role(claims.get("role", Role.USER.value))
    except ValueError:
        role = Role.USER

    return Identity(user_id=str(user_id), role=role)


async def get_identity(request: Request) -> Identity:
    token = extract_token(request)
    if not token:
        raise AuthenticationError("Authentication required")
    return decode_identity(token, request.app.state.jwt_secret)


async def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise AuthorizationError("Admin access required")
    return identity
