"""Authentication context for the ranking API.

Tokens are issued elsewhere; this module only verifies them and exposes the
caller's user id as a FastAPI dependency.
"""

import os
from datetime import timedelta

import jwt
from fastapi import Header, Request

from .exceptions import AuthError
from .time_utils import utcnow

JWT_ALG = "HS256"
JWT_EXPIRE_SECONDS = 3600
ACCESS_TOKEN_COOKIE = "access_token"


def get_jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise RuntimeError("JWT_SECRET environment variable is required")
    if len(secret) < 32 or secret.lower() in {"secret", "changeme", "default"}:
        raise RuntimeError(
            "JWT_SECRET must be at least 32 characters and not a common default"
        )
    return secret


def create_access_token(user_id: str, *, expires_in: int = JWT_EXPIRE_SECONDS) -> str:
    payload = {
        "sub": user_id,
        "exp": utcnow() + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, get_jwt_secret(), algorithm=JWT_ALG)


def _extract_bearer_token(request: Request, authorization: str | None) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]

    cookie_token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if cookie_token:
        return cookie_token

    raise AuthError("missing token", code="auth_missing_token")


def decode_user_id(token: str) -> str:
    try:
        payload = jwt.decode(token, get_jwt_secret(), algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise AuthError("token expired", code="auth_token_expired")
    except jwt.PyJWTError:
        raise AuthError("invalid token", code="auth_invalid_token")

    uid = payload.get("sub")
    if not isinstance(uid, str) or not uid:
        raise AuthError("invalid token", code="auth_invalid_token")
    return uid


async def current_user_id(
    request: Request,
    authorization: str | None = Header(None),
) -> str:
    token = _extract_bearer_token(request, authorization)
    return decode_user_id(token)
