"""
Signed auth token helpers.

Token payload:
{
    "name": <display name>,
    "id":   <account ObjectId as string>,
    "role": "Institution" | "Department" | "User",
    "iat":  <issued_at>,
    "exp":  <expires_at>
}

The token travels in an httpOnly cookie called "token".
"""

from datetime import datetime, timedelta, timezone

import jwt

from errors import UnauthenticatedError
from permissions import Identity, Role

ALGORITHM = "HS256"
COOKIE_NAME = "token"


def create_token(identity: Identity, secret: str, ttl_days: int = 1) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "name": identity.name,
        "id": identity.id,
        "role": identity.role.value,
        "iat": now,
        "exp": now + timedelta(days=ttl_days),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_token(token: str, secret: str) -> Identity:
    if not token:
        raise UnauthenticatedError("Authentication Invalid: No token provided.")
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
        return Identity(
            id=str(payload["id"]),
            name=payload.get("name") or "",
            role=Role.parse(payload.get("role")),
        )
    except (jwt.InvalidTokenError, KeyError, ValueError):
        raise UnauthenticatedError("Authentication Invalid: Token is not valid.")


def attach_token_cookie(response, token: str, ttl_days: int = 1, secure: bool = False):
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=int(timedelta(days=ttl_days).total_seconds()),
        httponly=True,
        secure=secure,
        samesite="Lax",
    )
    return response


def clear_token_cookie(response):
    response.delete_cookie(COOKIE_NAME, httponly=True, samesite="Lax")
    return response
