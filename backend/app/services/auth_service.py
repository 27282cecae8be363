"""
Centralized auth service: all token decisions flow through here.

No JWT decoding should happen outside this module.  The socket layer only
sees the TokenVerifier protocol, so another verifier (e.g. one that calls a
remote identity service) can be swapped in without touching the handlers.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol

from jose import JWTError, jwt

from app.config import settings


class TokenVerifier(Protocol):
    def verify(self, token: str) -> dict | None:
        """Return the token claims (always including ``user_id``) or None."""
        ...


# ── Token ─────────────────────────────────────────────────────────────────────


def create_access_token(user_id: int, username: str, expires_delta: timedelta | None = None) -> str:
    """Issue a JWT for a user. Used by tooling and tests; issuance proper is
    owned by the HTTP auth routes."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {
        "sub": f"{username}@{settings.SERVER_DOMAIN}",
        "user_id": user_id,
        "exp": expire,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT. Returns payload dict or None on failure."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


class JwtTokenVerifier:
    """TokenVerifier backed by the shared-secret JWTs this deployment issues."""

    def verify(self, token: str) -> dict | None:
        if not token:
            return None
        payload = decode_access_token(token)
        if payload is None:
            return None
        try:
            payload["user_id"] = int(payload["user_id"])
        except (KeyError, TypeError, ValueError):
            return None
        return payload
