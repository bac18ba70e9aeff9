from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from jose import JWTError, jwt

from app.errors import UnauthorizedError

logger = logging.getLogger(__name__)


def parse_bearer(headers: Mapping[str, str]) -> Optional[str]:
    """Parse a Bearer token from the Authorization header."""
    auth = headers.get("authorization") or headers.get("Authorization")
    if auth:
        parts = auth.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    return None


def create_access_token(user_id: int, *, secret: str, algorithm: str, expires_in: timedelta = timedelta(days=7)) -> str:
    """Issue a token carrying ``userId``; used by the auth service and by tests."""
    claims: dict[str, Any] = {
        "userId": user_id,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(claims, secret, algorithm=algorithm)


def decode_user_id(token: str, *, secret: str, algorithm: str) -> int:
    """Verify a bearer token and return its ``userId`` claim.

    Raises UnauthorizedError for bad signatures, expired tokens and tokens
    without an integer ``userId``.
    """
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise UnauthorizedError("Invalid token")

    user_id = claims.get("userId")
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        logger.warning("Rejected bearer token without integer userId")
        raise UnauthorizedError("Invalid token")
    return user_id
