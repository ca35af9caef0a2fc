"""Bearer tokens.

Accounts live in the auth service; this side only checks signatures and
reads the user id from ``sub``. Issuing is here for tooling and tests.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from jose import JWTError, jwt

from hostelhub.config import settings
from hostelhub.core.exceptions import AuthenticationError

ACCESS_TOKEN = "access"


def create_access_token(subject: UUID | str, expires_delta: timedelta | None = None) -> str:
    expires_at = datetime.now(UTC) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    claims = {"sub": str(subject), "exp": expires_at, "type": ACCESS_TOKEN}
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def token_subject(token: str) -> UUID:
    """User id of a valid access token; AuthenticationError otherwise."""
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise AuthenticationError(f"Token validation failed: {e}")

    if claims.get("type") != ACCESS_TOKEN:
        raise AuthenticationError("Invalid token type")
    try:
        return UUID(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise AuthenticationError("Invalid token payload")
