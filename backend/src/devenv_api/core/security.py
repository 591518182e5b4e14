"""JWT access token utilities.

Tokens are issued by the surrounding application (or by ``create_access_token``
for service accounts and tests); this service only verifies them.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from devenv_api.core.config import get_settings
from devenv_api.models.common import PlanTier, UserRole


def create_access_token(
    user_id: str,
    role: UserRole = UserRole.USER,
    plan: PlanTier = PlanTier.FREE,
    email: str | None = None,
    expires_delta: timedelta | None = None,
) -> tuple[str, datetime]:
    """Create a JWT access token.

    Args:
        user_id: User's unique identifier
        role: Caller role (user, worker or admin)
        plan: Subscription plan that determines resource limits
        email: Optional email address
        expires_delta: Optional custom expiration time

    Returns:
        Tuple of (token string, expiration datetime)
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)

    now = datetime.now(UTC)
    expire = now + expires_delta

    payload: dict[str, Any] = {
        "sub": user_id,
        "role": role.value,
        "plan": plan.value,
        "iat": now,
        "exp": expire,
    }
    if email is not None:
        payload["email"] = email

    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, expire


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT access token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    settings = get_settings()

    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        return payload
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
