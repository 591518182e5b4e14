"""FastAPI dependencies for authentication and authorization."""

from typing import Annotated, Any

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError

from devenv_api.core.security import decode_access_token
from devenv_api.models.user import AuthenticatedUser

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _user_from_payload(payload: dict[str, Any] | None) -> AuthenticatedUser:
    """Build the caller identity from verified token claims."""
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token payload")

    claims = {
        key: value
        for key, value in {
            "role": payload.get("role"),
            "plan": payload.get("plan"),
        }.items()
        if value is not None
    }
    try:
        return AuthenticatedUser(id=user_id, email=payload.get("email"), **claims)
    except ValidationError as e:
        raise _unauthorized("Invalid token payload") from e


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> AuthenticatedUser:
    """Get the current caller from the JWT token.

    This is a FastAPI dependency that extracts and validates the JWT token
    from the Authorization header.

    Raises:
        HTTPException: 401 if token is missing or invalid
    """
    if credentials is None:
        raise _unauthorized("Authentication required")

    return _user_from_payload(decode_access_token(credentials.credentials))


async def get_current_user_sse(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    token: Annotated[str | None, Query()] = None,
) -> AuthenticatedUser:
    """Get the current caller for SSE endpoints.

    Supports both Authorization header and query parameter token for
    EventSource compatibility (EventSource doesn't support custom headers).
    """
    # Try header first, then query param
    raw_token = None
    if credentials is not None:
        raw_token = credentials.credentials
    elif token is not None:
        raw_token = token

    if raw_token is None:
        raise _unauthorized("Authentication required")

    return _user_from_payload(decode_access_token(raw_token))


async def require_worker(
    current_user: Annotated[AuthenticatedUser, Depends(get_current_user)],
) -> AuthenticatedUser:
    """Require a caller allowed to report job progress (worker or admin).

    Raises:
        HTTPException: 403 for ordinary users
    """
    if not current_user.can_report_progress:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This action requires worker or admin role",
        )
    return current_user


async def require_admin(
    current_user: Annotated[AuthenticatedUser, Depends(get_current_user)],
) -> AuthenticatedUser:
    """Require an admin caller.

    Raises:
        HTTPException: 403 for non-admin callers
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return current_user


# Type aliases for common dependencies
CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
CurrentUserSSE = Annotated[AuthenticatedUser, Depends(get_current_user_sse)]
WorkerUser = Annotated[AuthenticatedUser, Depends(require_worker)]
AdminUser = Annotated[AuthenticatedUser, Depends(require_admin)]
