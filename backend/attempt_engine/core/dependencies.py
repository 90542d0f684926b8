"""FastAPI dependencies for authentication and authorization."""

from dataclasses import dataclass
from enum import Enum
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

# Error handling is done via HTTPException which uses the global error handler
from attempt_engine.core.security import verify_access_token


class Role(str, Enum):
    STUDENT = "STUDENT"
    INSTRUCTOR = "INSTRUCTOR"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class Principal:
    """Caller identity taken from the access token. Users live in the auth service."""

    user_id: str
    role: Role


def get_current_principal(
    authorization: Annotated[str | None, Header()] = None,
) -> Principal:
    """Dependency to get the current caller from the JWT bearer token."""
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
        )

    # Extract token from "Bearer <token>"
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid authorization scheme")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format. Expected: Bearer <token>",
        ) from None

    try:
        payload = verify_access_token(token)
        user_id = str(payload["sub"])
        role = Role(payload["role"])
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {str(e)}",
        ) from e

    return Principal(user_id=user_id, role=role)


def require_roles(*allowed_roles: Role):
    """Dependency factory to require specific roles."""

    def role_checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {[r.value for r in allowed_roles]}",
            )
        return principal

    return role_checker
