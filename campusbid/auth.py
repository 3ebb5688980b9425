"""
CampusBid Escrow — Caller Identity & Authorization
Bearer JWTs are issued by the marketplace's auth service; the engine only
validates them and reads two claims:

  - sub  → the caller's user id (buyer, seller or reviewer)
  - role → "admin" for dispute reviewers, anything else for marketplace users

Components:
  - decode_access_token: python-jose validation
  - get_current_principal: FastAPI Dependency for token validation
  - RoleChecker: Factory class for role-based access control
"""
import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from campusbid.config import get_settings

logger = logging.getLogger("campusbid.auth")

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def decode_access_token(token: str) -> dict:
    """Decode and validate an access token."""
    settings = get_settings()
    return jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )


# ═══════════════════════════════════════════════════════
#  Bearer scheme
# ═══════════════════════════════════════════════════════

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


# ═══════════════════════════════════════════════════════
#  get_current_principal — FastAPI Dependency
# ═══════════════════════════════════════════════════════


async def get_current_principal(
    token: str = Depends(oauth2_scheme),
) -> Principal:
    """
    Validate the Bearer JWT and return the caller.

    Raises HTTP 401 if the token is invalid, expired, or carries no subject.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
    except JWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception
    if payload.get("type", "access") != "access":
        raise credentials_exception

    return Principal(user_id=str(user_id), role=str(payload.get("role") or "user"))


# ═══════════════════════════════════════════════════════
#  RoleChecker — RBAC Factory Class
# ═══════════════════════════════════════════════════════


class RoleChecker:
    """
    FastAPI dependency factory for role-based access control.

    Usage:
        async def endpoint(reviewer: Principal = Depends(RoleChecker(["admin"]))):
            ...
    """

    def __init__(self, allowed_roles: list[str]):
        self.allowed_roles = allowed_roles

    async def __call__(
        self, principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if principal.role not in self.allowed_roles:
            logger.warning(
                "RBAC denied: user %s (role=%s) tried accessing "
                "endpoint restricted to %s",
                principal.user_id, principal.role, self.allowed_roles,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. This endpoint requires one of "
                       f"these roles: {', '.join(self.allowed_roles)}. "
                       f"Your role: {principal.role}.",
            )
        return principal


require_admin = RoleChecker([ADMIN_ROLE])
