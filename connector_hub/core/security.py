"""JWT principal extraction and role checks.

Tokens are issued by the tenant/user service; this module only verifies them
and pulls out the caller's tenant and role.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from connector_hub.core.config import settings

# JWT bearer scheme
security_scheme = HTTPBearer(auto_error=False)


@dataclass
class Principal:
    """The authenticated caller."""
    user_id: int
    tenant_id: int
    role: str


def create_access_token(
    user_id: int,
    tenant_id: int,
    role: str = "viewer",
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a JWT access token (used by tooling and tests)."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    to_encode = {
        "sub": str(user_id),
        "tenant_id": tenant_id,
        "role": role,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> Principal:
    """Extract user, tenant and role from the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    tenant_id = payload.get("tenant_id")
    if user_id is None or tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return Principal(user_id=int(user_id), tenant_id=int(tenant_id), role=payload.get("role", "viewer"))


class RequireRole:
    """Dependency that checks if the caller has a required role level."""

    ROLE_LEVELS = {
        "viewer": 20,
        "member": 40,
        "admin": 80,
        "super_admin": 100,
    }

    def __init__(self, min_role: str):
        self.min_level = self.ROLE_LEVELS.get(min_role, 0)

    async def __call__(self, principal: Principal = Depends(get_current_principal)) -> Principal:
        user_level = self.ROLE_LEVELS.get(principal.role, 0)
        if user_level < self.min_level:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{principal.role}' insufficient. Requires level {self.min_level}+.",
            )
        return principal


require_viewer = RequireRole("viewer")
require_admin = RequireRole("admin")
