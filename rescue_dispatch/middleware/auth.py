from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel

from rescue_dispatch.config import get_settings

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)

ROLES = ("rider", "driver", "admin", "system")


class Principal(BaseModel):
    """Caller identity from the token: `sub` is the actor id."""

    id: str
    role: str = "rider"


def create_access_token(data: dict) -> str:
    """Sign a JWT with the configured secret (HS256)."""
    return jwt.encode(data, settings.secret_key, algorithm=settings.jwt_algorithm)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    """Decode and validate the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_principal(token_data: dict = Depends(get_current_user)) -> Principal:
    subject = token_data.get("sub")
    role = token_data.get("role", "rider")
    if not subject or role not in ROLES:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return Principal(id=subject, role=role)


def require_roles(*roles: str):
    """Dependency factory: 403 unless the caller holds one of `roles`."""

    async def _check(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(roles)}",
            )
        return principal

    return _check


async def get_current_rider(principal: Principal = Depends(require_roles("rider"))) -> str:
    """Extract rider_id from token payload."""
    return principal.id


async def get_current_driver(principal: Principal = Depends(require_roles("driver"))) -> str:
    """Extract driver_id from token payload."""
    return principal.id
