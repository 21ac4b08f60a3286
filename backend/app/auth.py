"""Authentication utilities for the AgriMarket API.

Requests carry a bearer JWT whose claims name the user (``sub``), the
organization they act for (``org_id``) and the role of that organization
(``role``). Token issuance belongs to the identity provider;
``create_access_token`` exists for tests and local development.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from agrimarket.marketplace.models import OrgRole

from .config import Settings, get_settings

# Bearer token scheme; missing credentials are reported as 401 below
security = HTTPBearer(auto_error=False)

VALID_ROLES = {r.value for r in OrgRole}
BUYER_ROLES = {OrgRole.BUYER.value, OrgRole.PROVIDER.value, OrgRole.ADMIN.value}
OPERATOR_ROLES = {OrgRole.OPERATOR.value, OrgRole.PROVIDER.value, OrgRole.ADMIN.value}


def create_access_token(
    user_id: str,
    org_id: str,
    role: str,
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token for a user acting for an organization."""
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)

    to_encode = {
        "sub": user_id,
        "org_id": org_id,
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access",
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthContext:
    """Context from JWT token: the user and the organization they act for."""

    def __init__(self, user_id: str, org_id: str, role: str):
        self.user_id = user_id
        self.org_id = org_id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == OrgRole.ADMIN.value

    @property
    def can_buy(self) -> bool:
        return self.role in BUYER_ROLES

    @property
    def can_operate(self) -> bool:
        return self.role in OPERATOR_ROLES

    def require_buyer(self) -> None:
        if not self.can_buy:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Buyer role required",
            )

    def require_operator(self) -> None:
        if not self.can_operate:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Operator role required",
            )


async def get_current_org(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AuthContext:
    """Get the authenticated organization context from the bearer token."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated - provide Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials, settings)
    user_id = payload.get("sub")
    org_id = payload.get("org_id")
    role = payload.get("role")
    if not user_id or not org_id or role not in VALID_ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return AuthContext(user_id=user_id, org_id=org_id, role=role)


async def require_admin(auth: Annotated[AuthContext, Depends(get_current_org)]) -> AuthContext:
    """Allow only admin tokens."""
    if not auth.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return auth


# Type aliases for dependency injection
CurrentOrg = Annotated[AuthContext, Depends(get_current_org)]
AdminOrg = Annotated[AuthContext, Depends(require_admin)]
