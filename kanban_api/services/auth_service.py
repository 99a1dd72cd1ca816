"""Bearer token decoding into an authenticated principal.

Tokens are issued by the authentication service of the deployment; this API
only verifies the signature and reads the identity and role claims. The
admin portal authenticates with a shared instance token instead.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer, OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel, Field

from ..config import settings

logger = logging.getLogger(__name__)

# OAuth2 scheme for token-based authentication
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

ADMIN_ROLE = "admin"


class Principal(BaseModel):
    """The authenticated caller as described by its token."""

    user_id: str
    email: Optional[str] = None
    roles: list[str] = Field(default_factory=list)

    def has_role(self, role: str) -> bool:
        return role in self.roles


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed JWT. Used by tooling and tests; production tokens come
    from the authentication service.

    Args:
        data: Claims to encode (``sub`` or ``id``, ``email``, ``role``/``roles``)
        expires_delta: Optional custom expiration time delta

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.jwt_expiration_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[Principal]:
    """
    Decode and validate a JWT access token.

    Returns:
        The principal, or None if the token is invalid, expired or has no subject
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None

    user_id = payload.get("sub") or payload.get("id")
    if user_id is None:
        return None

    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    role = payload.get("role")
    if role and role not in roles:
        roles = [*roles, role]

    return Principal(user_id=str(user_id), email=payload.get("email"), roles=list(roles))


async def get_current_principal(
    token: str = Depends(oauth2_scheme),
) -> Principal:
    """
    FastAPI dependency returning the caller of the request.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    principal = decode_access_token(token)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def require_role(role: str):
    """Dependency factory rejecting principals without ``role`` with 403."""

    async def checker(
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        if not principal.has_role(role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return checker


require_admin = require_role(ADMIN_ROLE)


# Shared secret of the admin portal; not a JWT
instance_token_scheme = HTTPBearer(auto_error=False)


async def require_instance_token(
    credentials: Annotated[
        Optional[HTTPAuthorizationCredentials], Depends(instance_token_scheme)
    ],
) -> None:
    """
    FastAPI dependency accepting only the admin portal's shared token.

    Raises:
        HTTPException: 401 without a bearer token, 500 when INSTANCE_TOKEN is
            not configured, 403 when the token does not match
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not settings.instance_token:
        logger.error("INSTANCE_TOKEN is not configured; admin portal calls are refused")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Instance token not configured",
        )
    if not secrets.compare_digest(credentials.credentials, settings.instance_token):
        logger.warning("Admin portal call with an invalid instance token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid instance token",
        )
