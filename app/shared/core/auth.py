import hashlib
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Optional, cast
from uuid import UUID

import jwt
import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
)

logger = structlog.get_logger()

__all__ = [
    "CurrentUser",
    "UserRole",
    "create_access_token",
    "decode_jwt",
    "get_current_user",
    "requires_role",
    "require_tenant_access",
]

security = HTTPBearer(auto_error=False)


class UserRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


# owner > admin > member
ROLE_HIERARCHY = {UserRole.OWNER: 100, UserRole.ADMIN: 50, UserRole.MEMBER: 10}


def _hash_email(email: str | None) -> str | None:
    if not email:
        return None
    normalized = email.strip().lower()
    return hashlib.sha256(normalized.encode()).hexdigest()[:12]


def _jwt_secret() -> str:
    secret = get_settings().AUTH_JWT_SECRET
    if not secret:
        logger.error("jwt_secret_missing")
        raise ConfigurationError("AUTH_JWT_SECRET is not configured")
    return secret


def create_access_token(
    data: dict[str, Any], expires_delta: Optional[timedelta] = None
) -> str:
    """
    Generate a new JWT token signed with the application secret.

    Used by operator tooling and tests; production tokens come from the
    identity provider sharing the same secret.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    to_encode.setdefault("aud", get_settings().AUTH_JWT_AUDIENCE)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, _jwt_secret(), algorithm="HS256")


class CurrentUser(BaseModel):
    """
    Represents the authenticated user from the JWT.
    """

    id: UUID
    email: str
    tenant_id: Optional[UUID] = None
    role: UserRole = UserRole.MEMBER

    @property
    def actor(self) -> str:
        """Identity recorded on audit entries and change rows."""
        return str(self.id)


def decode_jwt(token: str) -> dict[str, Any]:
    """
    Decode and verify a bearer token.

    HS256 with AUTH_JWT_SECRET; expired, tampered or wrong-audience tokens
    raise AuthenticationError.
    """
    try:
        payload = jwt.decode(
            token,
            _jwt_secret(),
            algorithms=["HS256"],
            audience=get_settings().AUTH_JWT_AUDIENCE,
        )
        return cast(dict[str, Any], payload)
    except jwt.ExpiredSignatureError as exc:
        logger.warning("jwt_expired")
        raise AuthenticationError("Token has expired", code="token_expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("jwt_invalid", error=str(exc))
        raise AuthenticationError("Invalid token", code="invalid_token") from exc


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CurrentUser:
    if credentials is None:
        raise AuthenticationError("Not authenticated", code="not_authenticated")

    payload = decode_jwt(credentials.credentials)
    user_id = payload.get("sub")
    email = payload.get("email")
    if not user_id or not email:
        raise AuthenticationError("Invalid token payload", code="invalid_token")

    try:
        user = CurrentUser(
            id=UUID(str(user_id)),
            email=email,
            tenant_id=UUID(str(payload["tenant_id"])) if payload.get("tenant_id") else None,
            role=UserRole(payload.get("role") or UserRole.MEMBER.value),
        )
    except ValueError as exc:
        raise AuthenticationError("Invalid token claims", code="invalid_token") from exc

    structlog.contextvars.bind_contextvars(
        user_id=str(user.id), tenant_id=str(user.tenant_id) if user.tenant_id else None
    )
    logger.debug("user_authenticated", user_id=str(user.id), email_hash=_hash_email(email))
    return user


@lru_cache(maxsize=16)
def requires_role(required_role: str) -> Callable[[CurrentUser], CurrentUser]:
    """
    FastAPI dependency for RBAC.

    Usage:
        @router.post("/admin/refunds")
        async def refund(user: CurrentUser = Depends(requires_role("owner"))):
            ...

    Access Levels:
    - owner: refunds and everything below
    - admin: subscription operations and webhook replays
    - member: read-only subscription view
    """
    required_level = ROLE_HIERARCHY[UserRole(required_role)]

    def role_checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if ROLE_HIERARCHY.get(user.role, 0) < required_level:
            logger.warning(
                "insufficient_permissions",
                user_id=str(user.id),
                user_role=user.role.value,
                required_role=required_role,
            )
            raise AuthorizationError(
                f"Insufficient permissions. Required role: {required_role}",
                details={"required_role": required_role},
            )
        return user

    return role_checker


def require_tenant_access(user: CurrentUser = Depends(requires_role("member"))) -> UUID:
    """The caller's own tenant, for tenant-scoped read endpoints."""
    if not user.tenant_id:
        logger.error("tenant_id_missing_in_user_context", user_id=str(user.id))
        raise AuthorizationError(
            "Tenant context required", code="tenant_required"
        )
    return user.tenant_id
