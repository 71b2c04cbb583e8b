"""Identity resolution and authorization policies for the HTTP API."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import jwt
from fastapi import Request
from loguru import logger

from ..config import Settings
from ..constants import ROLE_HIERARCHY, UserRole
from ..errors import Forbidden, Unauthorized
from ..storage.interfaces import UserRepository


@dataclass
class Identity:
    """The authenticated caller of a request."""

    user_id: str
    role: UserRole = UserRole.TEAM_MEMBER


def create_access_token(settings: Settings, user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token.

    Args:
        settings: Settings holding the secret key and algorithm.
        user_id: Subject of the token.
        expires_delta: Optional expiration time delta.

    Returns:
        Encoded JWT token.
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.token_expire_minutes))
    return jwt.encode({"sub": user_id, "exp": expire}, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(settings: Settings, token: str) -> Optional[str]:
    """Decode and verify JWT access token.

    Returns:
        The user id from the token, or None if the token is invalid or expired.
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None


def resolve_identity(
    settings: Settings,
    users: UserRepository,
    authorization: Optional[str] = None,
    user_header: Optional[str] = None,
) -> Identity:
    if settings.auth_enabled:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise Unauthorized("Missing bearer token")
        user_id = decode_access_token(settings, authorization.split(" ", 1)[1].strip())
        if user_id is None:
            raise Unauthorized("Invalid or expired token")
    else:
        # Auth disabled: trust the caller-supplied user id for local use.
        user_id = (user_header or "").strip() or settings.default_user_id
    user = users.get(user_id)
    if user is None and settings.auth_enabled:
        raise Unauthorized("Unknown user")
    return Identity(user_id=user_id, role=user.role if user else UserRole.TEAM_MEMBER)


def current_identity(request: Request) -> Identity:
    """FastAPI dependency returning the caller's :class:`Identity`."""
    services = request.app.state.services
    return resolve_identity(
        services.settings,
        services.container.users,
        request.headers.get("authorization"),
        request.headers.get("x-user-id"),
    )


class Policy(ABC):
    """Decides whether an identity may perform an action."""

    @abstractmethod
    def authorize(
        self,
        identity: Identity,
        action: str,
        *,
        min_role: Optional[UserRole] = None,
        roles: Optional[Iterable[UserRole]] = None,
    ) -> None:
        raise NotImplementedError


class AllowAllPolicy(Policy):
    """Admit every authenticated caller regardless of role."""

    def authorize(self, identity, action, *, min_role=None, roles=None) -> None:
        return None


class RoleHierarchyPolicy(Policy):
    """Enforce explicit role lists and minimum roles on the role ladder."""

    def authorize(self, identity, action, *, min_role=None, roles=None) -> None:
        if roles is not None:
            allowed = {UserRole(r) for r in roles}
            if identity.role not in allowed:
                logger.info("Denied {} to {} (role {})", action, identity.user_id, identity.role.value)
                raise Forbidden(f"Role '{identity.role.value}' is not allowed to {action}")
        if min_role is not None:
            if ROLE_HIERARCHY[identity.role.value] < ROLE_HIERARCHY[UserRole(min_role).value]:
                logger.info("Denied {} to {} (role {})", action, identity.user_id, identity.role.value)
                raise Forbidden(f"Action {action} requires role '{UserRole(min_role).value}' or higher")


def build_policy(settings: Settings) -> Policy:
    if settings.policy == "role_hierarchy":
        return RoleHierarchyPolicy()
    return AllowAllPolicy()


def guard(
    request: Request,
    identity: Identity,
    action: str,
    *,
    min_role: Optional[UserRole] = None,
    roles: Optional[Iterable[UserRole]] = None,
) -> None:
    request.app.state.policy.authorize(identity, action, min_role=min_role, roles=roles)
