"""Tests for identity resolution and authorization policies."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from workboard.config import Settings
from workboard.constants import UserRole
from workboard.domain.models import User
from workboard.errors import Forbidden, Unauthorized
from workboard.server.auth import (
    AllowAllPolicy,
    Identity,
    RoleHierarchyPolicy,
    build_policy,
    create_access_token,
    decode_access_token,
    resolve_identity,
)
from workboard.storage import Container


@pytest.fixture
def users(tmp_path: Path):
    container = Container(tmp_path)
    container.users.upsert(User(id="alice", email="alice@example.com", role=UserRole.PROJECT_MANAGER))
    return container.users


class TestTokens:
    def test_round_trip(self) -> None:
        settings = Settings(secret_key="s3cret")
        token = create_access_token(settings, "alice")
        assert decode_access_token(settings, token) == "alice"

    def test_expired_token(self) -> None:
        settings = Settings(secret_key="s3cret")
        token = create_access_token(settings, "alice", expires_delta=timedelta(seconds=-5))
        assert decode_access_token(settings, token) is None

    def test_wrong_secret(self) -> None:
        token = create_access_token(Settings(secret_key="a"), "alice")
        assert decode_access_token(Settings(secret_key="b"), token) is None


class TestResolveIdentity:
    def test_auth_disabled_uses_header_or_default(self, users) -> None:
        settings = Settings(auth_enabled=False)
        assert resolve_identity(settings, users, None, "alice").role is UserRole.PROJECT_MANAGER
        assert resolve_identity(settings, users).user_id == "local-user"

    def test_auth_enabled_requires_valid_bearer(self, users) -> None:
        settings = Settings(auth_enabled=True, secret_key="s3cret")
        with pytest.raises(Unauthorized):
            resolve_identity(settings, users, None, "alice")
        with pytest.raises(Unauthorized):
            resolve_identity(settings, users, "Bearer garbage")
        token = create_access_token(settings, "alice")
        assert resolve_identity(settings, users, f"Bearer {token}").user_id == "alice"

    def test_auth_enabled_rejects_unknown_user(self, users) -> None:
        settings = Settings(auth_enabled=True, secret_key="s3cret")
        token = create_access_token(settings, "mallory")
        with pytest.raises(Unauthorized):
            resolve_identity(settings, users, f"Bearer {token}")


class TestPolicies:
    def test_allow_all(self) -> None:
        AllowAllPolicy().authorize(Identity("u", UserRole.CLIENT), "milestone.delete", min_role=UserRole.SUPER_ADMIN)

    def test_role_hierarchy_min_role(self) -> None:
        policy = RoleHierarchyPolicy()
        policy.authorize(Identity("u", UserRole.PROJECT_ADMIN), "milestone.create", min_role=UserRole.PROJECT_MANAGER)
        with pytest.raises(Forbidden):
            policy.authorize(Identity("u", UserRole.TEAM_MEMBER), "milestone.create", min_role=UserRole.PROJECT_MANAGER)

    def test_role_hierarchy_explicit_roles(self) -> None:
        policy = RoleHierarchyPolicy()
        with pytest.raises(Forbidden):
            policy.authorize(Identity("u", UserRole.PROJECT_MANAGER), "user.create", roles=[UserRole.SUPER_ADMIN])

    def test_build_policy(self) -> None:
        assert isinstance(build_policy(Settings()), AllowAllPolicy)
        assert isinstance(build_policy(Settings(policy="role_hierarchy")), RoleHierarchyPolicy)
