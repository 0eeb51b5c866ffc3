"""
Unit tests for role resolution and role administration.

Tests cover:
- Named roles and collaborator links
- DependencyFailure when role data is unavailable
- Granting and revoking roles (Admin only)
"""

import pytest

from services.collab_server.authz import ActorContext
from services.collab_server.errors import (
    AuthorizationDenied,
    DependencyFailure,
    NotFoundError,
    ValidationFailed,
)
from services.collab_server.models import (
    ADMIN_ROLE,
    PROJECT_MANAGER_ROLE,
    VIEWER_ROLE,
    Action,
    AggregateKind,
)
from services.collab_server.store import StoreError

from tests.conftest import ADMIN, ALICE, BOB, EVE, PM


class TestRoleResolver:
    """Tests for RoleResolver."""

    @pytest.mark.asyncio
    async def test_named_roles(self, engine):
        """Granted roles are resolved by name."""
        ctx = await engine.resolver.resolve(PM)

        assert ctx.roles == frozenset({PROJECT_MANAGER_ROLE})
        assert not ctx.has_role(ADMIN_ROLE)

    @pytest.mark.asyncio
    async def test_no_roles(self, engine):
        """Users without grants hold nothing."""
        ctx = await engine.resolver.resolve(EVE)

        assert ctx.roles == frozenset()

    @pytest.mark.asyncio
    async def test_relationships(self, engine, store):
        """Collaborating ids are resolved per kind."""
        [event] = await store.insert("events", [{"title": "E", "start_time": "2024-03-01"}])
        await store.insert("event_collaborators", [{"event_id": event["id"], "user_id": ALICE}])

        ctx = await engine.resolver.resolve(ALICE)

        assert ctx.collaborates_on(AggregateKind.EVENT, event["id"])
        assert not ctx.collaborates_on(AggregateKind.PROJECT, event["id"])

    @pytest.mark.asyncio
    async def test_roles_only(self, engine, store):
        """Relationships can be skipped."""
        [event] = await store.insert("events", [{"title": "E", "start_time": "2024-03-01"}])
        await store.insert("event_collaborators", [{"event_id": event["id"], "user_id": BOB}])

        ctx = await engine.resolver.resolve(BOB, include_relationships=False)

        assert ctx.collaborating == {}
        assert not ctx.collaborates_on(AggregateKind.EVENT, event["id"])

    @pytest.mark.asyncio
    async def test_store_failure_is_dependency_failure(self, engine, store):
        """Unavailable role data is never an empty role set."""
        store.fail_next("user_roles", "select", StoreError("connection reset"))

        with pytest.raises(DependencyFailure) as exc_info:
            await engine.resolver.resolve(ADMIN)
        assert exc_info.value.dependency == "roles"

    @pytest.mark.asyncio
    async def test_role_maps(self, engine):
        """role_ids() and role_names() are inverse maps."""
        ids = await engine.resolver.role_ids()
        names = await engine.resolver.role_names()

        assert {name: role_id for role_id, name in names.items()} == ids
        viewer_id = ids[VIEWER_ROLE]
        assert await engine.resolver.role_names({viewer_id}) == {viewer_id: VIEWER_ROLE}

    def test_with_collaboration(self):
        """Context copies add and remove links."""
        ctx = ActorContext("u")

        added = ctx.with_collaboration(AggregateKind.EVENT, 3)
        removed = added.with_collaboration(AggregateKind.EVENT, 3, present=False)

        assert added.collaborates_on(AggregateKind.EVENT, 3)
        assert not removed.collaborates_on(AggregateKind.EVENT, 3)
        assert not ctx.collaborates_on(AggregateKind.EVENT, 3)


class TestAuthorizationGate:
    """Tests for AuthorizationGate.authorize()/require()."""

    @pytest.mark.asyncio
    async def test_require_raises_on_deny(self, engine):
        """require() turns Deny into AuthorizationDenied."""
        with pytest.raises(AuthorizationDenied) as exc_info:
            await engine.gate.require(EVE, Action.CREATE, "project")
        assert exc_info.value.reason == "missing_role"

    @pytest.mark.asyncio
    async def test_authorize_logs_denial(self, engine, caplog):
        """Denials are logged at WARNING."""
        with caplog.at_level("WARNING"):
            decision = await engine.gate.authorize(EVE, Action.MANAGE_ROLES)

        assert not decision.allowed
        assert "Authorization denied" in caplog.text

    @pytest.mark.asyncio
    async def test_dependency_failure_propagates(self, engine, store):
        """Role lookup failures are not denials."""
        store.fail_next("user_roles", "select")

        with pytest.raises(DependencyFailure):
            await engine.gate.authorize(ADMIN, Action.CREATE, "event")


class TestRoleAdministrator:
    """Tests for RoleAdministrator."""

    @pytest.mark.asyncio
    async def test_grant_and_revoke(self, engine):
        """Admin grants then revokes a role."""
        assert await engine.admin.grant_role(ADMIN, ALICE, PROJECT_MANAGER_ROLE) is True
        assert (await engine.resolver.resolve(ALICE)).has_role(PROJECT_MANAGER_ROLE)

        await engine.admin.revoke_role(ADMIN, ALICE, PROJECT_MANAGER_ROLE)
        assert not (await engine.resolver.resolve(ALICE)).has_role(PROJECT_MANAGER_ROLE)

    @pytest.mark.asyncio
    async def test_grant_twice(self, engine):
        """Granting a held role reports False."""
        await engine.admin.grant_role(ADMIN, ALICE, VIEWER_ROLE)

        assert await engine.admin.grant_role(ADMIN, ALICE, VIEWER_ROLE) is False

    @pytest.mark.asyncio
    async def test_non_admin_denied(self, engine):
        """Only Admins administer roles."""
        with pytest.raises(AuthorizationDenied):
            await engine.admin.grant_role(PM, ALICE, ADMIN_ROLE)

    @pytest.mark.asyncio
    async def test_unknown_role(self, engine):
        """Unknown role names fail validation."""
        with pytest.raises(ValidationFailed):
            await engine.admin.grant_role(ADMIN, ALICE, "Overlord")

    @pytest.mark.asyncio
    async def test_revoke_missing(self, engine):
        """Revoking a role not held is NotFound."""
        with pytest.raises(NotFoundError):
            await engine.admin.revoke_role(ADMIN, BOB, VIEWER_ROLE)
