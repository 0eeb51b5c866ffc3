"""
Role administration: granting and revoking named roles.
"""

from __future__ import annotations

import logging

from ..errors import DependencyFailure, NotFoundError, ValidationFailed
from ..models import Action
from ..store import StoreError, TableStore, UniqueViolation, eq
from .gate import AuthorizationGate

logger = logging.getLogger(__name__)


class RoleAdministrator:
    """Grants and revokes roles; only Admins may do either.

    Example:
        >>> admin = RoleAdministrator(store, gate)
        >>> await admin.grant_role("root", "user-42", "Project Manager")
    """

    def __init__(self, store: TableStore, gate: AuthorizationGate) -> None:
        self.store = store
        self.gate = gate

    async def _role_id(self, role_name: str) -> int:
        role_ids = await self.gate.resolver.role_ids()
        if role_name not in role_ids:
            raise ValidationFailed(
                f"Unknown role: {role_name}",
                field_name="role",
                errors=[f"Role '{role_name}' does not exist; known roles: {sorted(role_ids)}"],
            )
        return role_ids[role_name]

    async def grant_role(self, actor: str, user_id: str, role_name: str) -> bool:
        """Grant a role.

        Returns:
            True if granted, False if the user already held it

        Raises:
            AuthorizationDenied: If the actor is not an Admin
            ValidationFailed: If the role does not exist
            DependencyFailure: If the store fails
        """
        await self.gate.require(actor, Action.MANAGE_ROLES)
        role_id = await self._role_id(role_name)
        try:
            await self.store.insert("user_roles", [{"user_id": user_id, "role_id": role_id}])
        except UniqueViolation:
            return False
        except StoreError as e:
            raise DependencyFailure(f"Failed to grant role: {e}", dependency="user_roles") from e

        logger.info(
            "Role granted",
            extra={"actor": actor, "user_id": user_id, "role": role_name},
        )
        return True

    async def revoke_role(self, actor: str, user_id: str, role_name: str) -> None:
        """Revoke a role.

        Raises:
            AuthorizationDenied: If the actor is not an Admin
            ValidationFailed: If the role does not exist
            NotFoundError: If the user did not hold the role
            DependencyFailure: If the store fails
        """
        await self.gate.require(actor, Action.MANAGE_ROLES)
        role_id = await self._role_id(role_name)
        try:
            removed = await self.store.delete(
                "user_roles", [eq("user_id", user_id), eq("role_id", role_id)]
            )
        except StoreError as e:
            raise DependencyFailure(f"Failed to revoke role: {e}", dependency="user_roles") from e

        if not removed:
            raise NotFoundError(
                f"{user_id} does not hold role {role_name}",
                resource_type="user_role",
                resource_id=f"{user_id}:{role_name}",
            )
        logger.info(
            "Role revoked",
            extra={"actor": actor, "user_id": user_id, "role": role_name},
        )
