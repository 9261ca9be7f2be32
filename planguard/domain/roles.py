"""Roles, permissions and the role policy tables.

Pure domain types. The policy is built once from configuration into
enum-indexed immutable tables; resolvers only ever read it.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType

from planguard.core.exceptions import ConfigurationError


class OrganizationRole(StrEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class WorkspaceRole(StrEnum):
    MANAGER = "manager"
    EDITOR = "editor"
    VIEWER = "viewer"


class WorkspacePermission(StrEnum):
    VIEW = "view"
    UPDATE = "update"
    EDIT_CONTENT = "edit_content"
    MANAGE_SETTINGS = "manage_settings"
    INVITE_USERS = "invite_users"
    REMOVE_USERS = "remove_users"
    CHANGE_USER_ROLES = "change_user_roles"
    DELETE = "delete"
    VIEW_AUDIT_LOGS = "view_audit_logs"


Role = OrganizationRole | WorkspaceRole

# Workspace roles allowed to invite people into the organization without being org admins
ORGANIZATION_INVITER_ROLES = frozenset({WorkspaceRole.MANAGER, WorkspaceRole.EDITOR})


@dataclass(frozen=True)
class UserContext:
    """The acting user and the organization/workspace they are working in."""

    user_id: int
    current_organization_id: int | None = None
    current_workspace_id: int | None = None


def _parse_role(name: str) -> Role:
    for enum_cls in (OrganizationRole, WorkspaceRole):
        try:
            return enum_cls(name)
        except ValueError:
            continue
    raise ConfigurationError(f"Unknown role '{name}'")


@dataclass(frozen=True)
class RolePolicy:
    """Role hierarchy levels and workspace permission allow-lists."""

    levels: Mapping[Role, int]
    permissions: Mapping[WorkspaceRole, frozenset[WorkspacePermission]]

    @classmethod
    def from_config(
        cls,
        role_levels: Mapping[str, int],
        role_permissions: Mapping[str, list[str]],
    ) -> "RolePolicy":
        """Validate configured maps and freeze them.

        Every role must have a level; unknown roles or permissions raise
        ConfigurationError.
        """
        levels: dict[Role, int] = {}
        for name, level in role_levels.items():
            levels[_parse_role(name)] = int(level)

        missing = [role for role in (*OrganizationRole, *WorkspaceRole) if role not in levels]
        if missing:
            raise ConfigurationError(f"Missing hierarchy level for roles: {', '.join(missing)}")

        permissions: dict[WorkspaceRole, frozenset[WorkspacePermission]] = {
            role: frozenset() for role in WorkspaceRole
        }
        for name, allowed in role_permissions.items():
            try:
                role = WorkspaceRole(name)
            except ValueError as e:
                raise ConfigurationError(f"Unknown workspace role '{name}'") from e
            try:
                permissions[role] = frozenset(WorkspacePermission(p) for p in allowed)
            except ValueError as e:
                raise ConfigurationError(f"Unknown permission for role '{name}': {e}") from e

        return cls(levels=MappingProxyType(levels), permissions=MappingProxyType(permissions))

    def level(self, role: Role | None) -> int:
        """Hierarchy level; 0 for no role."""
        if role is None:
            return 0
        return self.levels[role]

    def allows(self, role: WorkspaceRole | None, permission: WorkspacePermission) -> bool:
        if role is None:
            return False
        return permission in self.permissions[role]

    def outranks(self, actor: Role | None, target: Role | None) -> bool:
        """Strictly higher; equal roles never outrank each other."""
        if actor is None or target is None:
            return False
        return self.level(actor) > self.level(target)
