"""AuthorizationResolver: effective roles and permission checks.

Every check takes an explicit UserContext for the acting user; nothing is
read from ambient request state. Checks return booleans and never raise.

Workspace access:
- Direct workspace membership gives that workspace role.
- Organization owners/admins without a direct membership get implicit
  manager access, and bypass workspace permission allow-lists entirely.

Hierarchy checks (remove member, change role, invite at a role) compare
authority levels: org owner/admin rank by their organization role, other
users by their workspace role. The actor must strictly outrank both the
target and any role being granted. Self-targeting and targeting the
organization owner are always refused; nobody is ever made owner here.
"""

from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from planguard.core.clock import utcnow
from planguard.core.config import get_settings
from planguard.db.models.organization import Organization, OrganizationUser
from planguard.db.models.organization_plan import OrganizationPlan
from planguard.db.models.plan import Plan
from planguard.db.models.workspace import Workspace, WorkspaceUser
from planguard.domain.invitations import InviterStanding
from planguard.domain.plans import FREE_PLAN_SLUG
from planguard.domain.roles import (
    ORGANIZATION_INVITER_ROLES,
    OrganizationRole,
    Role,
    RolePolicy,
    UserContext,
    WorkspacePermission,
    WorkspaceRole,
)
from planguard.services.plans import status_active_filter

logger = structlog.get_logger(__name__)

ADMIN_ROLES = (OrganizationRole.OWNER, OrganizationRole.ADMIN)


def default_role_policy() -> RolePolicy:
    settings = get_settings()
    return RolePolicy.from_config(settings.role_levels, settings.workspace_role_permissions)


@dataclass(frozen=True)
class WorkspaceAccess:
    """A user's resolved standing in one workspace."""

    workspace_id: int
    role: WorkspaceRole | None
    is_implicit: bool
    permissions: tuple[str, ...]


class AuthorizationResolver:
    """Resolves organization/workspace roles and permission checks."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: RolePolicy | None = None,
    ):
        self.session_factory = session_factory
        self.policy = policy or default_role_policy()

    # ------------------------------------------------------------------
    # Queries (session-scoped helpers)
    # ------------------------------------------------------------------

    async def _organization_role(
        self,
        session: AsyncSession,
        user_id: int,
        organization_id: int,
    ) -> OrganizationRole | None:
        owner_id = await session.scalar(
            select(Organization.owner_id).where(Organization.id == organization_id)
        )
        if owner_id is None:
            return None
        if owner_id == user_id:
            return OrganizationRole.OWNER

        role = await session.scalar(
            select(OrganizationUser.role).where(
                OrganizationUser.organization_id == organization_id,
                OrganizationUser.user_id == user_id,
            )
        )
        if role is None:
            return None
        # owner_id is authoritative for ownership
        if role == OrganizationRole.OWNER.value:
            return OrganizationRole.ADMIN
        return OrganizationRole(role)

    async def _workspace(self, session: AsyncSession, workspace_id: int) -> Workspace | None:
        return await session.get(Workspace, workspace_id)

    async def _direct_workspace_role(
        self,
        session: AsyncSession,
        user_id: int,
        workspace_id: int,
    ) -> WorkspaceRole | None:
        role = await session.scalar(
            select(WorkspaceUser.role).where(
                WorkspaceUser.workspace_id == workspace_id,
                WorkspaceUser.user_id == user_id,
            )
        )
        return WorkspaceRole(role) if role else None

    async def _workspace_role(
        self,
        session: AsyncSession,
        user_id: int,
        workspace: Workspace,
    ) -> tuple[WorkspaceRole | None, bool]:
        """(role, is_implicit). Direct membership wins over implicit admin access."""
        direct = await self._direct_workspace_role(session, user_id, workspace.id)
        if direct is not None:
            return direct, False
        org_role = await self._organization_role(session, user_id, workspace.organization_id)
        if org_role in ADMIN_ROLES:
            return WorkspaceRole.MANAGER, True
        return None, False

    async def _authority(self, session: AsyncSession, user_id: int, workspace: Workspace) -> Role | None:
        """Role used for hierarchy comparisons inside a workspace."""
        org_role = await self._organization_role(session, user_id, workspace.organization_id)
        if org_role in ADMIN_ROLES:
            return org_role
        return await self._direct_workspace_role(session, user_id, workspace.id)

    async def _can_perform(
        self,
        session: AsyncSession,
        user_id: int,
        workspace: Workspace,
        permission: WorkspacePermission,
    ) -> bool:
        org_role = await self._organization_role(session, user_id, workspace.organization_id)
        if org_role in ADMIN_ROLES:
            return True
        role = await self._direct_workspace_role(session, user_id, workspace.id)
        return self.policy.allows(role, permission)

    # ------------------------------------------------------------------
    # Organization membership
    # ------------------------------------------------------------------

    async def get_organization_role(self, user: UserContext, organization_id: int) -> OrganizationRole | None:
        async with self.session_factory() as session:
            return await self._organization_role(session, user.user_id, organization_id)

    async def belongs_to_organization(self, user: UserContext, organization_id: int) -> bool:
        return await self.get_organization_role(user, organization_id) is not None

    async def is_organization_owner(self, user: UserContext, organization_id: int) -> bool:
        return await self.get_organization_role(user, organization_id) == OrganizationRole.OWNER

    async def is_organization_admin(self, user: UserContext, organization_id: int) -> bool:
        """Admin or owner."""
        return await self.get_organization_role(user, organization_id) in ADMIN_ROLES

    # ------------------------------------------------------------------
    # Workspace access
    # ------------------------------------------------------------------

    async def belongs_to_workspace(self, user: UserContext, workspace_id: int) -> bool:
        return await self.get_role_in_workspace(user, workspace_id) is not None

    async def get_role_in_workspace(self, user: UserContext, workspace_id: int) -> WorkspaceRole | None:
        async with self.session_factory() as session:
            workspace = await self._workspace(session, workspace_id)
            if workspace is None:
                return None
            role, _ = await self._workspace_role(session, user.user_id, workspace)
            return role

    async def has_workspace_role(
        self,
        user: UserContext,
        workspace_id: int,
        roles: Collection[WorkspaceRole],
    ) -> bool:
        return await self.get_role_in_workspace(user, workspace_id) in roles

    async def can_perform_in_workspace(
        self,
        user: UserContext,
        workspace_id: int,
        permission: WorkspacePermission,
    ) -> bool:
        async with self.session_factory() as session:
            workspace = await self._workspace(session, workspace_id)
            if workspace is None:
                return False
            return await self._can_perform(session, user.user_id, workspace, permission)

    async def get_workspace_permissions(self, user: UserContext, workspace_id: int) -> WorkspaceAccess:
        """Resolved role and the sorted list of granted permissions."""
        async with self.session_factory() as session:
            workspace = await self._workspace(session, workspace_id)
            if workspace is None:
                return WorkspaceAccess(workspace_id, None, False, ())

            role, implicit = await self._workspace_role(session, user.user_id, workspace)
            org_role = await self._organization_role(session, user.user_id, workspace.organization_id)

        if org_role in ADMIN_ROLES:
            granted = set(WorkspacePermission)
        elif role is not None:
            granted = set(self.policy.permissions[role])
        else:
            granted = set()

        return WorkspaceAccess(
            workspace_id=workspace_id,
            role=role,
            is_implicit=implicit,
            permissions=tuple(sorted(p.value for p in granted)),
        )

    # ------------------------------------------------------------------
    # Workspace hierarchy actions
    # ------------------------------------------------------------------

    async def can_remove_workspace_member(
        self,
        user: UserContext,
        workspace_id: int,
        target_user_id: int,
    ) -> bool:
        if user.user_id == target_user_id:
            return False

        async with self.session_factory() as session:
            workspace = await self._workspace(session, workspace_id)
            if workspace is None:
                return False

            target_org_role = await self._organization_role(session, target_user_id, workspace.organization_id)
            if target_org_role == OrganizationRole.OWNER:
                return False

            if not await self._can_perform(session, user.user_id, workspace, WorkspacePermission.REMOVE_USERS):
                return False

            actor = await self._authority(session, user.user_id, workspace)
            target = await self._authority(session, target_user_id, workspace)

        return self.policy.outranks(actor, target)

    async def can_change_workspace_member_role(
        self,
        user: UserContext,
        workspace_id: int,
        target_user_id: int,
        new_role: WorkspaceRole,
    ) -> bool:
        if user.user_id == target_user_id:
            return False

        async with self.session_factory() as session:
            workspace = await self._workspace(session, workspace_id)
            if workspace is None:
                return False

            target_org_role = await self._organization_role(session, target_user_id, workspace.organization_id)
            if target_org_role == OrganizationRole.OWNER:
                return False

            if not await self._can_perform(
                session, user.user_id, workspace, WorkspacePermission.CHANGE_USER_ROLES
            ):
                return False

            actor = await self._authority(session, user.user_id, workspace)
            target = await self._authority(session, target_user_id, workspace)

        return self.policy.outranks(actor, target) and self.policy.outranks(actor, new_role)

    async def can_invite_to_workspace_with_role(
        self,
        user: UserContext,
        workspace_id: int,
        role: WorkspaceRole,
    ) -> bool:
        async with self.session_factory() as session:
            workspace = await self._workspace(session, workspace_id)
            if workspace is None:
                return False
            if not await self._can_perform(session, user.user_id, workspace, WorkspacePermission.INVITE_USERS):
                return False
            actor = await self._authority(session, user.user_id, workspace)

        return self.policy.outranks(actor, role)

    # ------------------------------------------------------------------
    # Organization-level actions
    # ------------------------------------------------------------------

    async def get_inviter_standing(self, user: UserContext, organization_id: int) -> InviterStanding:
        """The inviter's org role plus their current workspace role, if it is in this organization."""
        async with self.session_factory() as session:
            org_role = await self._organization_role(session, user.user_id, organization_id)

            workspace_id = None
            workspace_role = None
            if user.current_workspace_id is not None:
                workspace = await self._workspace(session, user.current_workspace_id)
                if workspace is not None and workspace.organization_id == organization_id:
                    workspace_id = workspace.id
                    workspace_role, _ = await self._workspace_role(session, user.user_id, workspace)

        return InviterStanding(
            organization_role=org_role,
            current_workspace_id=workspace_id,
            current_workspace_role=workspace_role,
        )

    async def can_invite_to_organization(self, user: UserContext, organization_id: int) -> bool:
        """Org admins, or managers/editors of their current workspace in this organization."""
        standing = await self.get_inviter_standing(user, organization_id)
        if standing.is_organization_admin:
            return True
        return (
            standing.organization_role is not None
            and standing.current_workspace_role in ORGANIZATION_INVITER_ROLES
        )

    async def can_invite_to_organization_with_role(
        self,
        user: UserContext,
        organization_id: int,
        role: OrganizationRole,
    ) -> bool:
        if role == OrganizationRole.OWNER:
            return False
        standing = await self.get_inviter_standing(user, organization_id)
        if standing.is_organization_admin:
            return self.policy.outranks(standing.organization_role, role)
        return standing.is_workspace_inviter and role == OrganizationRole.MEMBER

    async def can_change_organization_role(
        self,
        user: UserContext,
        organization_id: int,
        target_user_id: int,
        new_role: OrganizationRole,
    ) -> bool:
        if user.user_id == target_user_id or new_role == OrganizationRole.OWNER:
            return False

        async with self.session_factory() as session:
            target = await self._organization_role(session, target_user_id, organization_id)
            if target is None or target == OrganizationRole.OWNER:
                return False
            actor = await self._organization_role(session, user.user_id, organization_id)

        if actor not in ADMIN_ROLES:
            return False
        return self.policy.outranks(actor, target) and self.policy.outranks(actor, new_role)

    async def can_remove_organization_member(
        self,
        user: UserContext,
        organization_id: int,
        target_user_id: int,
    ) -> bool:
        if user.user_id == target_user_id:
            return False

        async with self.session_factory() as session:
            target = await self._organization_role(session, target_user_id, organization_id)
            if target is None or target == OrganizationRole.OWNER:
                return False
            actor = await self._organization_role(session, user.user_id, organization_id)

        if actor not in ADMIN_ROLES:
            return False
        return self.policy.outranks(actor, target)

    async def can_update_organization(self, user: UserContext, organization_id: int) -> bool:
        return await self.is_organization_admin(user, organization_id)

    async def can_manage_billing(self, user: UserContext, organization_id: int) -> bool:
        return await self.is_organization_owner(user, organization_id)

    async def can_transfer_ownership(
        self,
        user: UserContext,
        organization_id: int,
        new_owner_id: int,
    ) -> bool:
        if user.user_id == new_owner_id:
            return False
        async with self.session_factory() as session:
            actor = await self._organization_role(session, user.user_id, organization_id)
            target = await self._organization_role(session, new_owner_id, organization_id)
        return actor == OrganizationRole.OWNER and target is not None

    async def can_create_organization(self, user: UserContext, now: datetime | None = None) -> bool:
        """A user may own at most one organization running on the free plan."""
        now = now or utcnow()
        async with self.session_factory() as session:
            free_owned = await session.scalar(
                select(func.count(func.distinct(Organization.id)))
                .join(OrganizationPlan, OrganizationPlan.organization_id == Organization.id)
                .join(Plan, Plan.id == OrganizationPlan.plan_id)
                .where(
                    Organization.owner_id == user.user_id,
                    Plan.slug == FREE_PLAN_SLUG,
                    status_active_filter(now),
                )
            )
        return not free_owned

    async def get_organization_permissions(self, user: UserContext, organization_id: int) -> dict[str, bool]:
        role = await self.get_organization_role(user, organization_id)
        is_admin = role in ADMIN_ROLES
        is_owner = role == OrganizationRole.OWNER
        return {
            "view": role is not None,
            "update": is_admin,
            "manage_members": is_admin,
            "invite_users": await self.can_invite_to_organization(user, organization_id),
            "manage_billing": is_owner,
            "transfer_ownership": is_owner,
            "delete": is_owner,
            "create_workspaces": is_admin,
            "create_organization": await self.can_create_organization(user),
        }
