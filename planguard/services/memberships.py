"""MembershipService: authorized changes to organization and workspace membership."""

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from planguard.core.cache import Cache, NullCache, usage_key
from planguard.core.exceptions import MembershipError
from planguard.db.models.organization import Organization, OrganizationUser
from planguard.db.models.user import User
from planguard.db.models.workspace import Workspace, WorkspaceUser
from planguard.domain.features import TEAM_MEMBERS
from planguard.domain.roles import OrganizationRole, UserContext, WorkspaceRole
from planguard.services.authorization import AuthorizationResolver

logger = structlog.get_logger(__name__)


class MembershipService:
    """Applies membership mutations after AuthorizationResolver approves them.

    Every method raises MembershipError when the acting user is not allowed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        authorization: AuthorizationResolver,
        cache: Cache | None = None,
    ):
        self.session_factory = session_factory
        self.authorization = authorization
        self.cache = cache or NullCache()

    async def _organization_member(
        self,
        session: AsyncSession,
        organization_id: int,
        user_id: int,
    ) -> OrganizationUser | None:
        result = await session.execute(
            select(OrganizationUser).where(
                OrganizationUser.organization_id == organization_id,
                OrganizationUser.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Organization
    # ------------------------------------------------------------------

    async def change_organization_role(
        self,
        actor: UserContext,
        organization_id: int,
        target_user_id: int,
        new_role: OrganizationRole,
    ) -> None:
        if not await self.authorization.can_change_organization_role(
            actor, organization_id, target_user_id, new_role
        ):
            raise MembershipError("You are not allowed to change this member's role.")

        async with self.session_factory() as session:
            member = await self._organization_member(session, organization_id, target_user_id)
            if member is None:
                raise MembershipError("User is not a member of this organization.")
            member.role = new_role.value
            await session.commit()

        logger.info(
            "organization_role_changed",
            organization_id=organization_id,
            user_id=target_user_id,
            role=new_role.value,
            changed_by=actor.user_id,
        )

    async def remove_organization_member(
        self,
        actor: UserContext,
        organization_id: int,
        target_user_id: int,
    ) -> None:
        """Remove a member and their workspace memberships in the organization."""
        if not await self.authorization.can_remove_organization_member(actor, organization_id, target_user_id):
            raise MembershipError("You are not allowed to remove this member.")

        async with self.session_factory() as session:
            workspace_ids = select(Workspace.id).where(Workspace.organization_id == organization_id)
            await session.execute(
                delete(WorkspaceUser).where(
                    WorkspaceUser.user_id == target_user_id,
                    WorkspaceUser.workspace_id.in_(workspace_ids),
                )
            )
            await session.execute(
                delete(OrganizationUser).where(
                    OrganizationUser.organization_id == organization_id,
                    OrganizationUser.user_id == target_user_id,
                )
            )
            # Clear the removed user's context if it pointed into this organization
            await session.execute(
                update(User)
                .where(User.id == target_user_id, User.current_organization_id == organization_id)
                .values(current_organization_id=None, current_workspace_id=None)
            )
            await session.commit()

        await self.cache.forget(usage_key(organization_id, TEAM_MEMBERS))
        logger.info(
            "organization_member_removed",
            organization_id=organization_id,
            user_id=target_user_id,
            removed_by=actor.user_id,
        )

    async def transfer_ownership(self, actor: UserContext, organization_id: int, new_owner_id: int) -> None:
        """Make another member the owner. The previous owner becomes an admin."""
        if not await self.authorization.can_transfer_ownership(actor, organization_id, new_owner_id):
            raise MembershipError("Only the owner can transfer ownership to another member.")

        async with self.session_factory() as session:
            organization = await session.get(Organization, organization_id)
            new_owner = await self._organization_member(session, organization_id, new_owner_id)
            old_owner = await self._organization_member(session, organization_id, actor.user_id)
            if organization is None or new_owner is None:
                raise MembershipError("User is not a member of this organization.")

            organization.owner_id = new_owner_id
            new_owner.role = OrganizationRole.OWNER.value
            if old_owner is not None:
                old_owner.role = OrganizationRole.ADMIN.value
            await session.commit()

        logger.info(
            "organization_ownership_transferred",
            organization_id=organization_id,
            previous_owner_id=actor.user_id,
            new_owner_id=new_owner_id,
        )

    # ------------------------------------------------------------------
    # Workspace
    # ------------------------------------------------------------------

    async def add_workspace_member(
        self,
        actor: UserContext,
        workspace_id: int,
        user_id: int,
        role: WorkspaceRole,
    ) -> None:
        if not await self.authorization.can_invite_to_workspace_with_role(actor, workspace_id, role):
            raise MembershipError("You are not allowed to add members at this role.")

        async with self.session_factory() as session:
            workspace = await session.get(Workspace, workspace_id)
            if workspace is None:
                raise MembershipError("Workspace not found.")
            if await self._organization_member(session, workspace.organization_id, user_id) is None:
                raise MembershipError("User must belong to the workspace's organization.")

            result = await session.execute(
                select(WorkspaceUser).where(
                    WorkspaceUser.workspace_id == workspace_id,
                    WorkspaceUser.user_id == user_id,
                )
            )
            if result.scalar_one_or_none() is not None:
                raise MembershipError("User is already a member of this workspace.")

            session.add(WorkspaceUser(workspace_id=workspace_id, user_id=user_id, role=role.value))
            await session.commit()

        logger.info("workspace_member_added", workspace_id=workspace_id, user_id=user_id, role=role.value)

    async def change_workspace_role(
        self,
        actor: UserContext,
        workspace_id: int,
        target_user_id: int,
        new_role: WorkspaceRole,
    ) -> None:
        if not await self.authorization.can_change_workspace_member_role(
            actor, workspace_id, target_user_id, new_role
        ):
            raise MembershipError("You are not allowed to change this member's role.")

        async with self.session_factory() as session:
            result = await session.execute(
                update(WorkspaceUser)
                .where(WorkspaceUser.workspace_id == workspace_id, WorkspaceUser.user_id == target_user_id)
                .values(role=new_role.value)
            )
            if result.rowcount == 0:
                raise MembershipError("User has no direct membership in this workspace.")
            await session.commit()

        logger.info(
            "workspace_role_changed",
            workspace_id=workspace_id,
            user_id=target_user_id,
            role=new_role.value,
            changed_by=actor.user_id,
        )

    async def remove_workspace_member(self, actor: UserContext, workspace_id: int, target_user_id: int) -> None:
        if not await self.authorization.can_remove_workspace_member(actor, workspace_id, target_user_id):
            raise MembershipError("You are not allowed to remove this member.")

        async with self.session_factory() as session:
            await session.execute(
                delete(WorkspaceUser).where(
                    WorkspaceUser.workspace_id == workspace_id,
                    WorkspaceUser.user_id == target_user_id,
                )
            )
            await session.execute(
                update(User)
                .where(User.id == target_user_id, User.current_workspace_id == workspace_id)
                .values(current_workspace_id=None)
            )
            await session.commit()

        logger.info(
            "workspace_member_removed",
            workspace_id=workspace_id,
            user_id=target_user_id,
            removed_by=actor.user_id,
        )
