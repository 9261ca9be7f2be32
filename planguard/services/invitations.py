"""InvitationService: organization invitations gated by role and team size."""

from collections.abc import Sequence
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from planguard.core.cache import Cache, NullCache, usage_key
from planguard.core.clock import ensure_utc, utcnow
from planguard.core.config import Settings, get_settings
from planguard.core.exceptions import InvitationValidationError
from planguard.db.models.invitation import Invitation
from planguard.db.models.organization import OrganizationUser
from planguard.db.models.user import User
from planguard.db.models.workspace import Workspace, WorkspaceUser
from planguard.domain.features import TEAM_MEMBERS
from planguard.domain.invitations import (
    InvitationStatus,
    WorkspaceAssignment,
    validate_invitation_request,
)
from planguard.domain.roles import OrganizationRole, UserContext, WorkspaceRole
from planguard.services.authorization import AuthorizationResolver
from planguard.services.entitlements import EntitlementService

logger = structlog.get_logger(__name__)


class InvitationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        authorization: AuthorizationResolver,
        entitlements: EntitlementService,
        cache: Cache | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.authorization = authorization
        self.entitlements = entitlements
        self.cache = cache or NullCache()
        self.settings = settings or get_settings()

    async def validate_organization_invitation(
        self,
        inviter: UserContext,
        organization_id: int,
        role: OrganizationRole,
        assignments: Sequence[WorkspaceAssignment],
    ) -> None:
        """Raise InvitationValidationError unless the inviter may send this invitation."""
        standing = await self.authorization.get_inviter_standing(inviter, organization_id)

        async with self.session_factory() as session:
            result = await session.execute(
                select(Workspace.id).where(Workspace.organization_id == organization_id)
            )
            workspace_ids = set(result.scalars())

        errors = validate_invitation_request(
            self.authorization.policy, standing, role, assignments, workspace_ids
        )
        if errors:
            raise InvitationValidationError(errors)

    async def create_invitation(
        self,
        inviter: UserContext,
        organization_id: int,
        email: str,
        role: OrganizationRole,
        assignments: Sequence[WorkspaceAssignment] = (),
        now: datetime | None = None,
    ) -> Invitation:
        """Validate and store a pending invitation.

        Raises:
            InvitationValidationError: Role/workspace rules failed or email already present
            LimitExceededError: No team_members capacity left
        """
        now = now or utcnow()
        email = email.strip().lower()

        await self.validate_organization_invitation(inviter, organization_id, role, assignments)

        async with self.session_factory() as session:
            existing_member = await session.scalar(
                select(OrganizationUser.id)
                .join(User, User.id == OrganizationUser.user_id)
                .where(OrganizationUser.organization_id == organization_id, User.email == email)
            )
            if existing_member is not None:
                raise InvitationValidationError({"email": "This user is already a member."})

            pending = await session.scalar(
                select(Invitation.id).where(
                    Invitation.organization_id == organization_id,
                    Invitation.email == email,
                    Invitation.status == InvitationStatus.PENDING.value,
                    Invitation.expires_at > now,
                )
            )
            if pending is not None:
                raise InvitationValidationError({"email": "An invitation is already pending for this email."})

        # Pending invitations count as team members
        await self.entitlements.ensure_can_use(organization_id, TEAM_MEMBERS, 1, now=now)

        async with self.session_factory() as session:
            invitation = Invitation(
                organization_id=organization_id,
                invited_by=inviter.user_id,
                email=email,
                role=role.value,
                workspace_assignments=[
                    {"workspace_id": a.workspace_id, "role": a.role.value} for a in assignments
                ],
                status=InvitationStatus.PENDING.value,
                expires_at=now + timedelta(days=self.settings.invitation_expiry_days),
            )
            session.add(invitation)
            await session.commit()
            await session.refresh(invitation)

        await self.cache.forget(usage_key(organization_id, TEAM_MEMBERS))
        logger.info(
            "invitation_created",
            organization_id=organization_id,
            invitation_id=invitation.id,
            role=role.value,
            invited_by=inviter.user_id,
        )
        return invitation

    async def accept_invitation(self, invitation_id: int, user_id: int, now: datetime | None = None) -> Invitation:
        """Turn a pending invitation into organization and workspace memberships."""
        now = now or utcnow()

        async with self.session_factory() as session:
            invitation = await session.get(Invitation, invitation_id)
            if invitation is None or invitation.status != InvitationStatus.PENDING.value:
                raise InvitationValidationError({"invitation": "This invitation is no longer valid."})
            if ensure_utc(invitation.expires_at) <= now:
                invitation.status = InvitationStatus.EXPIRED.value
                await session.commit()
                raise InvitationValidationError({"invitation": "This invitation has expired."})

            already_member = await session.scalar(
                select(OrganizationUser.id).where(
                    OrganizationUser.organization_id == invitation.organization_id,
                    OrganizationUser.user_id == user_id,
                )
            )
            if already_member is not None:
                raise InvitationValidationError(
                    {"invitation": "You are already a member of this organization."}
                )

            session.add(
                OrganizationUser(
                    organization_id=invitation.organization_id,
                    user_id=user_id,
                    role=invitation.role,
                )
            )
            assignments = invitation.workspace_assignments or []
            result = await session.scalars(
                select(WorkspaceUser.workspace_id).where(
                    WorkspaceUser.user_id == user_id,
                    WorkspaceUser.workspace_id.in_([a["workspace_id"] for a in assignments]),
                )
            )
            # Existing workspace memberships keep their role
            joined = set(result)
            for assignment in assignments:
                if assignment["workspace_id"] in joined:
                    continue
                joined.add(assignment["workspace_id"])
                session.add(
                    WorkspaceUser(
                        workspace_id=assignment["workspace_id"],
                        user_id=user_id,
                        role=WorkspaceRole(assignment["role"]).value,
                    )
                )

            user = await session.get(User, user_id)
            if user is not None and user.current_organization_id is None:
                user.current_organization_id = invitation.organization_id
                if invitation.workspace_assignments:
                    user.current_workspace_id = invitation.workspace_assignments[0]["workspace_id"]

            invitation.status = InvitationStatus.ACCEPTED.value
            invitation.accepted_at = now
            await session.commit()

        await self.cache.forget(usage_key(invitation.organization_id, TEAM_MEMBERS))
        logger.info(
            "invitation_accepted",
            organization_id=invitation.organization_id,
            invitation_id=invitation_id,
            user_id=user_id,
        )
        return invitation
