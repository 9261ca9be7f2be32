"""Organization invitation validation.

Pure domain functions -- callers resolve the inviter's standing first
and pass it in. Returns field -> message errors; an empty dict means the
request is valid.
"""

from collections.abc import Collection, Sequence
from dataclasses import dataclass
from enum import StrEnum

from planguard.domain.roles import (
    ORGANIZATION_INVITER_ROLES,
    OrganizationRole,
    RolePolicy,
    WorkspaceRole,
)


class InvitationStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class WorkspaceAssignment:
    workspace_id: int
    role: WorkspaceRole


@dataclass(frozen=True)
class InviterStanding:
    """What the inviter is allowed to do in the target organization."""

    organization_role: OrganizationRole | None
    current_workspace_id: int | None
    current_workspace_role: WorkspaceRole | None

    @property
    def is_organization_admin(self) -> bool:
        return self.organization_role in (OrganizationRole.OWNER, OrganizationRole.ADMIN)

    @property
    def is_workspace_inviter(self) -> bool:
        return (
            self.organization_role is not None
            and self.current_workspace_id is not None
            and self.current_workspace_role in ORGANIZATION_INVITER_ROLES
        )


def validate_invitation_request(
    policy: RolePolicy,
    inviter: InviterStanding,
    role: OrganizationRole,
    assignments: Sequence[WorkspaceAssignment],
    organization_workspace_ids: Collection[int],
) -> dict[str, str]:
    """Validate an invitation against the inviter's standing.

    Rules:
        - Nobody can be invited as owner.
        - Members must be assigned to at least one workspace of the organization.
        - Org admins/owners may invite at organization and workspace roles
          strictly below their own organization role.
        - Workspace managers/editors (not org admins) may only invite members, only
          into their current workspace, and only at a workspace role at or below
          their own.
    """
    errors: dict[str, str] = {}

    if role == OrganizationRole.OWNER:
        errors["role"] = "The owner role cannot be assigned by invitation."
        return errors

    if not inviter.is_organization_admin and not inviter.is_workspace_inviter:
        errors["inviter"] = "You are not allowed to invite users to this organization."
        return errors

    if role == OrganizationRole.MEMBER and not assignments:
        errors["workspace_assignments"] = "Members must be assigned to at least one workspace."

    for index, assignment in enumerate(assignments):
        if assignment.workspace_id not in organization_workspace_ids:
            errors[f"workspace_assignments.{index}.workspace_id"] = (
                "Workspace does not belong to this organization."
            )

    if inviter.is_organization_admin:
        if not policy.outranks(inviter.organization_role, role):
            errors["role"] = "You cannot invite users at a role equal to or above your own."
        for index, assignment in enumerate(assignments):
            if not policy.outranks(inviter.organization_role, assignment.role):
                errors[f"workspace_assignments.{index}.role"] = (
                    "You cannot assign a workspace role equal to or above your own."
                )
        return errors

    if role != OrganizationRole.MEMBER:
        errors["role"] = 'You can only invite users with "member" organization role.'

    inviter_level = policy.level(inviter.current_workspace_role)
    for index, assignment in enumerate(assignments):
        if assignment.workspace_id != inviter.current_workspace_id:
            errors[f"workspace_assignments.{index}.workspace_id"] = (
                "You can only invite users to your current workspace."
            )
        if policy.level(assignment.role) > inviter_level:
            errors[f"workspace_assignments.{index}.role"] = (
                "You cannot assign a workspace role above your own."
            )

    return errors
