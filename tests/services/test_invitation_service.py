"""Tests for InvitationService: validation, team size and acceptance."""

from datetime import UTC, datetime, timedelta

import pytest

from planguard.core.exceptions import InvitationValidationError, LimitExceededError
from planguard.db.models import Invitation, User
from planguard.domain.invitations import WorkspaceAssignment
from planguard.domain.roles import OrganizationRole, UserContext, WorkspaceRole
from planguard.services.authorization import AuthorizationResolver
from planguard.services.entitlements import EntitlementService
from planguard.services.invitations import InvitationService

pytestmark = pytest.mark.unit

NOW = datetime(2030, 6, 15, 10, 30, 0, tzinfo=UTC)


@pytest.fixture
def entitlements(session_factory, null_cache, settings):
    return EntitlementService(session_factory, null_cache, settings)


@pytest.fixture
def invitations(session_factory, entitlements, null_cache, settings):
    return InvitationService(
        session_factory, AuthorizationResolver(session_factory), entitlements, null_cache, settings
    )


@pytest.fixture
async def org_setup(catalog, tenants):
    owner = await tenants.user("owner")
    org = await tenants.organization(owner)
    workspace = await tenants.workspace(org)
    await tenants.attach(org, await tenants.plan("team", {"team_members": "3"}))
    return org, workspace, UserContext(owner.id, org.id, workspace.id)


async def test_create_invitation(invitations, entitlements, org_setup):
    org, workspace, owner = org_setup

    invitation = await invitations.create_invitation(
        owner,
        org.id,
        " New.Person@Example.com ",
        OrganizationRole.MEMBER,
        [WorkspaceAssignment(workspace.id, WorkspaceRole.EDITOR)],
        now=NOW,
    )

    assert invitation.email == "new.person@example.com"
    assert invitation.status == "pending"
    assert invitation.expires_at.replace(tzinfo=UTC) == NOW + timedelta(days=7)
    assert invitation.workspace_assignments == [{"workspace_id": workspace.id, "role": "editor"}]
    assert await entitlements.ledger.get_current_usage(org.id, "team_members", now=NOW) == 2


async def test_pending_invitations_consume_team_capacity(invitations, org_setup):
    org, workspace, owner = org_setup
    assignment = [WorkspaceAssignment(workspace.id, WorkspaceRole.VIEWER)]

    await invitations.create_invitation(owner, org.id, "a@example.com", OrganizationRole.MEMBER, assignment, now=NOW)
    await invitations.create_invitation(owner, org.id, "b@example.com", OrganizationRole.MEMBER, assignment, now=NOW)

    with pytest.raises(LimitExceededError) as exc_info:
        await invitations.create_invitation(
            owner, org.id, "c@example.com", OrganizationRole.MEMBER, assignment, now=NOW
        )
    assert exc_info.value.limit == 3


async def test_duplicate_pending_invitation_rejected(invitations, org_setup):
    org, workspace, owner = org_setup
    assignment = [WorkspaceAssignment(workspace.id, WorkspaceRole.VIEWER)]
    await invitations.create_invitation(owner, org.id, "a@example.com", OrganizationRole.MEMBER, assignment, now=NOW)

    with pytest.raises(InvitationValidationError) as exc_info:
        await invitations.create_invitation(
            owner, org.id, "a@example.com", OrganizationRole.MEMBER, assignment, now=NOW
        )
    assert "email" in exc_info.value.errors


async def test_existing_member_cannot_be_invited(invitations, tenants, org_setup):
    org, workspace, owner = org_setup
    member = await tenants.user("member")
    await tenants.member(org, member)

    with pytest.raises(InvitationValidationError) as exc_info:
        await invitations.create_invitation(
            owner,
            org.id,
            member.email,
            OrganizationRole.MEMBER,
            [WorkspaceAssignment(workspace.id, WorkspaceRole.VIEWER)],
            now=NOW,
        )
    assert "email" in exc_info.value.errors


async def test_role_rules_are_enforced(invitations, tenants, org_setup):
    org, workspace, _ = org_setup
    editor = await tenants.user("editor")
    await tenants.member(org, editor)
    await tenants.workspace_member(workspace, editor, "editor")
    context = UserContext(editor.id, org.id, workspace.id)

    with pytest.raises(InvitationValidationError) as exc_info:
        await invitations.create_invitation(
            context,
            org.id,
            "boss@example.com",
            OrganizationRole.ADMIN,
            [WorkspaceAssignment(workspace.id, WorkspaceRole.MANAGER)],
            now=NOW,
        )

    assert "role" in exc_info.value.errors
    assert "workspace_assignments.0.role" in exc_info.value.errors


async def test_accept_invitation_creates_memberships(invitations, tenants, session_factory, org_setup):
    org, workspace, owner = org_setup
    invitation = await invitations.create_invitation(
        owner,
        org.id,
        "joiner@example.com",
        OrganizationRole.MEMBER,
        [WorkspaceAssignment(workspace.id, WorkspaceRole.EDITOR)],
        now=NOW,
    )
    joiner = await tenants.user("joiner")

    accepted = await invitations.accept_invitation(invitation.id, joiner.id, now=NOW + timedelta(days=1))

    assert accepted.status == "accepted"
    resolver = invitations.authorization
    joiner_ctx = UserContext(joiner.id)
    assert await resolver.get_organization_role(joiner_ctx, org.id) == OrganizationRole.MEMBER
    assert await resolver.get_role_in_workspace(joiner_ctx, workspace.id) == WorkspaceRole.EDITOR
    async with session_factory() as session:
        user = await session.get(User, joiner.id)
    assert user.current_organization_id == org.id
    assert user.current_workspace_id == workspace.id


async def test_expired_invitation_cannot_be_accepted(invitations, tenants, org_setup):
    org, _, _ = org_setup
    invitation = await tenants.invitation(org, expires_at=NOW - timedelta(minutes=1))
    joiner = await tenants.user("late")

    with pytest.raises(InvitationValidationError, match="expired"):
        await invitations.accept_invitation(invitation.id, joiner.id, now=NOW)

    with pytest.raises(InvitationValidationError, match="no longer valid"):
        await invitations.accept_invitation(invitation.id, joiner.id, now=NOW)


async def test_existing_member_cannot_accept(invitations, tenants, session_factory, org_setup):
    org, workspace, owner = org_setup
    invitation = await invitations.create_invitation(
        owner,
        org.id,
        "again@example.com",
        OrganizationRole.MEMBER,
        [WorkspaceAssignment(workspace.id, WorkspaceRole.EDITOR)],
        now=NOW,
    )
    member = await tenants.user("again")
    await tenants.member(org, member)

    with pytest.raises(InvitationValidationError, match="already a member"):
        await invitations.accept_invitation(invitation.id, member.id, now=NOW)

    async with session_factory() as session:
        stored = await session.get(Invitation, invitation.id)
    assert stored.status == "pending"


async def test_accept_keeps_existing_workspace_membership(invitations, tenants, org_setup):
    org, workspace, owner = org_setup
    invitation = await invitations.create_invitation(
        owner,
        org.id,
        "guest@example.com",
        OrganizationRole.MEMBER,
        [WorkspaceAssignment(workspace.id, WorkspaceRole.EDITOR)],
        now=NOW,
    )
    guest = await tenants.user("guest")
    await tenants.workspace_member(workspace, guest, "viewer")

    await invitations.accept_invitation(invitation.id, guest.id, now=NOW)

    guest_ctx = UserContext(guest.id)
    resolver = invitations.authorization
    assert await resolver.get_organization_role(guest_ctx, org.id) == OrganizationRole.MEMBER
    assert await resolver.get_role_in_workspace(guest_ctx, workspace.id) == WorkspaceRole.VIEWER
