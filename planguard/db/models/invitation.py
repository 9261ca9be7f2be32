"""Invitation model: pending organization invitations count as team members."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String

from planguard.core.clock import utcnow
from planguard.db.base import Base


class Invitation(Base):
    __tablename__ = "invitations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    invited_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    email = Column(String(255), nullable=False, index=True)

    role = Column(String(20), nullable=False, default="member")  # OrganizationRole values
    # [{"workspace_id": 1, "role": "editor"}, ...]
    workspace_assignments = Column(JSON, nullable=False, default=list)

    status = Column(String(20), nullable=False, default="pending", index=True)  # InvitationStatus values
    expires_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
