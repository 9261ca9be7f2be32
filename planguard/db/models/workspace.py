"""Workspace, WorkspaceUser and WorkspaceFeatureLimit models."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from planguard.core.clock import utcnow
from planguard.db.base import Base


class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class WorkspaceUser(Base):
    __tablename__ = "workspace_users"
    __table_args__ = (UniqueConstraint("workspace_id", "user_id", name="uq_workspace_user"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False, default="viewer")  # WorkspaceRole values

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class WorkspaceFeatureLimit(Base):
    __tablename__ = "workspace_feature_limits"
    __table_args__ = (UniqueConstraint("workspace_id", "feature", name="uq_workspace_feature_limit"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    feature = Column(String(100), nullable=False)
    allocated = Column(Integer, nullable=False)
