"""User model: identity plus the current organization/workspace context."""

from sqlalchemy import Column, DateTime, Integer, String

from planguard.core.clock import utcnow
from planguard.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)

    # Session-like context, switched freely by the user
    current_organization_id = Column(Integer, nullable=True)
    current_workspace_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
