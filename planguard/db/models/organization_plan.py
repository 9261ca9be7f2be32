"""OrganizationPlan model: plans attached to an organization over time.

Rows are never deleted; status and is_revoked carry the lifecycle.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from planguard.core.clock import utcnow
from planguard.db.base import Base


class OrganizationPlan(Base):
    __tablename__ = "organization_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, index=True)

    status = Column(String(20), nullable=False, default="active", index=True)  # PlanStatus values
    is_revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    ends_at = Column(DateTime(timezone=True), nullable=True)

    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    plan = relationship("Plan", lazy="joined")
