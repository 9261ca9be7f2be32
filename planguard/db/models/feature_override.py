"""OrganizationFeatureOverride model: operator-granted entitlement values."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from planguard.core.clock import utcnow
from planguard.db.base import Base


class OrganizationFeatureOverride(Base):
    __tablename__ = "organization_feature_overrides"
    __table_args__ = (UniqueConstraint("organization_id", "feature", name="uq_organization_override_feature"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    feature = Column(String(100), nullable=False)
    value = Column(String(255), nullable=False)  # same encoding as PlanLimit.value
    expires_at = Column(DateTime(timezone=True), nullable=True)  # NULL = never expires

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
