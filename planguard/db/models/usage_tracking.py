"""UsageTracking model: one consumption bucket per organization/workspace/feature/period."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, func

from planguard.core.clock import utcnow
from planguard.db.base import Base


class UsageTracking(Base):
    __tablename__ = "usage_tracking"
    __table_args__ = (
        Index("ix_usage_tracking_bucket", "organization_id", "feature", "workspace_id", "period_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id = Column(Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=True)
    feature = Column(String(100), nullable=False)

    period_type = Column(String(20), nullable=False)  # Period values
    period_starts_at = Column(DateTime(timezone=True), nullable=True)  # NULL for lifetime
    period_ends_at = Column(DateTime(timezone=True), nullable=True)  # NULL for lifetime

    current_usage = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


# One bucket per scope and period. workspace_id is coalesced because NULLs
# never collide in a unique index.
Index(
    "uq_usage_tracking_lifetime_bucket",
    UsageTracking.organization_id,
    func.coalesce(UsageTracking.workspace_id, 0),
    UsageTracking.feature,
    UsageTracking.period_type,
    unique=True,
    postgresql_where=UsageTracking.period_starts_at.is_(None),
    sqlite_where=UsageTracking.period_starts_at.is_(None),
)
Index(
    "uq_usage_tracking_period_bucket",
    UsageTracking.organization_id,
    func.coalesce(UsageTracking.workspace_id, 0),
    UsageTracking.feature,
    UsageTracking.period_type,
    UsageTracking.period_starts_at,
    unique=True,
    postgresql_where=UsageTracking.period_starts_at.isnot(None),
    sqlite_where=UsageTracking.period_starts_at.isnot(None),
)
