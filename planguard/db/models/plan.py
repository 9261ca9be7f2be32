"""Plan and PlanLimit models: the purchasable catalog."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from planguard.core.clock import utcnow
from planguard.db.base import Base
from planguard.domain.features import EntitlementValue, decode_value
from planguard.domain.plans import FREE_PLAN_SLUG


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="NPR")
    billing_cycle = Column(String(20), nullable=False, default="monthly")  # BillingCycle values

    # Higher priority wins when picking the "current" plan among several active ones
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    limits = relationship("PlanLimit", back_populates="plan", cascade="all, delete-orphan")

    @property
    def is_free(self) -> bool:
        return self.slug == FREE_PLAN_SLUG


class PlanLimit(Base):
    __tablename__ = "plan_limits"
    __table_args__ = (UniqueConstraint("plan_id", "feature", name="uq_plan_limit_feature"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True)
    feature = Column(String(100), nullable=False, index=True)

    type = Column(String(20), nullable=False)  # FeatureType values
    tracking_scope = Column(String(20), nullable=False, default="organization")  # TrackingScope values
    value = Column(String(255), nullable=False)  # "true"/"false", integer string, or "-1"

    plan = relationship("Plan", back_populates="limits")

    @property
    def decoded(self) -> EntitlementValue | None:
        return decode_value(self.value, self.type)
