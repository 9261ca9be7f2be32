"""PlanFeature model: canonical feature registry."""

from sqlalchemy import Boolean, Column, Integer, String, Text

from planguard.db.base import Base


class PlanFeature(Base):
    __tablename__ = "plan_features"

    id = Column(Integer, primary_key=True, autoincrement=True)
    feature = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    type = Column(String(20), nullable=False)  # FeatureType values
    tracking_scope = Column(String(20), nullable=False, default="organization")  # TrackingScope values
    period = Column(String(20), nullable=False, default="lifetime")  # Period values
    is_active = Column(Boolean, nullable=False, default=True)
