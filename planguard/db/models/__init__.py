"""Re-export all models so Base.metadata sees them."""

from planguard.db.models.feature_override import OrganizationFeatureOverride
from planguard.db.models.invitation import Invitation
from planguard.db.models.organization import Organization, OrganizationUser
from planguard.db.models.organization_plan import OrganizationPlan
from planguard.db.models.plan import Plan, PlanLimit
from planguard.db.models.plan_feature import PlanFeature
from planguard.db.models.usage_tracking import UsageTracking
from planguard.db.models.user import User
from planguard.db.models.workspace import Workspace, WorkspaceFeatureLimit, WorkspaceUser

__all__ = [
    "Invitation",
    "Organization",
    "OrganizationFeatureOverride",
    "OrganizationPlan",
    "OrganizationUser",
    "Plan",
    "PlanFeature",
    "PlanLimit",
    "UsageTracking",
    "User",
    "Workspace",
    "WorkspaceFeatureLimit",
    "WorkspaceUser",
]
