"""Idempotent seed data for the feature registry and plan catalog."""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from planguard.core.exceptions import CatalogError
from planguard.db.base import get_session_factory
from planguard.db.models.plan import Plan, PlanLimit
from planguard.db.models.plan_feature import PlanFeature

logger = structlog.get_logger(__name__)

FEATURES = [
    {
        "feature": "team_members",
        "name": "Team Members",
        "description": "Number of team members per organization",
        "type": "limit",
        "tracking_scope": "organization",
        "period": "lifetime",
    },
    {
        "feature": "workspaces",
        "name": "Workspaces",
        "description": "Number of workspaces per organization",
        "type": "limit",
        "tracking_scope": "organization",
        "period": "lifetime",
    },
    {
        "feature": "connections_per_workspace",
        "name": "Connections per Workspace",
        "description": "Number of external service connections per workspace",
        "type": "limit",
        "tracking_scope": "workspace",
        "period": "lifetime",
    },
    {
        "feature": "api_rate_limit",
        "name": "API Rate Limit",
        "description": "API requests per minute",
        "type": "limit",
        "tracking_scope": "organization",
        "period": "lifetime",
    },
    {
        "feature": "unique_visitors",
        "name": "Monthly Active Users",
        "description": "Number of monthly active users",
        "type": "limit",
        "tracking_scope": "organization",
        "period": "monthly",
    },
    {
        "feature": "data_retention_days",
        "name": "Data Retention",
        "description": "Days of data retention",
        "type": "limit",
        "tracking_scope": "organization",
        "period": "lifetime",
    },
    {
        "feature": "priority_support",
        "name": "Priority Support",
        "description": "Access to priority customer support",
        "type": "boolean",
        "tracking_scope": "organization",
        "period": "lifetime",
    },
]

PLANS = [
    {
        "slug": "free",
        "name": "Free",
        "description": "Free plan with basic features",
        "price": 0,
        "currency": "NPR",
        "billing_cycle": "lifetime",
        "priority": 997,
    },
    {
        "slug": "early-bird-lifetime",
        "name": "Early Bird",
        "description": "Special early bird offer",
        "price": 0,
        "currency": "NPR",
        "billing_cycle": "lifetime",
        "priority": 998,
    },
    {
        "slug": "starter-yearly",
        "name": "Starter",
        "description": "Perfect for small teams getting started",
        "price": 299,
        "currency": "NPR",
        "billing_cycle": "yearly",
        "priority": 999,
    },
    {
        "slug": "pro-yearly",
        "name": "Pro",
        "description": "Advanced features for growing teams",
        "price": 499,
        "currency": "NPR",
        "billing_cycle": "yearly",
        "priority": 1000,
    },
    {
        "slug": "business-yearly",
        "name": "Business",
        "description": "Complete solution for large organizations",
        "price": 999,
        "currency": "NPR",
        "billing_cycle": "yearly",
        "priority": 1001,
    },
]

# Plan slug -> feature -> stored value ("-1" = unlimited)
PLAN_LIMITS: dict[str, dict[str, str]] = {
    "free": {
        "team_members": "5",
        "workspaces": "1",
        "connections_per_workspace": "1",
        "api_rate_limit": "60",
        "unique_visitors": "1000",
        "data_retention_days": "7",
        "priority_support": "false",
    },
    "early-bird-lifetime": {
        "team_members": "-1",
        "workspaces": "-1",
        "connections_per_workspace": "-1",
        "api_rate_limit": "600",
        "unique_visitors": "100000",
        "data_retention_days": "90",
        "priority_support": "true",
    },
    "starter-yearly": {
        "team_members": "10",
        "workspaces": "3",
        "connections_per_workspace": "3",
        "api_rate_limit": "120",
        "unique_visitors": "10000",
        "data_retention_days": "30",
        "priority_support": "false",
    },
    "pro-yearly": {
        "team_members": "50",
        "workspaces": "10",
        "connections_per_workspace": "10",
        "api_rate_limit": "300",
        "unique_visitors": "50000",
        "data_retention_days": "90",
        "priority_support": "true",
    },
    "business-yearly": {
        "team_members": "-1",
        "workspaces": "-1",
        "connections_per_workspace": "-1",
        "api_rate_limit": "600",
        "unique_visitors": "-1",
        "data_retention_days": "365",
        "priority_support": "true",
    },
}


def check_limit_consistency(limit: PlanLimit, registry_entry: PlanFeature) -> None:
    """Reject a PlanLimit whose type or tracking scope disagrees with the registry."""
    if limit.type != registry_entry.type or limit.tracking_scope != registry_entry.tracking_scope:
        raise CatalogError(
            f"PlanLimit for '{limit.feature}' on plan {limit.plan_id} is "
            f"{limit.type}/{limit.tracking_scope}, registry says "
            f"{registry_entry.type}/{registry_entry.tracking_scope}"
        )


async def seed_catalog(session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    """Insert the feature registry, plans and plan limits if they don't already exist.

    Plan limit type and tracking scope are always copied from the registry;
    an existing limit that disagrees raises CatalogError.
    """
    factory = session_factory or get_session_factory()

    async with factory() as session:
        registry: dict[str, PlanFeature] = {}
        for feature_data in FEATURES:
            result = await session.execute(
                select(PlanFeature).where(PlanFeature.feature == feature_data["feature"])
            )
            entry = result.scalar_one_or_none()
            if entry is None:
                entry = PlanFeature(**feature_data)
                session.add(entry)
            registry[feature_data["feature"]] = entry

        for plan_data in PLANS:
            result = await session.execute(select(Plan).where(Plan.slug == plan_data["slug"]))
            plan = result.scalar_one_or_none()
            if plan is None:
                plan = Plan(**plan_data)
                session.add(plan)
                await session.flush()

            result = await session.execute(select(PlanLimit).where(PlanLimit.plan_id == plan.id))
            existing = {limit.feature: limit for limit in result.scalars()}

            for feature, value in PLAN_LIMITS[plan.slug].items():
                entry = registry[feature]
                limit = existing.get(feature)
                if limit is None:
                    session.add(
                        PlanLimit(
                            plan_id=plan.id,
                            feature=feature,
                            type=entry.type,
                            tracking_scope=entry.tracking_scope,
                            value=value,
                        )
                    )
                else:
                    check_limit_consistency(limit, entry)

        await session.commit()

    logger.info("catalog_seeded", features=len(FEATURES), plans=len(PLANS))
