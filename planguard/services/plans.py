"""PlanService: attaching plans to organizations, plan status and trials.

Two notions of "active" are used throughout:

- status-active: status=active, not revoked, started, and not past ends_at.
  This is what has_active_plan() reports; a trial that has run out stays
  status-active until the expiry sweep transitions it.
- entitlement-active: status-active and, when both trial dates are set,
  now within [trial_start, trial_end]. Only entitlement-active plans grant
  features and limits.
"""

from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, delete, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from planguard.core.cache import Cache, NullCache
from planguard.core.clock import ensure_utc, utcnow
from planguard.core.exceptions import CatalogError
from planguard.db.models.feature_override import OrganizationFeatureOverride
from planguard.db.models.organization_plan import OrganizationPlan
from planguard.db.models.plan import Plan
from planguard.domain.features import encode_value
from planguard.domain.plans import (
    NO_TRIAL,
    PlanStatus,
    TrialInfo,
    append_note,
    plan_ends_at,
    trial_info,
)

logger = structlog.get_logger(__name__)


def status_active_filter(now: datetime) -> ColumnElement[bool]:
    """OrganizationPlan rows whose status says they are running at now."""
    return and_(
        OrganizationPlan.status == PlanStatus.ACTIVE.value,
        OrganizationPlan.is_revoked.is_(False),
        OrganizationPlan.started_at <= now,
        or_(OrganizationPlan.ends_at.is_(None), OrganizationPlan.ends_at > now),
    )


def entitlement_active_filter(now: datetime) -> ColumnElement[bool]:
    """Status-active rows that are also inside their trial window, if they have one."""
    return and_(
        status_active_filter(now),
        or_(
            OrganizationPlan.trial_start.is_(None),
            OrganizationPlan.trial_end.is_(None),
            and_(OrganizationPlan.trial_start <= now, OrganizationPlan.trial_end >= now),
        ),
    )


class PlanService:
    """Plan attachment, plan status queries and feature overrides for organizations."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], cache: Cache | None = None):
        self.session_factory = session_factory
        self.cache = cache or NullCache()

    async def get_plan(self, slug: str) -> Plan | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Plan).where(Plan.slug == slug, Plan.is_active.is_(True))
            )
            return result.scalar_one_or_none()

    async def attach_plan(
        self,
        organization_id: int,
        plan_slug: str,
        trial_days: int | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> OrganizationPlan | None:
        """Attach a plan to an organization.

        Rules:
            - Attaching free while free is already active returns the existing row.
            - Attaching free while a paid plan is active is skipped (returns None).
            - Attaching a paid plan cancels any active free plan.

        Args:
            organization_id: Organization receiving the plan
            plan_slug: Slug of an active catalog plan
            trial_days: When set, the plan starts as a trial of that many days
            notes: Free-form note stored on the row
            now: Current time (for deterministic testing)

        Raises:
            CatalogError: Unknown or inactive plan slug
        """
        now = now or utcnow()
        log = logger.bind(organization_id=organization_id, plan_slug=plan_slug)

        async with self.session_factory() as session:
            result = await session.execute(
                select(Plan).where(Plan.slug == plan_slug, Plan.is_active.is_(True))
            )
            plan = result.scalar_one_or_none()
            if plan is None:
                raise CatalogError(f"Unknown plan '{plan_slug}'")

            result = await session.execute(
                select(OrganizationPlan)
                .where(
                    OrganizationPlan.organization_id == organization_id,
                    status_active_filter(now),
                )
                .order_by(OrganizationPlan.id)
            )
            active = list(result.unique().scalars())

            if plan.is_free:
                for existing in active:
                    if existing.plan.is_free:
                        log.info("free_plan_already_attached", organization_plan_id=existing.id)
                        return existing
                if active:
                    log.info("free_plan_skipped_paid_plan_active")
                    return None
            else:
                for existing in active:
                    if existing.plan.is_free:
                        existing.status = PlanStatus.CANCELLED.value
                        existing.ends_at = now
                        existing.notes = append_note(existing.notes, f"Replaced by {plan.slug}")
                        log.info("free_plan_cancelled", organization_plan_id=existing.id)

            organization_plan = OrganizationPlan(
                organization_id=organization_id,
                plan_id=plan.id,
                status=PlanStatus.ACTIVE.value,
                is_revoked=False,
                started_at=now,
                ends_at=plan_ends_at(plan.billing_cycle, now),
                notes=notes,
            )
            if trial_days:
                organization_plan.trial_start = now
                organization_plan.trial_end = now + timedelta(days=trial_days)

            session.add(organization_plan)
            await session.commit()
            await session.refresh(organization_plan)

        await self.clear_plan_cache(organization_id)
        log.info("plan_attached", organization_plan_id=organization_plan.id, trial_days=trial_days)
        return organization_plan

    async def get_active_plans(
        self,
        organization_id: int,
        now: datetime | None = None,
    ) -> list[OrganizationPlan]:
        """Entitlement-active plans, highest priority first."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(OrganizationPlan)
                .join(Plan, Plan.id == OrganizationPlan.plan_id)
                .where(
                    OrganizationPlan.organization_id == organization_id,
                    entitlement_active_filter(now),
                )
                .order_by(Plan.priority.desc(), OrganizationPlan.id)
            )
            return list(result.unique().scalars())

    async def has_active_plan(self, organization_id: int, now: datetime | None = None) -> bool:
        """Whether any plan is status-active (trial end alone does not deactivate)."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    exists().where(
                        OrganizationPlan.organization_id == organization_id,
                        status_active_filter(now),
                    )
                )
            )
            return bool(result.scalar())

    async def has_entitled_plan(self, organization_id: int, now: datetime | None = None) -> bool:
        """Whether any plan currently grants entitlements."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    exists().where(
                        OrganizationPlan.organization_id == organization_id,
                        entitlement_active_filter(now),
                    )
                )
            )
            return bool(result.scalar())

    async def get_current_plan(
        self,
        organization_id: int,
        now: datetime | None = None,
    ) -> OrganizationPlan | None:
        """Highest-priority status-active plan."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(OrganizationPlan)
                .join(Plan, Plan.id == OrganizationPlan.plan_id)
                .where(
                    OrganizationPlan.organization_id == organization_id,
                    status_active_filter(now),
                )
                .order_by(Plan.priority.desc(), OrganizationPlan.id)
                .limit(1)
            )
            return result.unique().scalar_one_or_none()

    async def get_trial_info(self, organization_id: int, now: datetime | None = None) -> TrialInfo:
        now = now or utcnow()
        current = await self.get_current_plan(organization_id, now)
        if current is None:
            return NO_TRIAL
        return trial_info(ensure_utc(current.trial_start), ensure_utc(current.trial_end), now)

    async def is_in_trial(self, organization_id: int, now: datetime | None = None) -> bool:
        return (await self.get_trial_info(organization_id, now)).is_in_trial

    async def is_trial_expired(self, organization_id: int, now: datetime | None = None) -> bool:
        return (await self.get_trial_info(organization_id, now)).is_trial_expired

    async def set_feature_override(
        self,
        organization_id: int,
        feature: str,
        value: bool | int | str,
        expires_at: datetime | None = None,
    ) -> OrganizationFeatureOverride:
        """Create or replace the organization's override for a feature."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OrganizationFeatureOverride).where(
                    OrganizationFeatureOverride.organization_id == organization_id,
                    OrganizationFeatureOverride.feature == feature,
                )
            )
            override = result.scalar_one_or_none()
            if override is None:
                override = OrganizationFeatureOverride(organization_id=organization_id, feature=feature)
                session.add(override)
            override.value = encode_value(value)
            override.expires_at = expires_at
            await session.commit()
            await session.refresh(override)

        await self.clear_plan_cache(organization_id)
        logger.info(
            "feature_override_set",
            organization_id=organization_id,
            feature=feature,
            value=override.value,
            expires_at=expires_at,
        )
        return override

    async def remove_feature_override(self, organization_id: int, feature: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(OrganizationFeatureOverride).where(
                    OrganizationFeatureOverride.organization_id == organization_id,
                    OrganizationFeatureOverride.feature == feature,
                )
            )
            await session.commit()

        await self.clear_plan_cache(organization_id)
        return result.rowcount > 0

    async def clear_plan_cache(self, organization_id: int) -> None:
        """Drop cached features, limits, usage and the yearly anchor for an organization."""
        await self.cache.forget_organization(organization_id)
