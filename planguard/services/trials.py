"""Trial lifecycle sweeps.

Two scheduled jobs, both safe to re-run:

- expire_trial_plans: active, unrevoked plans whose trial_end has passed
  become expired and revoked. Plans without trial dates are never touched.
- send_trial_expiration_warnings: organizations whose trial ends N days
  from now get one warning per trial_end date, deduplicated with a
  SET NX claim on ``trial_warning:{organization_id}:{trial_end date}``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from planguard.core.cache import Cache, NullCache
from planguard.core.clock import ensure_utc, utcnow
from planguard.core.config import Settings, get_settings
from planguard.db.models.organization import Organization
from planguard.db.models.organization_plan import OrganizationPlan
from planguard.db.models.user import User
from planguard.domain.periods import end_of_day, start_of_day
from planguard.domain.plans import TRIAL_EXPIRED_NOTE, PlanStatus, append_note

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExpiredTrial:
    organization_plan_id: int
    organization_id: int
    plan_slug: str
    trial_end: datetime


@dataclass(frozen=True)
class TrialWarning:
    organization_id: int
    organization_name: str
    owner_id: int
    owner_email: str
    plan_slug: str
    trial_end: datetime
    days_remaining: int


class TrialWarningNotifier(Protocol):
    """Delivers a trial warning to the organization owner (mail, webhook, ...)."""

    async def notify(self, warning: TrialWarning) -> None: ...


class LoggingTrialWarningNotifier:
    """Default notifier: records the warning in the structured log."""

    async def notify(self, warning: TrialWarning) -> None:
        logger.info(
            "trial_warning_sent",
            organization_id=warning.organization_id,
            owner_email=warning.owner_email,
            plan_slug=warning.plan_slug,
            trial_end=warning.trial_end,
            days_remaining=warning.days_remaining,
        )


def trial_warning_key(organization_id: int, trial_end: datetime) -> str:
    return f"trial_warning:{organization_id}:{trial_end.date().isoformat()}"


class TrialSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Cache | None = None,
        notifier: TrialWarningNotifier | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.cache = cache or NullCache()
        self.notifier = notifier or LoggingTrialWarningNotifier()
        self.settings = settings or get_settings()

    async def expire_trial_plans(self, now: datetime | None = None, dry_run: bool = False) -> list[ExpiredTrial]:
        """Expire every running plan whose trial has ended.

        Args:
            now: Current time (for deterministic testing)
            dry_run: Report what would expire without changing anything

        Returns:
            The plans expired (or that would be, on a dry run)
        """
        now = now or utcnow()
        log = logger.bind(sweep="expire_trials", dry_run=dry_run)

        async with self.session_factory() as session:
            result = await session.execute(
                select(OrganizationPlan)
                .where(
                    OrganizationPlan.status == PlanStatus.ACTIVE.value,
                    OrganizationPlan.is_revoked.is_(False),
                    OrganizationPlan.trial_end.is_not(None),
                    OrganizationPlan.trial_end < now,
                )
                .order_by(OrganizationPlan.id)
            )
            candidates = list(result.unique().scalars())

            expired: list[ExpiredTrial] = []
            for organization_plan in candidates:
                entry = ExpiredTrial(
                    organization_plan_id=organization_plan.id,
                    organization_id=organization_plan.organization_id,
                    plan_slug=organization_plan.plan.slug,
                    trial_end=ensure_utc(organization_plan.trial_end),
                )

                if dry_run:
                    log.info("trial_plan_would_expire", organization_plan_id=entry.organization_plan_id)
                    expired.append(entry)
                    continue

                # Guarded update: a concurrent sweep that got there first matches nothing
                update_result = await session.execute(
                    update(OrganizationPlan)
                    .where(
                        OrganizationPlan.id == organization_plan.id,
                        OrganizationPlan.status == PlanStatus.ACTIVE.value,
                        OrganizationPlan.is_revoked.is_(False),
                    )
                    .values(
                        status=PlanStatus.EXPIRED.value,
                        is_revoked=True,
                        revoked_at=now,
                        ends_at=now,
                        notes=append_note(organization_plan.notes, TRIAL_EXPIRED_NOTE),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if update_result.rowcount:
                    expired.append(entry)
                    log.info(
                        "trial_plan_expired",
                        organization_plan_id=entry.organization_plan_id,
                        organization_id=entry.organization_id,
                        plan_slug=entry.plan_slug,
                    )

            if not dry_run:
                await session.commit()

        if not dry_run:
            for organization_id in {entry.organization_id for entry in expired}:
                await self.cache.forget_organization(organization_id)

        log.info("trial_expiry_sweep_completed", count=len(expired))
        return expired

    async def send_trial_expiration_warnings(
        self,
        days: int | None = None,
        now: datetime | None = None,
        dry_run: bool = False,
    ) -> list[TrialWarning]:
        """Warn owners whose trial ends on the day that is `days` from now.

        Args:
            days: Days ahead to look (defaults to settings.trial_warning_days)
            now: Current time (for deterministic testing)
            dry_run: Report who would be warned without notifying or claiming

        Returns:
            Warnings sent (or that would be, on a dry run)
        """
        now = now or utcnow()
        days = self.settings.trial_warning_days if days is None else days
        target = now + timedelta(days=days)
        window_start, window_end = start_of_day(target), end_of_day(target)
        log = logger.bind(sweep="trial_warnings", dry_run=dry_run, days=days)

        async with self.session_factory() as session:
            result = await session.execute(
                select(OrganizationPlan, Organization, User)
                .join(Organization, Organization.id == OrganizationPlan.organization_id)
                .join(User, User.id == Organization.owner_id)
                .where(
                    OrganizationPlan.status == PlanStatus.ACTIVE.value,
                    OrganizationPlan.is_revoked.is_(False),
                    OrganizationPlan.trial_end >= window_start,
                    OrganizationPlan.trial_end <= window_end,
                )
                .order_by(OrganizationPlan.id)
            )
            rows = list(result.unique().all())

        sent: list[TrialWarning] = []
        seen: set[int] = set()
        ttl = int(timedelta(days=days + 2).total_seconds())

        for organization_plan, organization, owner in rows:
            if organization.id in seen:
                continue
            seen.add(organization.id)

            trial_end = ensure_utc(organization_plan.trial_end)
            warning = TrialWarning(
                organization_id=organization.id,
                organization_name=organization.name,
                owner_id=owner.id,
                owner_email=owner.email,
                plan_slug=organization_plan.plan.slug,
                trial_end=trial_end,
                days_remaining=days,
            )

            if dry_run:
                log.info("trial_warning_would_send", organization_id=organization.id)
                sent.append(warning)
                continue

            key = trial_warning_key(organization.id, trial_end)
            if not await self.cache.claim(key, ttl):
                log.info("trial_warning_already_sent", organization_id=organization.id)
                continue

            try:
                await self.notifier.notify(warning)
            except Exception as e:
                # Release the claim so the next run retries this organization
                await self.cache.forget(key)
                log.error(
                    "trial_warning_failed",
                    organization_id=organization.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            sent.append(warning)

        log.info("trial_warning_sweep_completed", count=len(sent))
        return sent
