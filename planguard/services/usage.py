"""Usage ledger: period buckets of feature consumption per organization.

Buckets are UsageTracking rows keyed by organization, optional workspace,
feature and period. Bounded periods get a new row each period and the
current row is the one whose period_ends_at is still in the future;
lifetime features keep a single row forever. Old rows are never deleted.
"""

from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from planguard.core.cache import Cache, NullCache, has_feature_key, limit_key, usage_key, yearly_anchor_key
from planguard.core.clock import ensure_utc, utcnow
from planguard.core.config import Settings, get_settings
from planguard.db.models.invitation import Invitation
from planguard.db.models.organization import OrganizationUser
from planguard.db.models.organization_plan import OrganizationPlan
from planguard.db.models.plan_feature import PlanFeature
from planguard.db.models.usage_tracking import UsageTracking
from planguard.domain.features import TEAM_MEMBERS, Period, TrackingScope
from planguard.domain.invitations import InvitationStatus
from planguard.domain.periods import period_bounds, start_of_day
from planguard.domain.plans import PlanStatus

logger = structlog.get_logger(__name__)


def effective_workspace(registry_entry: PlanFeature | None, workspace_id: int | None) -> int | None:
    """Workspace a bucket is keyed on: only workspace-scoped features track per workspace."""
    if registry_entry is None or workspace_id is None:
        return None
    if registry_entry.tracking_scope != TrackingScope.WORKSPACE.value:
        return None
    return workspace_id


class UsageLedger:
    """Reads and adjusts usage buckets. Limit checks live in EntitlementService."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Cache | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.cache = cache or NullCache()
        self.settings = settings or get_settings()

    async def get_registry_entry(self, feature: str) -> PlanFeature | None:
        async with self.session_factory() as session:
            return await self._registry_entry(session, feature)

    async def _registry_entry(self, session: AsyncSession, feature: str) -> PlanFeature | None:
        result = await session.execute(
            select(PlanFeature).where(PlanFeature.feature == feature, PlanFeature.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def get_yearly_anchor(self, organization_id: int, now: datetime | None = None) -> datetime:
        """Start of day of the earliest running plan's start, or today when there is none."""
        now = now or utcnow()

        async def compute() -> str:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(func.min(OrganizationPlan.started_at)).where(
                        OrganizationPlan.organization_id == organization_id,
                        OrganizationPlan.status == PlanStatus.ACTIVE.value,
                        OrganizationPlan.is_revoked.is_(False),
                    )
                )
                earliest = ensure_utc(result.scalar())
            return start_of_day(earliest or now).isoformat()

        anchor = await self.cache.remember(
            yearly_anchor_key(organization_id), self.settings.anchor_cache_ttl, compute
        )
        return datetime.fromisoformat(anchor)

    async def get_current_usage(
        self,
        organization_id: int,
        feature: str,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Usage in the current period.

        team_members is always organization-wide: members + pending, unexpired
        invitations + any manual lifetime adjustment. Other features sum the
        current buckets, narrowed to the workspace for workspace-scoped features.
        """
        now = now or utcnow()

        async with self.session_factory() as session:
            registry_entry = await self._registry_entry(session, feature)

        if feature == TEAM_MEMBERS:
            workspace_id = None
        else:
            workspace_id = effective_workspace(registry_entry, workspace_id)

        async def compute() -> int:
            async with self.session_factory() as session:
                if feature == TEAM_MEMBERS:
                    return await self._team_member_usage(session, organization_id, now)
                if registry_entry is None:
                    return 0
                return await self._bucket_usage(session, organization_id, registry_entry, workspace_id, now)

        return await self.cache.remember(
            usage_key(organization_id, feature, workspace_id), self.settings.usage_cache_ttl, compute
        )

    async def _team_member_usage(self, session: AsyncSession, organization_id: int, now: datetime) -> int:
        return int(await session.scalar(select(self._team_member_expression(organization_id, now))) or 0)

    def _team_member_expression(self, organization_id: int, now: datetime):
        members = select(func.count(OrganizationUser.id)).where(
            OrganizationUser.organization_id == organization_id
        )
        pending = select(func.count(Invitation.id)).where(
            Invitation.organization_id == organization_id,
            Invitation.status == InvitationStatus.PENDING.value,
            Invitation.expires_at > now,
        )
        counted = aliased(UsageTracking)
        manual = select(func.coalesce(func.sum(counted.current_usage), 0)).where(
            counted.organization_id == organization_id,
            counted.feature == TEAM_MEMBERS,
            counted.period_type == Period.LIFETIME.value,
        )
        return members.scalar_subquery() + pending.scalar_subquery() + manual.scalar_subquery()

    async def _bucket_usage(
        self,
        session: AsyncSession,
        organization_id: int,
        registry_entry: PlanFeature,
        workspace_id: int | None,
        now: datetime,
    ) -> int:
        query = select(self._bucket_expression(organization_id, registry_entry, workspace_id, now))
        return int(await session.scalar(query) or 0)

    def _bucket_expression(
        self,
        organization_id: int,
        registry_entry: PlanFeature,
        workspace_id: int | None,
        now: datetime,
    ):
        # Aliased so it stays uncorrelated inside UPDATE usage_tracking
        counted = aliased(UsageTracking)
        query = select(func.coalesce(func.sum(counted.current_usage), 0)).where(
            counted.organization_id == organization_id,
            counted.feature == registry_entry.feature,
        )
        if workspace_id is not None:
            query = query.where(counted.workspace_id == workspace_id)
        if registry_entry.period != Period.LIFETIME.value:
            query = query.where(counted.period_ends_at > now)
        return query.scalar_subquery()

    def _usage_expression(
        self,
        organization_id: int,
        registry_entry: PlanFeature,
        workspace_id: int | None,
        now: datetime,
    ):
        """SQL expression for the usage get_current_usage() reports."""
        if registry_entry.feature == TEAM_MEMBERS:
            return self._team_member_expression(organization_id, now)
        return self._bucket_expression(organization_id, registry_entry, workspace_id, now)

    def _current_bucket_query(
        self,
        organization_id: int,
        registry_entry: PlanFeature,
        workspace_id: int | None,
        now: datetime,
    ):
        query = select(UsageTracking.id).where(
            UsageTracking.organization_id == organization_id,
            UsageTracking.feature == registry_entry.feature,
            UsageTracking.period_type == registry_entry.period,
        )
        if workspace_id is None:
            query = query.where(UsageTracking.workspace_id.is_(None))
        else:
            query = query.where(UsageTracking.workspace_id == workspace_id)
        # Match on "still running", never on exact boundaries
        if registry_entry.period != Period.LIFETIME.value:
            query = query.where(UsageTracking.period_ends_at > now)
        return query.order_by(UsageTracking.id).limit(1).with_for_update()

    async def _find_or_create_bucket(
        self,
        session: AsyncSession,
        organization_id: int,
        registry_entry: PlanFeature,
        workspace_id: int | None,
        now: datetime,
        bounds: tuple[datetime, datetime] | None,
    ) -> int:
        """Id of the current bucket, locked for the rest of the transaction."""
        query = self._current_bucket_query(organization_id, registry_entry, workspace_id, now)
        bucket_id = (await session.execute(query)).scalar_one_or_none()
        if bucket_id is not None:
            return bucket_id

        bucket = UsageTracking(
            organization_id=organization_id,
            workspace_id=workspace_id,
            feature=registry_entry.feature,
            period_type=registry_entry.period,
            period_starts_at=bounds[0] if bounds else None,
            period_ends_at=bounds[1] if bounds else None,
            current_usage=0,
        )
        session.add(bucket)
        try:
            await session.flush()
        except IntegrityError:
            # A concurrent first consumption created the bucket
            await session.rollback()
            logger.debug(
                "usage_bucket_exists",
                organization_id=organization_id,
                feature=registry_entry.feature,
                workspace_id=workspace_id,
            )
            return (await session.execute(query)).scalar_one()
        return bucket.id

    async def increment(
        self,
        organization_id: int,
        registry_entry: PlanFeature,
        amount: int,
        workspace_id: int | None = None,
        now: datetime | None = None,
        capacity: int | None = None,
    ) -> bool:
        """Add amount to the current bucket, creating it on first use.

        With a capacity the update only applies while usage + amount stays
        within it, checked in the same statement that writes the counter.
        Pass None for unlimited features.

        Returns False (no change) when the capacity would be exceeded.

        Raises:
            SQLAlchemyError: The transaction was rolled back
        """
        now = now or utcnow()
        workspace_id = effective_workspace(registry_entry, workspace_id)

        anchor = None
        if registry_entry.period == Period.YEARLY.value:
            anchor = await self.get_yearly_anchor(organization_id, now)
        bounds = period_bounds(registry_entry.period, now, anchor)

        async with self.session_factory() as session:
            try:
                bucket_id = await self._find_or_create_bucket(
                    session, organization_id, registry_entry, workspace_id, now, bounds
                )

                # Atomic counter update, never read-modify-write
                stmt = (
                    update(UsageTracking)
                    .where(UsageTracking.id == bucket_id)
                    .values(current_usage=UsageTracking.current_usage + amount, updated_at=now)
                )
                if capacity is not None:
                    usage = self._usage_expression(organization_id, registry_entry, workspace_id, now)
                    stmt = stmt.where(usage + amount <= capacity)
                result = await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise

        return result.rowcount > 0

    async def decrement(
        self,
        organization_id: int,
        registry_entry: PlanFeature,
        amount: int,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Subtract amount from the current bucket if it holds at least amount.

        Returns False (no change) when there is no bucket or too little usage.

        Raises:
            SQLAlchemyError: The transaction was rolled back
        """
        now = now or utcnow()
        workspace_id = effective_workspace(registry_entry, workspace_id)

        async with self.session_factory() as session:
            try:
                query = self._current_bucket_query(organization_id, registry_entry, workspace_id, now)
                bucket_id = (await session.execute(query)).scalar_one_or_none()
                if bucket_id is None:
                    return False

                result = await session.execute(
                    update(UsageTracking)
                    .where(UsageTracking.id == bucket_id, UsageTracking.current_usage >= amount)
                    .values(current_usage=UsageTracking.current_usage - amount, updated_at=now)
                )
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise

        return result.rowcount > 0

    async def forget(self, organization_id: int, feature: str, workspace_id: int | None = None) -> None:
        """Invalidate cached usage, limit and availability for a feature."""
        keys = [
            has_feature_key(organization_id, feature),
            limit_key(organization_id, feature),
            usage_key(organization_id, feature),
        ]
        if workspace_id is not None:
            keys.append(usage_key(organization_id, feature, workspace_id))
        await self.cache.forget(*keys)
