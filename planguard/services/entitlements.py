"""EntitlementService: feature availability, effective limits and metered consumption.

Resolution order for a feature:
1. The organization's override, if one exists and has not expired
   (decoded with the registry type; it bypasses plan aggregation).
2. Every entitlement-active plan that defines the feature, combined with
   the configured aggregation rule (unlimited always dominates).

Nothing here raises for an undefined feature: has_feature() is False and
get_limit() is None. ensure_can_use() is the only raising entry point.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from planguard.core.cache import Cache, NullCache, has_feature_key, limit_key
from planguard.core.clock import utcnow
from planguard.core.config import Settings, get_settings
from planguard.core.exceptions import LimitExceededError
from planguard.db.models.feature_override import OrganizationFeatureOverride
from planguard.db.models.organization_plan import OrganizationPlan
from planguard.db.models.plan import Plan, PlanLimit
from planguard.db.models.plan_feature import PlanFeature
from planguard.db.models.workspace import WorkspaceFeatureLimit
from planguard.domain.aggregation import AggregationTable
from planguard.domain.features import (
    UNLIMITED,
    FeatureType,
    as_limit,
    decode_value,
    grants_feature,
)
from planguard.domain.plans import DenialReason
from planguard.services.plans import entitlement_active_filter
from planguard.services.usage import UsageLedger

logger = structlog.get_logger(__name__)


class ConsumeOutcome(StrEnum):
    CONSUMED = "consumed"
    LIMIT_EXCEEDED = "limit_exceeded"
    UNKNOWN_FEATURE = "unknown_feature"
    STORAGE_ERROR = "storage_error"


@dataclass
class FeatureUsage:
    """One row of an organization's usage summary."""

    feature: str
    name: str
    type: str
    has_feature: bool
    limit: int | None
    current_usage: int
    remaining: int
    percentage: float


class EntitlementService:
    """Answers "may this organization use this feature" and meters consumption."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Cache | None = None,
        settings: Settings | None = None,
        ledger: UsageLedger | None = None,
    ):
        self.session_factory = session_factory
        self.cache = cache or NullCache()
        self.settings = settings or get_settings()
        self.ledger = ledger or UsageLedger(session_factory, self.cache, self.settings)
        self.aggregation = AggregationTable.from_config(self.settings.feature_aggregation)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _registry_entry(self, session: AsyncSession, feature: str) -> PlanFeature | None:
        result = await session.execute(
            select(PlanFeature).where(PlanFeature.feature == feature, PlanFeature.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def _override(
        self,
        session: AsyncSession,
        organization_id: int,
        feature: str,
        now: datetime,
    ) -> OrganizationFeatureOverride | None:
        result = await session.execute(
            select(OrganizationFeatureOverride).where(
                OrganizationFeatureOverride.organization_id == organization_id,
                OrganizationFeatureOverride.feature == feature,
                or_(
                    OrganizationFeatureOverride.expires_at.is_(None),
                    OrganizationFeatureOverride.expires_at > now,
                ),
            )
        )
        return result.scalar_one_or_none()

    async def _plan_limits(
        self,
        session: AsyncSession,
        organization_id: int,
        feature: str,
        now: datetime,
    ) -> list[PlanLimit]:
        """PlanLimit rows for the feature from every entitlement-active plan, highest priority first."""
        result = await session.execute(
            select(PlanLimit)
            .join(OrganizationPlan, OrganizationPlan.plan_id == PlanLimit.plan_id)
            .join(Plan, Plan.id == PlanLimit.plan_id)
            .where(
                OrganizationPlan.organization_id == organization_id,
                PlanLimit.feature == feature,
                entitlement_active_filter(now),
            )
            .order_by(Plan.priority.desc(), OrganizationPlan.id)
        )
        return list(result.scalars())

    # ------------------------------------------------------------------
    # Availability and limits
    # ------------------------------------------------------------------

    async def has_feature(self, organization_id: int, feature: str, now: datetime | None = None) -> bool:
        """Whether any override or entitlement-active plan grants the feature.

        Cached per organization and feature, not per now: a cached answer
        is served for any now until the TTL lapses or the organization's
        keys are forgotten (plan changes and the trial sweep do both).
        """
        now = now or utcnow()

        async def compute() -> bool:
            async with self.session_factory() as session:
                registry_entry = await self._registry_entry(session, feature)
                override = await self._override(session, organization_id, feature, now)
                if override is not None and registry_entry is not None:
                    return grants_feature(decode_value(override.value, registry_entry.type))

                limits = await self._plan_limits(session, organization_id, feature, now)
                return any(grants_feature(limit.decoded) for limit in limits)

        return await self.cache.remember(
            has_feature_key(organization_id, feature), self.settings.feature_cache_ttl, compute
        )

    async def get_limit(self, organization_id: int, feature: str, now: datetime | None = None) -> int | None:
        """Effective limit: None when undefined, -1 when unlimited.

        Shares the caching rule of has_feature(): the key ignores now.
        """
        now = now or utcnow()

        async def compute() -> int | None:
            async with self.session_factory() as session:
                registry_entry = await self._registry_entry(session, feature)
                override = await self._override(session, organization_id, feature, now)
                if override is not None and registry_entry is not None:
                    return as_limit(decode_value(override.value, registry_entry.type))

                limits = await self._plan_limits(session, organization_id, feature, now)
                return self.aggregation.aggregate(
                    feature,
                    (limit.decoded for limit in limits if limit.type == FeatureType.LIMIT.value),
                )

        return await self.cache.remember(
            limit_key(organization_id, feature), self.settings.feature_cache_ttl, compute
        )

    async def _feature_type(self, organization_id: int, feature: str, now: datetime) -> str | None:
        """Type of the effective record: the override's registry type, else the first active plan's."""
        async with self.session_factory() as session:
            registry_entry = await self._registry_entry(session, feature)
            override = await self._override(session, organization_id, feature, now)
            if override is not None and registry_entry is not None:
                return registry_entry.type

            limits = await self._plan_limits(session, organization_id, feature, now)
            return limits[0].type if limits else None

    async def _workspace_allocation(self, workspace_id: int, feature: str) -> int | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WorkspaceFeatureLimit.allocated).where(
                    WorkspaceFeatureLimit.workspace_id == workspace_id,
                    WorkspaceFeatureLimit.feature == feature,
                )
            )
            return result.scalar_one_or_none()

    async def _effective_capacity(
        self,
        organization_id: int,
        feature: str,
        workspace_id: int | None,
        now: datetime,
    ) -> int | None:
        """Limit to check against: workspace allocation when one exists, else the org limit."""
        limit = await self.get_limit(organization_id, feature, now)
        if limit is None or limit == UNLIMITED:
            return limit
        if workspace_id is not None:
            allocated = await self._workspace_allocation(workspace_id, feature)
            if allocated is not None:
                return allocated
        return limit

    async def can_use(
        self,
        organization_id: int,
        feature: str,
        amount: int = 1,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Whether consuming amount more of the feature stays within the limit.

        Boolean features defer to has_feature(). An undefined limit denies,
        unlimited allows, and a workspace allocation replaces the org limit.
        """
        now = now or utcnow()

        feature_type = await self._feature_type(organization_id, feature, now)
        if feature_type is None:
            return False
        if feature_type == FeatureType.BOOLEAN.value:
            return await self.has_feature(organization_id, feature, now)

        capacity = await self._effective_capacity(organization_id, feature, workspace_id, now)
        if capacity is None:
            return False
        if capacity == UNLIMITED:
            return True

        usage = await self.ledger.get_current_usage(organization_id, feature, workspace_id, now)
        return usage + amount <= capacity

    async def ensure_can_use(
        self,
        organization_id: int,
        feature: str,
        amount: int = 1,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> None:
        """Raise LimitExceededError with current/limit figures unless can_use() allows it."""
        now = now or utcnow()
        if await self.can_use(organization_id, feature, amount, workspace_id, now):
            return

        current = await self.ledger.get_current_usage(organization_id, feature, workspace_id, now)
        limit = await self._effective_capacity(organization_id, feature, workspace_id, now)
        raise LimitExceededError(feature, current, limit)

    async def describe_denial(
        self,
        organization_id: int,
        feature: str,
        amount: int = 1,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> DenialReason:
        """Classify why can_use() refuses. An inactive plan is reported before any limit."""
        now = now or utcnow()
        if await self.can_use(organization_id, feature, amount, workspace_id, now):
            return DenialReason.NONE

        async with self.session_factory() as session:
            override = await self._override(session, organization_id, feature, now)
            entitled = await session.scalar(
                select(OrganizationPlan.id)
                .where(
                    OrganizationPlan.organization_id == organization_id,
                    entitlement_active_filter(now),
                )
                .limit(1)
            )

        if entitled is None and override is None:
            return DenialReason.PLAN_INACTIVE

        feature_type = await self._feature_type(organization_id, feature, now)
        if feature_type is None or feature_type == FeatureType.BOOLEAN.value:
            return DenialReason.FEATURE_UNAVAILABLE

        capacity = await self._effective_capacity(organization_id, feature, workspace_id, now)
        if capacity is None or capacity == 0:
            return DenialReason.FEATURE_UNAVAILABLE
        return DenialReason.LIMIT_EXCEEDED

    # ------------------------------------------------------------------
    # Metering
    # ------------------------------------------------------------------

    async def try_consume_feature(
        self,
        organization_id: int,
        feature: str,
        amount: int = 1,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> ConsumeOutcome:
        """Consume amount of a feature, reporting why it did not happen.

        Re-checks can_use() first, then the ledger enforces the same capacity
        inside the write so concurrent calls cannot overrun it. Storage errors
        roll back, are logged and reported as STORAGE_ERROR rather than raised.
        """
        now = now or utcnow()
        log = logger.bind(organization_id=organization_id, feature=feature, amount=amount)

        registry_entry = await self.ledger.get_registry_entry(feature)
        if registry_entry is None:
            log.warning("usage_consume_unknown_feature")
            return ConsumeOutcome.UNKNOWN_FEATURE

        if not await self.can_use(organization_id, feature, amount, workspace_id, now):
            log.info("usage_consume_denied", workspace_id=workspace_id)
            return ConsumeOutcome.LIMIT_EXCEEDED

        capacity = await self._consume_capacity(organization_id, feature, workspace_id, now)

        try:
            consumed = await self.ledger.increment(
                organization_id, registry_entry, amount, workspace_id, now, capacity=capacity
            )
        except SQLAlchemyError as e:
            log.error(
                "usage_consume_failed",
                workspace_id=workspace_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ConsumeOutcome.STORAGE_ERROR

        await self.ledger.forget(organization_id, feature, workspace_id)

        if not consumed:
            log.info("usage_consume_denied", workspace_id=workspace_id, capacity=capacity)
            return ConsumeOutcome.LIMIT_EXCEEDED
        return ConsumeOutcome.CONSUMED

    async def _consume_capacity(
        self,
        organization_id: int,
        feature: str,
        workspace_id: int | None,
        now: datetime,
    ) -> int | None:
        """Ceiling the ledger enforces on write; None when nothing bounds usage."""
        feature_type = await self._feature_type(organization_id, feature, now)
        if feature_type == FeatureType.BOOLEAN.value:
            return None

        capacity = await self._effective_capacity(organization_id, feature, workspace_id, now)
        if capacity == UNLIMITED:
            return None
        return capacity if capacity is not None else 0

    async def consume_feature(
        self,
        organization_id: int,
        feature: str,
        amount: int = 1,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> bool:
        outcome = await self.try_consume_feature(organization_id, feature, amount, workspace_id, now)
        return outcome == ConsumeOutcome.CONSUMED

    async def unconsume_feature(
        self,
        organization_id: int,
        feature: str,
        amount: int = 1,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> None:
        """Give back amount of a feature. No-op when usage is lower than amount."""
        now = now or utcnow()

        registry_entry = await self.ledger.get_registry_entry(feature)
        if registry_entry is None:
            return

        try:
            released = await self.ledger.decrement(organization_id, registry_entry, amount, workspace_id, now)
        except SQLAlchemyError as e:
            logger.error(
                "usage_unconsume_failed",
                organization_id=organization_id,
                feature=feature,
                amount=amount,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        if not released:
            logger.debug(
                "usage_unconsume_skipped",
                organization_id=organization_id,
                feature=feature,
                amount=amount,
            )

        await self.ledger.forget(organization_id, feature, workspace_id)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_remaining_usage(
        self,
        organization_id: int,
        feature: str,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Units left in the current period; -1 when unlimited, 0 when undefined."""
        now = now or utcnow()
        capacity = await self._effective_capacity(organization_id, feature, workspace_id, now)
        if capacity is None:
            return 0
        if capacity == UNLIMITED:
            return UNLIMITED
        usage = await self.ledger.get_current_usage(organization_id, feature, workspace_id, now)
        return max(capacity - usage, 0)

    async def get_usage_percentage(
        self,
        organization_id: int,
        feature: str,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> float:
        now = now or utcnow()
        capacity = await self._effective_capacity(organization_id, feature, workspace_id, now)
        if capacity is None or capacity <= 0:
            return 0.0
        usage = await self.ledger.get_current_usage(organization_id, feature, workspace_id, now)
        return round(min(usage / capacity * 100, 100.0), 2)

    async def get_usage_summary(
        self,
        organization_id: int,
        workspace_id: int | None = None,
        now: datetime | None = None,
    ) -> list[FeatureUsage]:
        """Availability, limit and usage for every registered feature."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(PlanFeature).where(PlanFeature.is_active.is_(True)).order_by(PlanFeature.id)
            )
            features = list(result.scalars())

        summary = []
        for entry in features:
            limit = await self.get_limit(organization_id, entry.feature, now)
            usage = await self.ledger.get_current_usage(organization_id, entry.feature, workspace_id, now)
            summary.append(
                FeatureUsage(
                    feature=entry.feature,
                    name=entry.name,
                    type=entry.type,
                    has_feature=await self.has_feature(organization_id, entry.feature, now),
                    limit=limit,
                    current_usage=usage,
                    remaining=await self.get_remaining_usage(organization_id, entry.feature, workspace_id, now),
                    percentage=await self.get_usage_percentage(organization_id, entry.feature, workspace_id, now),
                )
            )
        return summary
