"""Shared test fixtures for all test groups."""

import os
from datetime import UTC, datetime

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from planguard.core.cache import EntitlementCache, NullCache
from planguard.core.config import Settings
from planguard.db.base import Base, make_session_factory
from planguard.db.models import (
    Invitation,
    Organization,
    OrganizationFeatureOverride,
    OrganizationPlan,
    OrganizationUser,
    Plan,
    PlanFeature,
    PlanLimit,
    UsageTracking,
    User,
    Workspace,
    WorkspaceFeatureLimit,
    WorkspaceUser,
)
from planguard.db.seed import seed_catalog


@pytest.fixture
async def redis():
    """Create a fake Redis instance for testing."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """Async engine on a throwaway SQLite file (TEST_DATABASE_URL overrides).

    Creates all tables before the test and drops them after.
    """
    url = os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'planguard.db'}")
    engine = create_async_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def null_cache() -> NullCache:
    return NullCache()


@pytest.fixture
def redis_cache(redis) -> EntitlementCache:
    return EntitlementCache(redis)


@pytest.fixture
async def catalog(session_factory):
    """Seed the default feature registry and plans."""
    await seed_catalog(session_factory)


class TenantBuilder:
    """Inserts users, organizations, workspaces and plans straight into the database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    async def _add(self, obj):
        async with self.session_factory() as session:
            session.add(obj)
            await session.commit()
            await session.refresh(obj)
        return obj

    async def user(self, name: str | None = None) -> User:
        n = self._next()
        name = name or f"user{n}"
        return await self._add(User(name=name, email=f"{name}-{n}@example.com"))

    async def organization(self, owner: User, name: str | None = None) -> Organization:
        n = self._next()
        org = await self._add(Organization(name=name or f"Org {n}", slug=f"org-{n}", owner_id=owner.id))
        await self._add(OrganizationUser(organization_id=org.id, user_id=owner.id, role="owner"))
        return org

    async def member(self, organization: Organization, user: User, role: str = "member") -> OrganizationUser:
        return await self._add(OrganizationUser(organization_id=organization.id, user_id=user.id, role=role))

    async def workspace(self, organization: Organization, name: str | None = None) -> Workspace:
        return await self._add(Workspace(organization_id=organization.id, name=name or f"Workspace {self._next()}"))

    async def workspace_member(self, workspace: Workspace, user: User, role: str) -> WorkspaceUser:
        return await self._add(WorkspaceUser(workspace_id=workspace.id, user_id=user.id, role=role))

    async def feature(
        self,
        feature: str,
        type: str = "limit",
        tracking_scope: str = "organization",
        period: str = "lifetime",
    ) -> PlanFeature:
        return await self._add(
            PlanFeature(feature=feature, name=feature.title(), type=type, tracking_scope=tracking_scope, period=period)
        )

    async def plan(
        self,
        slug: str,
        limits: dict[str, str],
        price: int = 100,
        priority: int = 0,
        billing_cycle: str = "yearly",
    ) -> Plan:
        """Create a plan; limit type/scope are copied from the registry."""
        plan = await self._add(
            Plan(slug=slug, name=slug.title(), price=price, priority=priority, billing_cycle=billing_cycle)
        )
        async with self.session_factory() as session:
            for feature, value in limits.items():
                entry = await session.scalar(select(PlanFeature).where(PlanFeature.feature == feature))
                session.add(
                    PlanLimit(
                        plan_id=plan.id,
                        feature=feature,
                        type=entry.type,
                        tracking_scope=entry.tracking_scope,
                        value=value,
                    )
                )
            await session.commit()
        return plan

    async def attach(
        self,
        organization: Organization,
        plan: Plan,
        started_at: datetime = datetime(2030, 1, 1, tzinfo=UTC),
        **fields,
    ) -> OrganizationPlan:
        """Attach a plan row directly (no business rules)."""
        return await self._add(
            OrganizationPlan(
                organization_id=organization.id,
                plan_id=plan.id,
                status=fields.pop("status", "active"),
                is_revoked=fields.pop("is_revoked", False),
                started_at=started_at,
                **fields,
            )
        )

    async def override(
        self,
        organization: Organization,
        feature: str,
        value: str,
        expires_at: datetime | None = None,
    ) -> OrganizationFeatureOverride:
        return await self._add(
            OrganizationFeatureOverride(
                organization_id=organization.id, feature=feature, value=value, expires_at=expires_at
            )
        )

    async def invitation(
        self,
        organization: Organization,
        expires_at: datetime,
        status: str = "pending",
    ) -> Invitation:
        return await self._add(
            Invitation(
                organization_id=organization.id,
                email=f"invitee{self._next()}@example.com",
                role="member",
                workspace_assignments=[],
                status=status,
                expires_at=expires_at,
            )
        )

    async def allocation(self, workspace: Workspace, feature: str, allocated: int) -> WorkspaceFeatureLimit:
        return await self._add(WorkspaceFeatureLimit(workspace_id=workspace.id, feature=feature, allocated=allocated))

    async def usage(
        self,
        organization: Organization,
        feature: str,
        current_usage: int,
        period_type: str = "lifetime",
        workspace: Workspace | None = None,
        period_starts_at: datetime | None = None,
        period_ends_at: datetime | None = None,
    ) -> UsageTracking:
        return await self._add(
            UsageTracking(
                organization_id=organization.id,
                workspace_id=workspace.id if workspace else None,
                feature=feature,
                period_type=period_type,
                period_starts_at=period_starts_at,
                period_ends_at=period_ends_at,
                current_usage=current_usage,
            )
        )


@pytest.fixture
def tenants(session_factory) -> TenantBuilder:
    return TenantBuilder(session_factory)
