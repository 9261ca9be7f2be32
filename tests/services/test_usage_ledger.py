"""Tests for metered consumption against the usage ledger."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from planguard.db.models import UsageTracking
from planguard.services.entitlements import ConsumeOutcome, EntitlementService

pytestmark = pytest.mark.unit

NOW = datetime(2030, 6, 15, 10, 30, 0, tzinfo=UTC)


@pytest.fixture
def entitlements(session_factory, null_cache, settings):
    return EntitlementService(session_factory, null_cache, settings)


@pytest.fixture
async def org(tenants):
    owner = await tenants.user("owner")
    return await tenants.organization(owner)


async def buckets(session_factory, organization_id, feature):
    async with session_factory() as session:
        result = await session.execute(
            select(UsageTracking)
            .where(UsageTracking.organization_id == organization_id, UsageTracking.feature == feature)
            .order_by(UsageTracking.id)
        )
        return list(result.scalars())


async def test_consume_then_unconsume_restores_usage(catalog, tenants, entitlements, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "5"}))
    ledger = entitlements.ledger

    assert await entitlements.consume_feature(org.id, "workspaces", 2, now=NOW)
    assert await ledger.get_current_usage(org.id, "workspaces", now=NOW) == 2

    await entitlements.unconsume_feature(org.id, "workspaces", 2, now=NOW)
    assert await ledger.get_current_usage(org.id, "workspaces", now=NOW) == 0


async def test_unconsume_never_goes_negative(catalog, tenants, entitlements, session_factory, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "5"}))
    await entitlements.consume_feature(org.id, "workspaces", 1, now=NOW)

    await entitlements.unconsume_feature(org.id, "workspaces", 3, now=NOW)

    assert await entitlements.ledger.get_current_usage(org.id, "workspaces", now=NOW) == 1
    rows = await buckets(session_factory, org.id, "workspaces")
    assert [row.current_usage for row in rows] == [1]


async def test_unconsume_without_bucket_is_noop(catalog, tenants, entitlements, session_factory, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "5"}))

    await entitlements.unconsume_feature(org.id, "workspaces", 1, now=NOW)

    assert await buckets(session_factory, org.id, "workspaces") == []


async def test_consume_stops_at_limit(catalog, tenants, entitlements, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "2"}))

    assert await entitlements.try_consume_feature(org.id, "workspaces", now=NOW) == ConsumeOutcome.CONSUMED
    assert await entitlements.try_consume_feature(org.id, "workspaces", now=NOW) == ConsumeOutcome.CONSUMED
    assert await entitlements.try_consume_feature(org.id, "workspaces", now=NOW) == (
        ConsumeOutcome.LIMIT_EXCEEDED
    )
    assert await entitlements.ledger.get_current_usage(org.id, "workspaces", now=NOW) == 2


async def test_concurrent_consumes_never_overrun_limit(catalog, tenants, entitlements, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "1"}))

    results = await asyncio.gather(
        *(entitlements.consume_feature(org.id, "workspaces", 1, now=NOW) for _ in range(3))
    )

    assert results.count(True) == 1
    assert await entitlements.ledger.get_current_usage(org.id, "workspaces", now=NOW) == 1


async def test_concurrent_consumes_near_limit_fill_it_exactly(catalog, tenants, entitlements, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "3"}))
    assert await entitlements.consume_feature(org.id, "workspaces", 2, now=NOW)

    results = await asyncio.gather(
        *(entitlements.consume_feature(org.id, "workspaces", 1, now=NOW) for _ in range(4))
    )

    assert results.count(True) == 1
    assert await entitlements.ledger.get_current_usage(org.id, "workspaces", now=NOW) == 3


async def test_increment_refuses_past_capacity(catalog, tenants, entitlements, org):
    ledger = entitlements.ledger
    registry_entry = await ledger.get_registry_entry("workspaces")

    assert await ledger.increment(org.id, registry_entry, 2, now=NOW, capacity=2)
    assert not await ledger.increment(org.id, registry_entry, 1, now=NOW, capacity=2)
    assert await ledger.increment(org.id, registry_entry, 5, now=NOW)

    assert await ledger.get_current_usage(org.id, "workspaces", now=NOW) == 7


async def test_concurrent_first_consumes_share_one_bucket(catalog, tenants, entitlements, session_factory, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "5"}))

    results = await asyncio.gather(
        *(entitlements.consume_feature(org.id, "workspaces", 1, now=NOW) for _ in range(2))
    )

    assert results == [True, True]
    rows = await buckets(session_factory, org.id, "workspaces")
    assert [row.current_usage for row in rows] == [2]

    await entitlements.unconsume_feature(org.id, "workspaces", 2, now=NOW)
    assert await entitlements.ledger.get_current_usage(org.id, "workspaces", now=NOW) == 0


async def test_duplicate_lifetime_bucket_is_rejected(catalog, tenants, org):
    await tenants.usage(org, "workspaces", 1)

    with pytest.raises(IntegrityError):
        await tenants.usage(org, "workspaces", 1)


async def test_duplicate_period_bucket_is_rejected(catalog, tenants, org):
    start = datetime(2030, 6, 1, tzinfo=UTC)
    end = datetime(2030, 7, 1, tzinfo=UTC)
    await tenants.usage(org, "unique_visitors", 1, "monthly", period_starts_at=start, period_ends_at=end)

    with pytest.raises(IntegrityError):
        await tenants.usage(org, "unique_visitors", 1, "monthly", period_starts_at=start, period_ends_at=end)


async def test_unknown_feature_is_reported(catalog, entitlements, org):
    assert await entitlements.try_consume_feature(org.id, "teleporters", now=NOW) == (
        ConsumeOutcome.UNKNOWN_FEATURE
    )
    assert await entitlements.consume_feature(org.id, "teleporters", now=NOW) is False


async def test_monthly_usage_resets_each_month(catalog, tenants, entitlements, session_factory, org):
    """Test a new calendar month opens a fresh bucket and old rows are kept."""
    await tenants.attach(org, await tenants.plan("mau", {"unique_visitors": "100"}))
    ledger = entitlements.ledger
    next_month = datetime(2030, 7, 2, 9, 0, 0, tzinfo=UTC)

    assert await entitlements.consume_feature(org.id, "unique_visitors", 60, now=NOW)
    assert not await entitlements.consume_feature(org.id, "unique_visitors", 50, now=NOW)

    assert await ledger.get_current_usage(org.id, "unique_visitors", now=next_month) == 0
    assert await entitlements.consume_feature(org.id, "unique_visitors", 50, now=next_month)

    rows = await buckets(session_factory, org.id, "unique_visitors")
    assert [row.current_usage for row in rows] == [60, 50]
    assert rows[0].period_type == "monthly"
    assert rows[0].period_starts_at.replace(tzinfo=UTC) == datetime(2030, 6, 1, tzinfo=UTC)
    assert rows[1].period_starts_at.replace(tzinfo=UTC) == datetime(2030, 7, 1, tzinfo=UTC)


async def test_lifetime_usage_never_resets(catalog, tenants, entitlements, session_factory, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "10"}))
    later = NOW + timedelta(days=400)
    await tenants.attach(org, await tenants.plan("ws-later", {"workspaces": "10"}), started_at=later)

    await entitlements.consume_feature(org.id, "workspaces", 3, now=NOW)
    await entitlements.consume_feature(org.id, "workspaces", 2, now=later)

    assert await entitlements.ledger.get_current_usage(org.id, "workspaces", now=later) == 5
    rows = await buckets(session_factory, org.id, "workspaces")
    assert len(rows) == 1
    assert rows[0].period_starts_at is None


async def test_workspace_scope_keys_buckets_by_workspace(catalog, tenants, entitlements, session_factory, org):
    await tenants.attach(org, await tenants.plan("conn", {"connections_per_workspace": "3"}))
    first = await tenants.workspace(org)
    second = await tenants.workspace(org)

    await entitlements.consume_feature(org.id, "connections_per_workspace", 3, first.id, now=NOW)
    assert not await entitlements.can_use(org.id, "connections_per_workspace", 1, first.id, now=NOW)
    assert await entitlements.can_use(org.id, "connections_per_workspace", 3, second.id, now=NOW)

    rows = await buckets(session_factory, org.id, "connections_per_workspace")
    assert [row.workspace_id for row in rows] == [first.id]


async def test_organization_scope_ignores_workspace(catalog, tenants, entitlements, session_factory, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "5"}))
    workspace = await tenants.workspace(org)

    await entitlements.consume_feature(org.id, "workspaces", 1, workspace.id, now=NOW)

    rows = await buckets(session_factory, org.id, "workspaces")
    assert rows[0].workspace_id is None
    assert await entitlements.ledger.get_current_usage(org.id, "workspaces", now=NOW) == 1


async def test_storage_error_is_reported_not_raised(catalog, tenants, entitlements, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "5"}))
    failure = OperationalError("UPDATE usage_tracking", {}, Exception("database is locked"))

    with patch.object(entitlements.ledger, "increment", AsyncMock(side_effect=failure)):
        outcome = await entitlements.try_consume_feature(org.id, "workspaces", now=NOW)

    assert outcome == ConsumeOutcome.STORAGE_ERROR
    assert await entitlements.ledger.get_current_usage(org.id, "workspaces", now=NOW) == 0


async def test_unconsume_swallows_storage_error(catalog, tenants, entitlements, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "5"}))
    failure = OperationalError("UPDATE usage_tracking", {}, Exception("database is locked"))

    with patch.object(entitlements.ledger, "decrement", AsyncMock(side_effect=failure)):
        await entitlements.unconsume_feature(org.id, "workspaces", 1, now=NOW)


async def test_yearly_anchor_uses_earliest_running_plan(catalog, tenants, entitlements, org):
    await tenants.attach(
        org, await tenants.plan("first", {"workspaces": "1"}), started_at=datetime(2029, 3, 10, 15, 0, tzinfo=UTC)
    )
    await tenants.attach(org, await tenants.plan("second", {"workspaces": "1"}))

    anchor = await entitlements.ledger.get_yearly_anchor(org.id, now=NOW)

    assert anchor == datetime(2029, 3, 10, tzinfo=UTC)


async def test_yearly_anchor_defaults_to_today(catalog, entitlements, org):
    anchor = await entitlements.ledger.get_yearly_anchor(org.id, now=NOW)

    assert anchor == datetime(2030, 6, 15, tzinfo=UTC)


async def test_cached_usage_is_invalidated_on_consume(catalog, tenants, session_factory, redis, redis_cache, settings, org):
    await tenants.attach(org, await tenants.plan("ws", {"workspaces": "5"}))
    entitlements = EntitlementService(session_factory, redis_cache, settings)

    assert await entitlements.ledger.get_current_usage(org.id, "workspaces", now=NOW) == 0
    assert await redis.get(f"org_{org.id}_usage_workspaces") == "0"

    await entitlements.consume_feature(org.id, "workspaces", 2, now=NOW)

    assert await entitlements.ledger.get_current_usage(org.id, "workspaces", now=NOW) == 2
