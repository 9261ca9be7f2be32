"""Tests for the trial expiry and trial warning sweeps."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from planguard.core.cache import EntitlementCache
from planguard.db.models import OrganizationPlan
from planguard.services.plans import PlanService
from planguard.services.trials import TrialSweeper, trial_warning_key

pytestmark = pytest.mark.unit

NOW = datetime(2030, 6, 15, 10, 30, 0, tzinfo=UTC)


@pytest.fixture
async def trial_plan(tenants):
    return await tenants.plan("trial-pro", {"workspaces": "5"})


async def make_trial(tenants, plan, trial_end, name="owner"):
    owner = await tenants.user(name)
    org = await tenants.organization(owner)
    organization_plan = await tenants.attach(
        org,
        plan,
        trial_start=trial_end - timedelta(days=14),
        trial_end=trial_end,
        notes="Signup",
    )
    return org, organization_plan


async def load(session_factory, organization_plan_id):
    async with session_factory() as session:
        return await session.get(OrganizationPlan, organization_plan_id)


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


async def test_expire_trial_plans(catalog, tenants, session_factory, null_cache, trial_plan):
    org, organization_plan = await make_trial(tenants, trial_plan, NOW - timedelta(hours=1))
    sweeper = TrialSweeper(session_factory, null_cache)

    expired = await sweeper.expire_trial_plans(now=NOW)

    assert [entry.organization_plan_id for entry in expired] == [organization_plan.id]
    row = await load(session_factory, organization_plan.id)
    assert row.status == "expired"
    assert row.is_revoked is True
    assert row.notes == "Signup\nTrial period expired"
    assert await PlanService(session_factory).has_active_plan(org.id, now=NOW) is False


async def test_expire_is_idempotent(catalog, tenants, session_factory, null_cache, trial_plan):
    await make_trial(tenants, trial_plan, NOW - timedelta(hours=1))
    sweeper = TrialSweeper(session_factory, null_cache)

    assert len(await sweeper.expire_trial_plans(now=NOW)) == 1
    assert await sweeper.expire_trial_plans(now=NOW) == []


async def test_expire_dry_run_changes_nothing(catalog, tenants, session_factory, null_cache, trial_plan):
    _, organization_plan = await make_trial(tenants, trial_plan, NOW - timedelta(hours=1))
    sweeper = TrialSweeper(session_factory, null_cache)

    assert len(await sweeper.expire_trial_plans(now=NOW, dry_run=True)) == 1

    row = await load(session_factory, organization_plan.id)
    assert row.status == "active"
    assert row.is_revoked is False


async def test_running_trials_and_plain_plans_are_untouched(catalog, tenants, session_factory, null_cache, trial_plan):
    await make_trial(tenants, trial_plan, NOW + timedelta(days=3))
    owner = await tenants.user("paying")
    org = await tenants.organization(owner)
    await tenants.attach(org, trial_plan)
    sweeper = TrialSweeper(session_factory, null_cache)

    assert await sweeper.expire_trial_plans(now=NOW) == []


async def test_expire_clears_organization_cache(catalog, tenants, session_factory, redis, redis_cache, trial_plan):
    org, _ = await make_trial(tenants, trial_plan, NOW - timedelta(hours=1))
    await redis.set(f"org_{org.id}_limit_workspaces", "5")

    await TrialSweeper(session_factory, redis_cache).expire_trial_plans(now=NOW)

    assert await redis.get(f"org_{org.id}_limit_workspaces") is None


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------


async def test_warning_sent_once_per_trial_end(catalog, tenants, session_factory, redis_cache, settings, trial_plan):
    trial_end = NOW + timedelta(days=2, hours=3)
    org, _ = await make_trial(tenants, trial_plan, trial_end)
    notifier = AsyncMock()
    sweeper = TrialSweeper(session_factory, redis_cache, notifier, settings)

    sent = await sweeper.send_trial_expiration_warnings(now=NOW)
    again = await sweeper.send_trial_expiration_warnings(now=NOW + timedelta(hours=1))

    assert [warning.organization_id for warning in sent] == [org.id]
    assert sent[0].days_remaining == 2
    assert sent[0].owner_email.startswith("owner")
    assert again == []
    notifier.notify.assert_awaited_once()


async def test_warning_window_is_the_whole_target_day(catalog, tenants, session_factory, redis_cache, trial_plan):
    early, _ = await make_trial(tenants, trial_plan, datetime(2030, 6, 17, 0, 5, tzinfo=UTC), "early")
    late, _ = await make_trial(tenants, trial_plan, datetime(2030, 6, 17, 23, 55, tzinfo=UTC), "late")
    await make_trial(tenants, trial_plan, datetime(2030, 6, 18, 0, 5, tzinfo=UTC), "next")
    notifier = AsyncMock()

    sent = await TrialSweeper(session_factory, redis_cache, notifier).send_trial_expiration_warnings(
        days=2, now=NOW
    )

    assert {warning.organization_id for warning in sent} == {early.id, late.id}


async def test_one_warning_per_organization_per_run(catalog, tenants, session_factory, redis_cache, trial_plan):
    trial_end = NOW + timedelta(days=2)
    org, _ = await make_trial(tenants, trial_plan, trial_end)
    second_plan = await tenants.plan("trial-addon", {"workspaces": "1"})
    await tenants.attach(org, second_plan, trial_start=NOW, trial_end=trial_end + timedelta(hours=1))
    notifier = AsyncMock()

    sent = await TrialSweeper(session_factory, redis_cache, notifier).send_trial_expiration_warnings(now=NOW)

    assert len(sent) == 1


async def test_warning_dry_run_does_not_claim(catalog, tenants, session_factory, redis, redis_cache, trial_plan):
    trial_end = NOW + timedelta(days=2)
    org, _ = await make_trial(tenants, trial_plan, trial_end)
    notifier = AsyncMock()
    sweeper = TrialSweeper(session_factory, redis_cache, notifier)

    assert len(await sweeper.send_trial_expiration_warnings(now=NOW, dry_run=True)) == 1

    notifier.notify.assert_not_awaited()
    assert await redis.get(trial_warning_key(org.id, trial_end)) is None


async def test_failed_notification_releases_claim(catalog, tenants, session_factory, redis, redis_cache, trial_plan):
    trial_end = NOW + timedelta(days=2)
    org, _ = await make_trial(tenants, trial_plan, trial_end)
    notifier = AsyncMock()
    notifier.notify.side_effect = RuntimeError("smtp down")
    sweeper = TrialSweeper(session_factory, redis_cache, notifier)

    assert await sweeper.send_trial_expiration_warnings(now=NOW) == []
    assert await redis.get(trial_warning_key(org.id, trial_end)) is None

    notifier.notify.side_effect = None
    assert len(await sweeper.send_trial_expiration_warnings(now=NOW)) == 1


async def test_warning_claim_fails_closed_when_redis_is_down(catalog, tenants, session_factory, trial_plan):
    await make_trial(tenants, trial_plan, NOW + timedelta(days=2))
    broken = AsyncMock()
    broken.set.side_effect = RedisConnectionError("connection refused")
    notifier = AsyncMock()

    sent = await TrialSweeper(session_factory, EntitlementCache(broken), notifier).send_trial_expiration_warnings(
        now=NOW
    )

    assert sent == []
    notifier.notify.assert_not_awaited()


async def test_default_notifier_logs(catalog, tenants, session_factory, null_cache, trial_plan):
    await make_trial(tenants, trial_plan, NOW + timedelta(days=2))

    sent = await TrialSweeper(session_factory, null_cache).send_trial_expiration_warnings(now=NOW)

    assert len(sent) == 1
