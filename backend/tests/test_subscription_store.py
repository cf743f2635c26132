from datetime import timedelta

import pytest
from sqlalchemy import delete, select

from conftest import NOW, fixed_clock
from subscription_engine.core.exceptions import SubscriptionError
from subscription_engine.models.audit_log import AuditLog
from subscription_engine.models.plan import Plan
from subscription_engine.models.subscription import Subscription
from subscription_engine.services import cache_service
from subscription_engine.services.plan_service import PlanService, next_tier, tier_rank
from subscription_engine.services.subscription_store import SubscriptionStore


def test_tier_order():
    assert tier_rank("free") < tier_rank("basic") < tier_rank("pro")
    assert next_tier("free") == "basic"
    assert next_tier("basic") == "pro"
    assert next_tier("pro") is None
    assert next_tier("admin") is None


async def test_default_plans_are_seeded_once(db):
    assert await PlanService(db).ensure_default_plans() == 0
    plans = await PlanService(db).list_plans()
    assert [p.code for p in plans] == ["free", "basic", "pro"]
    assert len(await PlanService(db).list_plans(include_inactive=True)) == 4


async def test_seeding_missing_plan_invalidates_plan_cache(db):
    cache_service.set(cache_service.key_plan_list(), {"plans": []}, 60)
    assert cache_service.get(cache_service.key_plan_list()) == {"plans": []}

    await db.execute(delete(Plan).where(Plan.code == "admin"))
    await db.commit()

    assert await PlanService(db).ensure_default_plans() == 1
    assert cache_service.get(cache_service.key_plan_list()) is None


async def test_quota_snapshot_falls_back_to_free(db):
    tier, quotas = await SubscriptionStore(db, clock=fixed_clock()).quota_snapshot_for("nobody")
    assert tier == "free"
    assert quotas["daily_create_quota"] == 5


async def test_quota_snapshot_uses_subscription(db, make_subscription):
    await make_subscription("u1", "basic")
    tier, quotas = await SubscriptionStore(db, clock=fixed_clock()).quota_snapshot_for("u1")
    assert tier == "basic"
    assert quotas["max_graph_nodes"] == -1


async def test_overdue_active_subscription_is_not_current(db, make_subscription):
    await make_subscription("u1", "basic", end_date=NOW - timedelta(minutes=1))
    store = SubscriptionStore(db, clock=fixed_clock())
    assert await store.get_current("u1") is None
    assert (await store.quota_snapshot_for("u1"))[0] == "free"


async def test_create_free_subscription_is_active(db):
    store = SubscriptionStore(db, clock=fixed_clock())
    plan = await PlanService(db).get_plan_by_tier("free")
    sub = await store.create_subscription("u1", plan)
    assert sub.status == "active"
    assert sub.end_date == NOW + timedelta(days=30)


async def test_create_paid_subscription_reuses_pending(db):
    store = SubscriptionStore(db, clock=fixed_clock())
    basic = await PlanService(db).get_plan_by_tier("basic")
    pro = await PlanService(db).get_plan_by_tier("pro")
    first = await store.create_subscription("u1", basic, payment_method="wechat_pay")
    second = await store.create_subscription("u1", pro, payment_method="wechat_pay")
    assert first.id == second.id
    assert second.status == "pending"
    assert second.tier == "pro"
    assert second.quotas["daily_create_quota"] == 100


async def test_create_rejects_same_or_lower_tier(db, make_subscription):
    await make_subscription("u1", "pro")
    store = SubscriptionStore(db, clock=fixed_clock())
    with pytest.raises(SubscriptionError):
        await store.create_subscription("u1", await PlanService(db).get_plan_by_tier("basic"))
    with pytest.raises(SubscriptionError):
        await store.create_subscription("u1", await PlanService(db).get_plan_by_tier("pro"))


async def test_cancel_keeps_access_until_end_date(db, make_subscription, fake_redis):
    created = await make_subscription("u1", "basic")
    cache_service.set(cache_service.key_current_subscription("u1"), {"tier": "basic"})
    store = SubscriptionStore(db, clock=fixed_clock())

    sub = await store.cancel("u1", reason="太贵了")
    assert sub.status == "cancelled"
    assert sub.auto_renew is False
    assert sub.cancelled_at == NOW
    assert cache_service.get(cache_service.key_current_subscription("u1")) is None

    current = await store.get_current("u1")
    assert current.id == created.id
    assert (await store.quota_snapshot_for("u1"))[0] == "basic"

    entries = (await db.execute(select(AuditLog).where(AuditLog.action == "subscription_cancelled"))).scalars().all()
    assert len(entries) == 1

    with pytest.raises(SubscriptionError):
        await store.cancel("u1")


async def test_cancel_without_subscription(db):
    with pytest.raises(SubscriptionError):
        await SubscriptionStore(db, clock=fixed_clock()).cancel("nobody")


async def test_expire_overdue(db, make_subscription):
    await make_subscription("u1", "basic", end_date=NOW + timedelta(days=1))
    await make_subscription("u2", "pro", status="cancelled", end_date=NOW + timedelta(hours=1))
    await make_subscription("u3", "pro", end_date=NOW + timedelta(days=10))

    store = SubscriptionStore(db, clock=fixed_clock(NOW + timedelta(days=2)))
    expired = await store.expire_overdue()
    assert sorted(expired) == ["u1", "u2"]
    assert await store.get_current("u1") is None
    assert (await store.get_current("u3")).status == "active"
    assert await store.expire_overdue() == []

    history = await store.list_for_user("u2")
    assert [s.status for s in history] == ["expired"]


async def test_expire_overdue_skips_subscription_renewed_after_scan(session_factory, make_subscription, monkeypatch):
    sub = await make_subscription("u1", "basic", end_date=NOW + timedelta(days=1))
    later = NOW + timedelta(days=2)

    async with session_factory() as db:
        store = SubscriptionStore(db, clock=fixed_clock(later))
        scan = store._overdue_candidates

        async def scan_then_renew(now):
            rows = await scan(now)
            # 扫描之后、写入之前，续费在另一个事务中提交
            async with session_factory() as other:
                renewed = await other.get(Subscription, sub.id)
                renewed.end_date = later + timedelta(days=30)
                await other.commit()
            return rows

        monkeypatch.setattr(store, "_overdue_candidates", scan_then_renew)
        assert await store.expire_overdue() == []

    async with session_factory() as db:
        assert (await db.get(Subscription, sub.id)).status == "active"
        expired = (await db.execute(select(AuditLog).where(AuditLog.action == "subscription_expired"))).scalars().all()
        assert expired == []
