"""
订阅记录存储：订阅的创建、查询、取消与到期
状态只向前流转：pending → active → cancelled / expired；已取消或已到期的订阅不会恢复，重新购买会创建新订阅。
支付成功后的开通与续费由 ReconciliationService 完成。
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.config import settings
from subscription_engine.core.database import utcnow
from subscription_engine.core.exceptions import SubscriptionError
from subscription_engine.models.plan import Plan
from subscription_engine.models.subscription import Subscription
from subscription_engine.services import cache_service
from subscription_engine.services.audit_service import add_audit_entry
from subscription_engine.services.plan_service import PlanService, default_quotas, tier_rank

logger = logging.getLogger(__name__)


def usable_condition(now: datetime):
    """可用订阅：active，或已取消但未到期"""
    return or_(
        Subscription.status == "active",
        and_(Subscription.status == "cancelled", Subscription.end_date > now),
    )


class SubscriptionStore:
    """订阅记录存储"""

    def __init__(self, db: AsyncSession, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or utcnow

    async def get(self, subscription_id: int) -> Optional[Subscription]:
        return await self.db.get(Subscription, subscription_id)

    async def list_for_user(self, user_id: str) -> List[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == str(user_id))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        return list(result.scalars().all())

    async def get_current(self, user_id: str) -> Optional[Subscription]:
        """当前可用订阅，多条时取到期最晚的一条"""
        now = self.clock()
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == str(user_id), usable_condition(now))
            .order_by(Subscription.end_date.desc())
            .limit(1)
        )
        sub = result.scalar_one_or_none()
        if sub and sub.status == "active" and sub.end_date <= now:
            # 到期扫描尚未运行，按到期处理
            return None
        return sub

    async def get_pending(self, user_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == str(user_id), Subscription.status == "pending")
            .order_by(Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def quota_snapshot_for(self, user_id: str) -> Tuple[str, dict]:
        """返回 (tier, 配额快照)。无可用订阅时使用免费套餐。"""
        sub = await self.get_current(user_id)
        if sub and sub.quotas:
            return sub.tier, dict(sub.quotas)
        free_plan = await PlanService(self.db).get_plan_by_tier("free")
        if free_plan:
            return "free", dict(free_plan.quotas)
        return "free", default_quotas("free")

    async def create_subscription(
        self,
        user_id: str,
        plan: Plan,
        payment_method: Optional[str] = None,
    ) -> Subscription:
        """
        用户选择套餐时创建订阅。免费套餐直接 active；收费套餐为 pending，等待支付成功后由对账开通。
        已有同级或更高等级的 active 订阅时拒绝（同级续费走 PaymentService 的续费流程）。
        已有 pending 订阅时复用并切换到新套餐。不提交事务。
        """
        user_id = str(user_id)
        now = self.clock()
        current = await self.get_current(user_id)
        if current and current.status == "active" and tier_rank(current.tier) >= tier_rank(plan.tier):
            raise SubscriptionError("已有同级或更高等级的有效订阅")

        if plan.tier == "free":
            sub = Subscription(
                user_id=user_id,
                plan_id=plan.id,
                tier=plan.tier,
                status="active",
                start_date=now,
                end_date=now + timedelta(days=settings.BILLING_PERIOD_DAYS),
                payment_method=None,
                auto_renew=False,
                quotas=dict(plan.quotas),
            )
            self.db.add(sub)
            await self.db.flush()
            return sub

        sub = await self.get_pending(user_id)
        if sub:
            sub.plan_id = plan.id
            sub.tier = plan.tier
            sub.quotas = dict(plan.quotas)
            sub.payment_method = payment_method
        else:
            # pending 订阅尚未生效，起止时间在开通时重算
            sub = Subscription(
                user_id=user_id,
                plan_id=plan.id,
                tier=plan.tier,
                status="pending",
                start_date=now,
                end_date=now,
                payment_method=payment_method,
                auto_renew=True,
                quotas=dict(plan.quotas),
            )
            self.db.add(sub)
        await self.db.flush()
        return sub

    async def cancel(self, user_id: str, reason: Optional[str] = None, ip: Optional[str] = None) -> Subscription:
        """取消自动续费：状态置为 cancelled，到期前仍可使用"""
        user_id = str(user_id)
        sub = await self.get_current(user_id)
        if not sub or sub.status != "active":
            raise SubscriptionError("没有可取消的有效订阅")
        now = self.clock()
        sub.status = "cancelled"
        sub.cancelled_at = now
        sub.auto_renew = False
        add_audit_entry(
            self.db,
            user_id,
            "subscription_cancelled",
            resource_type="subscription",
            resource_id=str(sub.id),
            detail={"reason": reason, "end_date": sub.end_date.isoformat()},
            ip=ip,
        )
        await self.db.commit()
        logger.info("订阅已取消 user_id=%s subscription_id=%s end_date=%s", user_id, sub.id, sub.end_date)
        await asyncio.to_thread(cache_service.invalidate_entitlements, user_id)
        return sub

    async def _overdue_candidates(self, now: datetime) -> List[Tuple[int, str, str, datetime]]:
        result = await self.db.execute(
            select(Subscription.id, Subscription.user_id, Subscription.status, Subscription.end_date).where(
                Subscription.status.in_(("active", "cancelled")),
                Subscription.end_date <= now,
            )
        )
        rows = [tuple(row) for row in result.all()]
        await self.db.commit()
        return rows

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[str]:
        """
        把已过 end_date 的 active / cancelled 订阅置为 expired。返回受影响的用户 ID。
        逐条条件更新，扫描之后被续费（end_date 已顺延）或状态已变化的订阅保持不变。
        """
        now = now or self.clock()
        candidates = await self._overdue_candidates(now)
        if not candidates:
            return []
        user_ids = []
        expired = 0
        for sub_id, user_id, previous, end_date in candidates:
            claimed = await self.db.execute(
                update(Subscription)
                .where(
                    Subscription.id == sub_id,
                    Subscription.status == previous,
                    Subscription.end_date <= now,
                )
                .values(status="expired", updated_at=now)
                .execution_options(synchronize_session="fetch")
            )
            if claimed.rowcount != 1:
                logger.info("订阅在扫描后已变更，跳过到期 subscription_id=%s", sub_id)
                continue
            add_audit_entry(
                self.db,
                user_id,
                "subscription_expired",
                resource_type="subscription",
                resource_id=str(sub_id),
                detail={"previous_status": previous, "end_date": end_date.isoformat()},
            )
            expired += 1
            if user_id not in user_ids:
                user_ids.append(user_id)
        await self.db.commit()
        logger.info("到期订阅已处理: %s 条，用户 %s 个", expired, len(user_ids))
        for uid in user_ids:
            await asyncio.to_thread(cache_service.invalidate_entitlements, uid)
        return user_ids
