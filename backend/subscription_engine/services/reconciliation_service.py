"""
对账服务：把支付事件应用到支付记录与订阅，回调与查单走同一个 apply()

幂等：支付记录只会从 pending/processing 进入终态一次，靠带条件的 UPDATE 保证
（例外：本地已关闭的订单收到支付成功时仍入账，钱已扣款以网关为准）；
条件不满足（已被并发的回调或轮询处理）时返回 already_reconciled，不做任何修改。
支付记录、订阅与审计日志在同一事务内提交，任一步失败整体回滚。
"""
import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.config import settings
from subscription_engine.core.database import utcnow
from subscription_engine.core.exceptions import SubscriptionError
from subscription_engine.models.payment_record import (
    OPEN_PAYMENT_STATUSES,
    SUCCESS_CLAIMABLE_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
    PaymentRecord,
)
from subscription_engine.models.plan import Plan
from subscription_engine.models.subscription import Subscription
from subscription_engine.schemas.payment import (
    PaymentEvent,
    PaymentOutcome,
    ReconciliationResult,
    ReconcileStatus,
)
from subscription_engine.services import cache_service
from subscription_engine.services.audit_service import add_audit_entry
from subscription_engine.services.subscription_store import usable_condition

logger = logging.getLogger(__name__)

# 状态变更监听：(对账结果, 用户 ID)，提交后调用，至少一次，需自行幂等
StateChangeListener = Callable[[ReconciliationResult, str], Awaitable[None]]


async def invalidate_entitlements_listener(result: ReconciliationResult, user_id: str) -> None:
    """默认监听：使该用户的权益缓存失效"""
    await asyncio.to_thread(cache_service.invalidate_entitlements, user_id)


class ReconciliationService:
    """对账服务"""

    def __init__(
        self,
        db: AsyncSession,
        listeners: Optional[Iterable[StateChangeListener]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        billing_period_days: Optional[int] = None,
    ):
        self.db = db
        self.listeners: List[StateChangeListener] = (
            list(listeners) if listeners is not None else [invalidate_entitlements_listener]
        )
        self.clock = clock or utcnow
        self.period = timedelta(days=billing_period_days or settings.BILLING_PERIOD_DAYS)

    async def apply(self, event: PaymentEvent) -> ReconciliationResult:
        """应用一次支付事件。同一事件重复投递只有第一次生效。"""
        try:
            result, user_id = await self._apply(event)
        except Exception:
            await self.db.rollback()
            logger.exception("对账失败，已回滚 order_id=%s outcome=%s", event.order_id, event.outcome)
            raise
        if result.status == ReconcileStatus.APPLIED:
            await self._notify(result, user_id)
        return result

    async def _load_payment(self, order_id: str) -> Optional[PaymentRecord]:
        result = await self.db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _already(self, payment: PaymentRecord) -> ReconciliationResult:
        sub = await self.db.get(Subscription, payment.subscription_id, populate_existing=True)
        result = ReconciliationResult(
            status=ReconcileStatus.ALREADY_RECONCILED,
            order_id=payment.order_id,
            payment_status=payment.status,
            subscription_id=sub.id if sub else None,
            subscription_status=sub.status if sub else None,
            end_date=sub.end_date if sub else None,
        )
        await self.db.commit()
        return result

    async def _apply(self, event: PaymentEvent) -> Tuple[ReconciliationResult, Optional[str]]:
        now = self.clock()
        payment = await self._load_payment(event.order_id)
        if payment is None:
            await self.db.commit()
            logger.warning("对账：订单不存在 order_id=%s source=%s", event.order_id, event.source)
            return ReconciliationResult(status=ReconcileStatus.UNKNOWN_ORDER, order_id=event.order_id), None

        success = event.outcome == PaymentOutcome.SUCCESS
        late_payment = success and payment.status == "cancelled"
        if payment.status in TERMINAL_PAYMENT_STATUSES and not late_payment:
            logger.info(
                "对账：订单已处理，忽略重复事件 order_id=%s status=%s source=%s",
                payment.order_id, payment.status, event.source,
            )
            return await self._already(payment), None

        if event.outcome == PaymentOutcome.PENDING:
            result = ReconciliationResult(
                status=ReconcileStatus.STILL_PENDING,
                order_id=payment.order_id,
                payment_status=payment.status,
                subscription_id=payment.subscription_id,
            )
            await self.db.commit()
            return result, None

        if late_payment:
            logger.error(
                "对账：订单已在本地关闭但网关报告支付成功，按网关结果入账 order_id=%s user_id=%s close_reason=%s source=%s",
                payment.order_id, payment.user_id, payment.failure_reason, event.source,
            )

        values = {"updated_at": now}
        if success:
            values.update(
                status="completed",
                transaction_id=event.transaction_id,
                paid_at=event.paid_at or now,
                amount_paid=event.amount_paid if event.amount_paid is not None else payment.amount,
                failure_reason=None,
            )
        else:
            values.update(
                status="failed",
                failure_reason=(event.failure_reason or "支付失败")[:255],
            )
            if event.transaction_id:
                values["transaction_id"] = event.transaction_id

        # 条件更新：只有仍可入账的记录会被修改，并发的回调/轮询只有一个能成功
        claimed = await self.db.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.id == payment.id,
                PaymentRecord.status.in_(SUCCESS_CLAIMABLE_STATUSES if success else OPEN_PAYMENT_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            logger.info("对账：订单已被并发处理 order_id=%s source=%s", payment.order_id, event.source)
            payment = await self._load_payment(event.order_id)
            return await self._already(payment), None
        await self.db.refresh(payment)

        if success:
            sub, detail = await self._activate(payment, event, now)
            if late_payment:
                detail["late_payment"] = True
            add_audit_entry(
                self.db,
                payment.user_id,
                "payment_completed",
                resource_type="payment",
                resource_id=payment.order_id,
                detail=detail,
            )
            add_audit_entry(
                self.db,
                payment.user_id,
                "subscription_activated",
                resource_type="subscription",
                resource_id=str(sub.id),
                detail={
                    "mode": detail["mode"],
                    "tier": sub.tier,
                    "end_date": sub.end_date.isoformat(),
                    "order_id": payment.order_id,
                },
            )
        else:
            sub = await self.db.get(Subscription, payment.subscription_id)
            add_audit_entry(
                self.db,
                payment.user_id,
                "payment_failed",
                resource_type="payment",
                resource_id=payment.order_id,
                detail={"reason": payment.failure_reason, "source": event.source},
            )

        result = ReconciliationResult(
            status=ReconcileStatus.APPLIED,
            order_id=payment.order_id,
            payment_status=payment.status,
            subscription_id=sub.id if sub else None,
            subscription_status=sub.status if sub else None,
            end_date=sub.end_date if sub else None,
        )
        user_id = payment.user_id
        await self.db.commit()
        if success:
            logger.info(
                "对账：支付成功已入账 order_id=%s user_id=%s subscription_id=%s end_date=%s source=%s",
                result.order_id, user_id, result.subscription_id, result.end_date, event.source,
            )
        else:
            logger.info(
                "对账：支付失败已记录 order_id=%s user_id=%s reason=%s source=%s",
                result.order_id, user_id, payment.failure_reason, event.source,
            )
        return result, user_id

    async def _supersede_others(self, user_id: str, keep_id: Optional[int], now: datetime) -> Optional[datetime]:
        """把该用户其他可用订阅置为 expired，返回其中最晚的 end_date"""
        stmt = select(Subscription).where(Subscription.user_id == user_id, usable_condition(now))
        if keep_id is not None:
            stmt = stmt.where(Subscription.id != keep_id)
        others = list((await self.db.execute(stmt.with_for_update())).scalars().all())
        latest = None
        for other in others:
            if latest is None or other.end_date > latest:
                latest = other.end_date
            other.status = "expired"
            other.auto_renew = False
            other.next_billing_date = None
        return latest

    async def _activate(self, payment: PaymentRecord, event: PaymentEvent, now: datetime) -> Tuple[Subscription, dict]:
        """支付成功后开通或续费，同一事务内完成，不提交"""
        sub = await self.db.get(
            Subscription, payment.subscription_id, populate_existing=True, with_for_update=True
        )
        if sub is None:
            raise SubscriptionError(f"支付记录关联的订阅不存在 order_id={payment.order_id}")
        plan = await self.db.get(Plan, payment.plan_id)
        if plan is None:
            raise SubscriptionError(f"支付记录关联的套餐不存在 order_id={payment.order_id}")

        detail = {
            "amount": str(payment.amount),
            "amount_paid": str(payment.amount_paid) if payment.amount_paid is not None else None,
            "transaction_id": payment.transaction_id,
            "source": event.source,
            "previous_status": sub.status,
        }
        if event.amount_paid is not None and Decimal(event.amount_paid) != Decimal(payment.amount):
            # 以网关为准照常入账，记录差异供人工核对
            logger.warning(
                "对账：实付金额与订单金额不一致 order_id=%s amount=%s paid=%s",
                payment.order_id, payment.amount, event.amount_paid,
            )
            detail["amount_mismatch"] = True

        if sub.status in ("cancelled", "expired"):
            # 已取消/已到期的订阅不会恢复，新建一条订阅
            base = max(now, sub.end_date)
            latest = await self._supersede_others(payment.user_id, None, now)
            if latest and latest > base:
                base = latest
            old_id = sub.id
            sub = Subscription(
                user_id=payment.user_id,
                plan_id=plan.id,
                tier=plan.tier,
                status="active",
                start_date=now,
                end_date=base + self.period,
                payment_method=payment.payment_method,
                auto_renew=True,
                quotas=dict(plan.quotas),
                metadata_={"replaces_subscription_id": old_id},
            )
            self.db.add(sub)
            await self.db.flush()
            payment.subscription_id = sub.id
            detail["mode"] = "recreated"
        elif sub.status == "pending":
            latest = await self._supersede_others(payment.user_id, sub.id, now)
            base = max(now, latest) if latest else now
            sub.status = "active"
            sub.start_date = now
            sub.end_date = base + self.period
            detail["mode"] = "activated"
        elif sub.status == "suspended":
            # 暂停中的订阅只顺延到期时间，恢复由运营处理
            base = max(now, sub.end_date)
            sub.end_date = base + self.period
            detail["mode"] = "extended_suspended"
            logger.warning("对账：订阅处于暂停状态，仅顺延到期时间 subscription_id=%s", sub.id)
        else:
            # active：从当前到期时间与现在中较晚者顺延，提前续费不损失已付时长
            base = max(now, sub.end_date)
            sub.end_date = base + self.period
            detail["mode"] = "renewed"

        sub.plan_id = plan.id
        sub.tier = plan.tier
        sub.quotas = dict(plan.quotas)
        sub.last_payment_id = payment.id
        sub.payment_method = payment.payment_method or sub.payment_method
        sub.next_billing_date = sub.end_date if sub.auto_renew else None
        sub.updated_at = now
        payment.billing_period_start = base
        payment.billing_period_end = sub.end_date
        await self.db.flush()
        return sub, detail

    async def close_expired(self, order_id: str, reason: str = "二维码已过期") -> ReconciliationResult:
        """二维码过期未支付：支付记录置为 cancelled。与支付成功竞争同一条件更新，先到者生效。"""
        now = self.clock()
        try:
            payment = await self._load_payment(order_id)
            if payment is None:
                await self.db.commit()
                return ReconciliationResult(status=ReconcileStatus.UNKNOWN_ORDER, order_id=order_id)
            claimed = await self.db.execute(
                update(PaymentRecord)
                .where(
                    PaymentRecord.id == payment.id,
                    PaymentRecord.status.in_(OPEN_PAYMENT_STATUSES),
                )
                .values(status="cancelled", failure_reason=reason, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await self.db.rollback()
                payment = await self._load_payment(order_id)
                return await self._already(payment)
            add_audit_entry(
                self.db,
                payment.user_id,
                "payment_cancelled",
                resource_type="payment",
                resource_id=order_id,
                detail={"reason": reason},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("关闭过期订单失败 order_id=%s", order_id)
            raise
        logger.info("订单已过期关闭 order_id=%s", order_id)
        return ReconciliationResult(
            status=ReconcileStatus.APPLIED,
            order_id=order_id,
            payment_status="cancelled",
            subscription_id=payment.subscription_id,
        )

    async def _notify(self, result: ReconciliationResult, user_id: Optional[str]) -> None:
        if not user_id:
            return
        for listener in self.listeners:
            try:
                await listener(result, user_id)
            except Exception as e:
                logger.warning("状态变更通知失败 order_id=%s listener=%s: %s", result.order_id, listener, e)
