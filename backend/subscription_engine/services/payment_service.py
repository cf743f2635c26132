"""
支付服务：下单、回调入口、查单同步与待支付订单扫描
回调与查单得到的 PaymentEvent 都交给 ReconciliationService.apply()。
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.config import settings
from subscription_engine.core.database import utcnow
from subscription_engine.core.exceptions import (
    GatewayError,
    SubscriptionEngineError,
    SubscriptionError,
    TransientGatewayError,
)
from subscription_engine.models.payment_record import OPEN_PAYMENT_STATUSES, PaymentRecord
from subscription_engine.schemas.payment import (
    PaymentEvent,
    ReconciliationResult,
    ReconcileStatus,
    VerificationFailure,
)
from subscription_engine.services.audit_service import log_audit
from subscription_engine.services.payment_gateway import PaymentGatewayAdapter, detect_encoding
from subscription_engine.services.plan_service import PlanService, tier_rank
from subscription_engine.services.reconciliation_service import ReconciliationService
from subscription_engine.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

# 轮询接口返回给用户的提示，区分"支付失败"与"尚未支付"
STATUS_MESSAGES = {
    "pending": "等待支付，请使用微信扫码",
    "processing": "支付处理中，请稍候",
    "completed": "支付成功，订阅已生效",
    "failed": "支付失败",
    "cancelled": "订单已关闭",
    "refunded": "订单已退款",
}


@dataclass
class NotificationReply:
    """回调应答：报文、media_type、HTTP 状态码"""
    body: str
    media_type: str
    status_code: int
    result: Optional[ReconciliationResult] = None


def generate_order_id(now: datetime) -> str:
    """商户订单号：SUB + 时间戳 + 4 位随机数"""
    return f"SUB{now.strftime('%Y%m%d%H%M%S')}{secrets.randbelow(10000):04d}"


def status_message(payment: PaymentRecord) -> str:
    message = STATUS_MESSAGES.get(payment.status, payment.status)
    if payment.status in ("failed", "cancelled") and payment.failure_reason:
        message = f"{message}：{payment.failure_reason}"
    return message


class PaymentService:
    """支付服务"""

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGatewayAdapter] = None,
        reconciler: Optional[ReconciliationService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.clock = clock or utcnow
        self.gateway = gateway or PaymentGatewayAdapter()
        self.reconciler = reconciler or ReconciliationService(db, clock=self.clock)
        self.store = SubscriptionStore(db, clock=self.clock)

    async def create_order(
        self,
        user_id: str,
        plan_id: int,
        payment_method: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> PaymentRecord:
        """
        创建扫码支付订单：
        - 已有同级 active 订阅时为续费，支付记录挂在该订阅上
        - 否则创建（或复用）pending 订阅
        该用户之前未支付的订单先在网关关单，保证同一时间只有一个可支付的二维码；
        旧二维码已被支付时先入账，再按入账后的订阅状态下单。关单结果不确定时抛出 GatewayError。
        """
        user_id = str(user_id)
        payment_method = payment_method or settings.PAYMENT_METHOD
        plan = await PlanService(self.db).get_purchasable_plan(plan_id)
        await self._close_open_orders(user_id)
        now = self.clock()

        current = await self.store.get_current(user_id)
        if current and current.status == "active" and current.tier == plan.tier:
            sub = current
            payment_type = "renewal"
        else:
            if current and current.status == "active" and tier_rank(current.tier) > tier_rank(plan.tier):
                raise SubscriptionError("当前订阅等级更高，不支持降级购买")
            sub = await self.store.create_subscription(user_id, plan, payment_method=payment_method)
            payment_type = "initial"

        order_id = await self._new_order_id(now)
        amount = Decimal(plan.monthly_price)
        try:
            order = await self.gateway.create_native_order(
                order_id=order_id,
                amount=amount,
                description=f"订阅 {plan.name}",
                user_id=user_id,
                client_ip=client_ip,
            )
        except GatewayError:
            await self.db.rollback()
            raise

        payment = PaymentRecord(
            order_id=order_id,
            subscription_id=sub.id,
            plan_id=plan.id,
            user_id=user_id,
            amount=amount,
            currency=plan.currency or settings.PAYMENT_CURRENCY,
            status="pending",
            payment_type=payment_type,
            payment_method=payment_method,
            qr_code_url=order["code_url"],
            expires_at=now + timedelta(minutes=settings.PAYMENT_QR_EXPIRE_MINUTES),
            metadata_={"prepay_id": order.get("prepay_id"), "client_ip": client_ip},
        )
        self.db.add(payment)
        await self.db.commit()
        logger.info(
            "创建支付订单 order_id=%s user_id=%s plan=%s type=%s amount=%s",
            order_id, user_id, plan.code, payment_type, amount,
        )
        return payment

    async def _new_order_id(self, now: datetime) -> str:
        """生成本地未使用过的订单号；同一秒内随机段冲突时重新生成"""
        for _ in range(5):
            order_id = generate_order_id(now)
            exists = await self.db.execute(select(PaymentRecord.id).where(PaymentRecord.order_id == order_id))
            if exists.scalar_one_or_none() is None:
                return order_id
            logger.warning("订单号冲突，重新生成 order_id=%s", order_id)
        raise SubscriptionEngineError("订单号生成失败，请稍后重试")

    async def _close_open_orders(self, user_id: str) -> None:
        result = await self.db.execute(
            select(PaymentRecord.order_id).where(
                PaymentRecord.user_id == user_id,
                PaymentRecord.status.in_(OPEN_PAYMENT_STATUSES),
            )
        )
        order_ids = list(result.scalars().all())
        await self.db.commit()
        for order_id in order_ids:
            outcome = await self._close_at_gateway(order_id, "已创建新订单")
            if outcome.status == ReconcileStatus.STILL_PENDING:
                raise TransientGatewayError(f"上一笔订单 {order_id} 状态未确认，请稍后重试")
            logger.info("旧订单已处理 order_id=%s payment_status=%s", order_id, outcome.payment_status)

    async def _close_at_gateway(self, order_id: str, reason: str) -> ReconciliationResult:
        """网关关单成功才在本地关闭；网关报告已支付时查单入账。GatewayError 向上抛出。"""
        closed = await self.gateway.close_order(order_id)
        if not closed:
            logger.warning("关单时网关报告订单已支付，查单入账 order_id=%s", order_id)
            return await self.query_and_apply(order_id)
        return await self.reconciler.close_expired(order_id, reason=reason)

    async def get_order(self, order_id: str, user_id: Optional[str] = None) -> Optional[PaymentRecord]:
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        if user_id is not None:
            stmt = stmt.where(PaymentRecord.user_id == str(user_id))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def handle_notification(
        self,
        raw_body: Union[bytes, str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> NotificationReply:
        """
        处理网关回调并生成应答。
        报文处理完毕（包括订单不存在、支付失败、重复通知）返回 200，停止网关重试；
        验签失败返回 401，格式错误 400，内部错误 500，让网关重试。
        """
        body_text = raw_body.decode("utf-8", errors="replace") if isinstance(raw_body, bytes) else raw_body
        encoding = detect_encoding(body_text, headers)
        decoded = self.gateway.decode_notification(raw_body, headers)
        if isinstance(decoded, VerificationFailure):
            status_code = 400 if decoded.is_malformed else 401
            await log_audit(
                self.db,
                "system",
                "payment_notification_rejected",
                resource_type="payment",
                detail={"reason": decoded.reason, "encoding": decoded.encoding, "detail": decoded.detail},
            )
            body, media_type = self.gateway.acknowledgement(encoding, False, "验签失败" if status_code == 401 else "报文格式错误")
            return NotificationReply(body, media_type, status_code)

        try:
            result = await self.reconciler.apply(decoded)
        except Exception as e:
            logger.error("处理支付回调失败 order_id=%s: %s", decoded.order_id, e)
            body, media_type = self.gateway.acknowledgement(encoding, False, "处理失败")
            return NotificationReply(body, media_type, 500)

        if result.status == ReconcileStatus.UNKNOWN_ORDER:
            logger.error("支付回调对应的订单不存在，需人工核对 order_id=%s", decoded.order_id)
        body, media_type = self.gateway.acknowledgement(encoding, True, "OK")
        return NotificationReply(body, media_type, 200, result)

    async def sync_status(self, order_id: str, user_id: Optional[str] = None) -> Optional[PaymentRecord]:
        """
        轮询接口使用：订单仍待支付时主动查单并对账；二维码过期则关单。
        查单超时等不确定结果只记录，不改变订单状态。订单不存在返回 None。
        """
        payment = await self.get_order(order_id, user_id)
        if payment is None:
            await self.db.commit()
            return None
        if payment.status not in OPEN_PAYMENT_STATUSES:
            await self.db.commit()
            return payment

        now = self.clock()
        await self.db.commit()
        try:
            event = await self.gateway.query_status(order_id)
            result = await self.reconciler.apply(event)
        except TransientGatewayError as e:
            logger.info("查单结果不确定，下次轮询重试 order_id=%s: %s", order_id, e)
            result = None
        except GatewayError as e:
            logger.warning("查单失败 order_id=%s: %s", order_id, e)
            result = None

        if (result is None or result.status == ReconcileStatus.STILL_PENDING) and payment.expires_at and now >= payment.expires_at:
            try:
                await self.expire_order(order_id)
            except GatewayError as e:
                logger.warning("过期订单暂未关闭，下次轮询重试 order_id=%s: %s", order_id, e)

        return await self.get_order(order_id, user_id)

    async def expire_order(self, order_id: str) -> ReconciliationResult:
        """
        二维码过期：先向网关关单，网关报告已支付时查单入账。
        关单失败时结果不确定，改为查单：未支付则订单保持待支付，等下次轮询或扫描再关单。
        """
        try:
            return await self._close_at_gateway(order_id, "二维码已过期")
        except GatewayError as e:
            logger.warning("关单失败，改为查单 order_id=%s: %s", order_id, e)
        return await self.query_and_apply(order_id)

    async def query_and_apply(self, order_id: str) -> ReconciliationResult:
        """查单并对账，供轮询器调用。TransientGatewayError 向上抛出，由轮询器重试。"""
        event: PaymentEvent = await self.gateway.query_status(order_id)
        return await self.reconciler.apply(event)

    async def reconcile_pending(self, limit: int = 100) -> dict:
        """扫描待支付订单：未过期的查单对账，已过期的关单。返回各结果计数。"""
        result = await self.db.execute(
            select(PaymentRecord.order_id)
            .where(PaymentRecord.status.in_(OPEN_PAYMENT_STATUSES))
            .order_by(PaymentRecord.created_at)
            .limit(limit)
        )
        order_ids: List[str] = list(result.scalars().all())
        await self.db.commit()
        stats = {"checked": 0, "applied": 0, "expired": 0, "errors": 0}
        for order_id in order_ids:
            stats["checked"] += 1
            try:
                synced = await self.sync_status(order_id)
                if synced is None:
                    continue
                if synced.status == "cancelled":
                    stats["expired"] += 1
                elif synced.status in ("completed", "failed"):
                    stats["applied"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.warning("待支付订单对账失败 order_id=%s: %s", order_id, e)
        if order_ids:
            logger.info("待支付订单扫描完成: %s", stats)
        return stats
