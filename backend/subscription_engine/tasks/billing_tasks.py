"""
计费异步任务：到期订阅扫描、待支付订单对账、单订单服务端轮询
注意：必须使用任务内创建的 engine/session（create_async_engine_and_session_for_celery），
不能使用全局 AsyncSessionLocal，否则会报 "Future attached to a different loop"。
"""
import asyncio
import logging
from typing import Any, Dict

from subscription_engine.core.database import create_async_engine_and_session_for_celery
from subscription_engine.services.payment_poller import PaymentPoller
from subscription_engine.services.payment_service import PaymentService
from subscription_engine.services.subscription_store import SubscriptionStore

from subscription_engine.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """在同步上下文中运行异步协程（Celery 任务内使用）"""
    try:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _with_celery_db(async_fn):
    """在任务内创建当前 loop 的 engine/session，执行 async_fn(db)，用完后 dispose engine。"""
    async def _run():
        await asyncio.sleep(0)  # 确保已在当前 loop 的 async 上下文中
        engine, session_factory = create_async_engine_and_session_for_celery()
        try:
            async with session_factory() as db:
                return await async_fn(db)
        finally:
            await engine.dispose()
    return _run


@celery_app.task(bind=True, name="subscriptions.expire_overdue")
def expire_overdue_task(self) -> Dict[str, Any]:
    """定时：把已过期的 active / cancelled 订阅置为 expired"""
    async def _run(db):
        user_ids = await SubscriptionStore(db).expire_overdue()
        return {"expired_users": len(user_ids)}

    try:
        return _run_async(_with_celery_db(_run)())
    except Exception as e:
        logger.exception("expire_overdue_task failed: %s", e)
        raise


@celery_app.task(bind=True, name="payments.reconcile_pending")
def reconcile_pending_task(self) -> Dict[str, Any]:
    """定时：待支付订单查单对账，过期订单关单。回调丢失且用户关闭页面时由此兜底。"""
    async def _run(db):
        return await PaymentService(db).reconcile_pending()

    try:
        return _run_async(_with_celery_db(_run)())
    except Exception as e:
        logger.exception("reconcile_pending_task failed: %s", e)
        raise


@celery_app.task(bind=True, name="payments.watch_order")
def watch_payment_task(self, order_id: str) -> Dict[str, Any]:
    """下单后服务端轮询单个订单，直到支付成功、失败或二维码过期"""
    async def _run(db):
        service = PaymentService(db)
        payment = await service.get_order(order_id)
        await db.commit()
        if payment is None:
            logger.warning("watch_payment_task 订单不存在 order_id=%s", order_id)
            return {"order_id": order_id, "state": "unknown_order"}
        if payment.status not in ("pending", "processing"):
            return {"order_id": order_id, "state": payment.status}
        poller = PaymentPoller(
            order_id=order_id,
            expires_at=payment.expires_at,
            query_and_apply=service.query_and_apply,
            on_expire=service.expire_order,
        )
        state = await poller.run()
        return {"order_id": order_id, "state": state.value, "polls": poller.poll_count}

    try:
        return _run_async(_with_celery_db(_run)())
    except Exception as e:
        logger.exception("watch_payment_task failed order_id=%s: %s", order_id, e)
        raise
