"""
支付相关API：下单、网关回调、轮询查单
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import get_current_user_id, get_gateway
from subscription_engine.core.config import settings
from subscription_engine.core.database import get_db
from subscription_engine.core.exceptions import GatewayError, PlanNotFoundError, SubscriptionError
from subscription_engine.models.subscription import Subscription
from subscription_engine.schemas.payment import (
    OrderCreate,
    OrderResponse,
    PaymentRecordResponse,
    PaymentStatusData,
    PaymentStatusResponse,
)
from subscription_engine.services.payment_gateway import PaymentGatewayAdapter
from subscription_engine.services.payment_service import PaymentService, status_message

logger = logging.getLogger(__name__)

router = APIRouter()

CELERY_SUBMIT_TIMEOUT = 5


async def _submit_celery_task(submit_fn) -> bool:
    """在线程池中提交 Celery 任务，带超时；Broker 不可用时返回 False，不影响下单。"""
    loop = asyncio.get_running_loop()
    try:
        await asyncio.wait_for(
            loop.run_in_executor(None, submit_fn),
            timeout=CELERY_SUBMIT_TIMEOUT,
        )
        return True
    except asyncio.TimeoutError:
        logger.warning("Celery 任务提交超时（%ss），依赖客户端轮询与定时扫描", CELERY_SUBMIT_TIMEOUT)
    except (ConnectionError, OSError) as e:
        logger.warning("Celery/Redis 不可用，依赖客户端轮询与定时扫描: %s", e)
    return False


@router.post("/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    order_data: OrderCreate,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    """创建扫码支付订单，返回二维码链接与过期时间"""
    service = PaymentService(db, gateway=gateway)
    client_ip = request.client.host if request.client else None
    try:
        payment = await service.create_order(
            user_id=user_id,
            plan_id=order_data.plan_id,
            payment_method=order_data.payment_method,
            client_ip=client_ip,
        )
    except PlanNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SubscriptionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=f"支付网关下单失败: {e}")

    if settings.PAYMENT_WATCH_ENABLED:
        from subscription_engine.tasks.billing_tasks import watch_payment_task
        order_id = payment.order_id
        await _submit_celery_task(lambda: watch_payment_task.delay(order_id))

    return OrderResponse(
        order_id=payment.order_id,
        qr_code_url=payment.qr_code_url,
        expires_at=payment.expires_at,
        amount=payment.amount,
        currency=payment.currency,
        payment_type=payment.payment_type,
    )


@router.post("/notify")
async def payment_notify(
    request: Request,
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    """
    网关支付结果回调（XML 或 JSON）。
    报文处理完毕即返回 200 与确认报文；验签失败返回 401，网关会重试。
    """
    raw_body = await request.body()
    service = PaymentService(db, gateway=gateway)
    reply = await service.handle_notification(raw_body, request.headers)
    return Response(content=reply.body, media_type=reply.media_type, status_code=reply.status_code)


@router.get("/callback", response_model=PaymentStatusResponse)
async def payment_status(
    order_id: str = Query(..., alias="orderId"),
    user_id: str = Depends(get_current_user_id),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    """轮询查单：订单仍待支付时主动向网关查询并对账"""
    service = PaymentService(db, gateway=gateway)
    payment = await service.sync_status(order_id, user_id=user_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="订单不存在")
    sub = await db.get(Subscription, payment.subscription_id)
    return PaymentStatusResponse(
        success=True,
        data=PaymentStatusData(
            order_id=payment.order_id,
            status=payment.status,
            message=status_message(payment),
            subscription_status=sub.status if sub else None,
        ),
    )


@router.get("/orders/{order_id}", response_model=PaymentRecordResponse)
async def get_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """订单详情（不触发查单）"""
    payment = await PaymentService(db).get_order(order_id, user_id=user_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="订单不存在")
    return payment
