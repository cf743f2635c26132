"""
Celery 任务模块：到期订阅扫描、待支付订单对账、单订单轮询
"""
from subscription_engine.tasks.billing_tasks import (
    expire_overdue_task,
    reconcile_pending_task,
    watch_payment_task,
)

__all__ = [
    "expire_overdue_task",
    "reconcile_pending_task",
    "watch_payment_task",
]
