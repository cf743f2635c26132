"""
API v1 路由
"""
from fastapi import APIRouter
from subscription_engine.api.v1 import payments, subscriptions, quotas, upgrade, audit

api_router = APIRouter()

# 注册子路由
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["订阅"])
api_router.include_router(payments.router, prefix="/payments", tags=["支付"])
api_router.include_router(quotas.router, prefix="/quotas", tags=["配额"])
api_router.include_router(upgrade.router, prefix="/upgrade", tags=["升级推荐"])
api_router.include_router(audit.router, prefix="/audit-logs", tags=["审计"])
