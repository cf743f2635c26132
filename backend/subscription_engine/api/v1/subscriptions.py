"""
订阅相关API：套餐列表、当前订阅、取消自动续费
"""
import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import get_current_user_id
from subscription_engine.core.config import settings
from subscription_engine.core.database import get_db
from subscription_engine.core.exceptions import SubscriptionError
from subscription_engine.schemas.subscription import (
    CurrentSubscriptionResponse,
    PlanListResponse,
    PlanResponse,
    SubscriptionResponse,
)
from subscription_engine.services import cache_service
from subscription_engine.services.plan_service import PlanService
from subscription_engine.services.subscription_store import SubscriptionStore

router = APIRouter()


class CancelRequest(BaseModel):
    reason: Optional[str] = None


@router.get("/plans", response_model=PlanListResponse)
async def get_plans(db: AsyncSession = Depends(get_db)):
    """获取可购买的套餐列表"""
    cache_key = cache_service.key_plan_list()
    cached = await asyncio.to_thread(cache_service.get, cache_key)
    if cached is not None:
        return PlanListResponse(**cached)
    plans = await PlanService(db).list_plans()
    response = PlanListResponse(plans=[PlanResponse.model_validate(p) for p in plans], total=len(plans))
    await asyncio.to_thread(cache_service.set, cache_key, response.model_dump(), settings.CACHE_TTL_ENTITLEMENT)
    return response


@router.get("/plans/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: int, db: AsyncSession = Depends(get_db)):
    """获取套餐详情"""
    plan = await PlanService(db).get_plan(plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="套餐不存在")
    return plan


@router.get("/current", response_model=CurrentSubscriptionResponse)
async def get_current_subscription(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """当前权益：可用订阅与配额快照，带短时缓存，订阅变更时失效"""
    cache_key = cache_service.key_current_subscription(user_id)
    cached = await asyncio.to_thread(cache_service.get, cache_key)
    if cached is not None:
        return CurrentSubscriptionResponse(**cached)
    store = SubscriptionStore(db)
    sub = await store.get_current(user_id)
    tier, quotas = await store.quota_snapshot_for(user_id)
    response = CurrentSubscriptionResponse(
        tier=tier,
        quotas=quotas,
        subscription=SubscriptionResponse.model_validate(sub) if sub else None,
    )
    await asyncio.to_thread(
        cache_service.set, cache_key, response.model_dump(mode="json"), settings.CACHE_TTL_ENTITLEMENT
    )
    return response


@router.get("/history", response_model=list[SubscriptionResponse])
async def get_subscription_history(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """订阅历史（含 pending / expired）"""
    return await SubscriptionStore(db).list_for_user(user_id)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    request: Request,
    body: CancelRequest = CancelRequest(),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """取消自动续费，当前周期结束前仍可使用"""
    client_ip = request.client.host if request.client else None
    try:
        sub = await SubscriptionStore(db).cancel(user_id, reason=body.reason, ip=client_ip)
    except SubscriptionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return sub
