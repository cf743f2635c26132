"""
配额相关API：用量查询、消耗配额
配额不足以 200 + allowed=false 返回，附带升级推荐；配额存储不可用时由全局异常处理返回 503。
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import get_behavior_source, get_current_user_id
from subscription_engine.core.database import get_db
from subscription_engine.schemas.quota import (
    ConsumeRequest,
    ConsumeResponse,
    QuotaStatusResponse,
    QuotaUsage,
)
from subscription_engine.services.quota_ledger import QUOTA_DIMENSIONS, QuotaLedger
from subscription_engine.services.upgrade_recommendation import BehaviorSource, UpgradeRecommendationEngine

router = APIRouter()


def _check_dimension(dimension: str) -> None:
    if dimension not in QUOTA_DIMENSIONS:
        raise HTTPException(status_code=404, detail=f"未知的配额维度: {dimension}")


@router.get("", response_model=QuotaStatusResponse)
async def get_quota_status(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """全部维度的用量、上限、剩余与告警级别"""
    tier, usages = await QuotaLedger(db).status(user_id)
    return QuotaStatusResponse(user_id=user_id, tier=tier, usages=usages)


@router.get("/{dimension}", response_model=QuotaUsage)
async def get_quota_remaining(
    dimension: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """单个维度的用量（只读）"""
    _check_dimension(dimension)
    return await QuotaLedger(db).remaining(user_id, dimension)


@router.post("/{dimension}/consume", response_model=ConsumeResponse)
async def consume_quota(
    dimension: str,
    body: ConsumeRequest = ConsumeRequest(),
    user_id: str = Depends(get_current_user_id),
    behavior_source: BehaviorSource = Depends(get_behavior_source),
    db: AsyncSession = Depends(get_db),
):
    """消耗配额。拒绝或越过告警线时返回升级推荐。"""
    _check_dimension(dimension)
    if body.amount < 1:
        raise HTTPException(status_code=400, detail="amount 必须为正整数")
    ledger = QuotaLedger(db)
    decision = await ledger.try_consume(user_id, dimension, body.amount)
    recommendation = None
    if not decision.allowed or decision.crossed_warning:
        tier, usages = await ledger.status(user_id)
        engine = UpgradeRecommendationEngine(behavior_source, db=db)
        recommendation = await engine.on_quota_decision(user_id, decision, usages=usages, tier=tier)
    return ConsumeResponse(decision=decision, recommendation=recommendation)
