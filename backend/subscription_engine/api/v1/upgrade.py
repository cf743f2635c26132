"""升级推荐 API"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import get_behavior_source, get_current_user_id
from subscription_engine.core.database import get_db
from subscription_engine.schemas.upgrade import ProactiveCheckResponse
from subscription_engine.services.quota_ledger import QuotaLedger
from subscription_engine.services.upgrade_recommendation import BehaviorSource, UpgradeRecommendationEngine

router = APIRouter()


@router.get("/recommendation", response_model=ProactiveCheckResponse)
async def get_upgrade_recommendation(
    user_id: str = Depends(get_current_user_id),
    behavior_source: BehaviorSource = Depends(get_behavior_source),
    db: AsyncSession = Depends(get_db),
):
    """主动检查是否展示升级提示（受冷却时间限制）"""
    tier, usages = await QuotaLedger(db).status(user_id)
    engine = UpgradeRecommendationEngine(behavior_source, db=db)
    return await engine.proactive_check(user_id, usages=usages, tier=tier)
