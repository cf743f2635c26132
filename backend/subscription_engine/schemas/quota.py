"""
配额 Schema
"""
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel

from subscription_engine.schemas.upgrade import UpgradeRecommendation


class QuotaDecision(BaseModel):
    """try_consume 的结果。拒绝是正常业务结果，不抛异常。"""
    allowed: bool
    dimension: str
    used: int
    limit: int          # -1 表示不限
    remaining: int      # 不限时为 -1
    requested: int = 1
    reason: Optional[str] = None   # quota_exceeded | backend_unavailable
    crossed_warning: bool = False  # 本次消耗使用量越过告警线

    @property
    def unlimited(self) -> bool:
        return self.limit == -1


class QuotaUsage(BaseModel):
    """只读的用量快照"""
    dimension: str
    used: int
    limit: int
    remaining: int
    percentage: float   # 0..100，不限时为 0
    warning_level: str  # safe | warning | critical | exceeded
    reset_at: datetime


class QuotaStatusResponse(BaseModel):
    """全部维度的用量"""
    user_id: str
    tier: str
    usages: Dict[str, QuotaUsage]


class ConsumeRequest(BaseModel):
    amount: int = 1


class ConsumeResponse(BaseModel):
    """消耗配额的响应，拒绝或越过告警线时附带升级建议"""
    decision: QuotaDecision
    recommendation: Optional[UpgradeRecommendation] = None
