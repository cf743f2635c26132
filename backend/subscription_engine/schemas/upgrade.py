"""
升级推荐 Schema
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class RecommendationLevel(str, Enum):
    NONE = "none"
    GENTLE = "gentle"
    AGGRESSIVE = "aggressive"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SessionStats(BaseModel):
    total_sessions: int = 0
    active_days_last_30: int = 0
    avg_session_minutes: float = 0.0
    last_active_at: Optional[datetime] = None


class BehaviorSnapshot(BaseModel):
    """用户行为快照，由外部分析服务提供，本服务只读"""
    user_id: str
    tier: str = "free"
    registration_date: datetime
    session_stats: SessionStats = Field(default_factory=SessionStats)
    # 各维度最近若干天的使用百分比（0..100），最新在后
    quota_usage_history: Dict[str, List[float]] = {}
    feature_usage: Dict[str, int] = {}
    prompt_views: int = 0
    prompt_dismissals: int = 0
    last_prompt_at: Optional[datetime] = None

    @property
    def dismissal_rate(self) -> float:
        if self.prompt_views <= 0:
            return 0.0
        return min(1.0, self.prompt_dismissals / self.prompt_views)


class ScoringContext(BaseModel):
    """评分上下文：当前配额压力与时间"""
    now: datetime
    # 各维度当前使用百分比（0..100），不限维度不出现
    quota_percentages: Dict[str, float] = {}
    blocked_dimension: Optional[str] = None  # 本次被拒绝的维度
    crossed_warning: bool = False
    trigger: str = "proactive"  # reactive | proactive


class UpgradeScore(BaseModel):
    """score() 的输出"""
    score: int
    recommendation: RecommendationLevel
    urgency: Urgency
    recommended_tier: Optional[str] = None
    prompt_type: str = "inline"  # modal | banner | toast | inline
    factors: List[str] = []


class UpgradeRecommendation(UpgradeScore):
    """带触发上下文与展示内容的推荐"""
    user_id: str
    trigger: str
    current_tier: str
    dimension: Optional[str] = None
    quota_increase: Dict[str, int] = {}
    price_increase: Optional[float] = None
    title: str = ""
    message: str = ""
    cta: str = ""
    dismissible: bool = True
    next_check_at: Optional[datetime] = None


class ProactiveCheckResponse(BaseModel):
    """主动检查结果：冷却中或不值得打扰时 should_show 为 False"""
    should_show: bool
    reason: Optional[str] = None
    recommendation: Optional[UpgradeRecommendation] = None
    next_check_at: Optional[datetime] = None
