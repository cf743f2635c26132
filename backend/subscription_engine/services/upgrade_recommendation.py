"""
升级推荐：根据配额压力与用户行为估算升级倾向（0..100），给出推荐力度与紧急程度
score() 是纯函数；行为快照由外部注入（BehaviorSource），本模块不修改订阅与配额。
两个入口：
- 响应式：配额被拒绝或越过 80% 时立即给出推荐
- 主动式：机会性检查，受冷却时间限制，忽略率越高冷却越长（4h ~ 24h）
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.config import settings
from subscription_engine.core.database import utcnow
from subscription_engine.models.plan import Plan
from subscription_engine.models.subscription import Subscription
from subscription_engine.schemas.quota import QuotaDecision, QuotaUsage
from subscription_engine.schemas.upgrade import (
    BehaviorSnapshot,
    ProactiveCheckResponse,
    RecommendationLevel,
    ScoringContext,
    SessionStats,
    UpgradeRecommendation,
    UpgradeScore,
    Urgency,
)
from subscription_engine.services.plan_service import default_quotas, next_tier

logger = logging.getLogger(__name__)

# 维度名 → 套餐配额字段，用于计算升级后的配额提升
_DIMENSION_FIELDS = {
    "create": "daily_create_quota",
    "reuse": "daily_reuse_quota",
    "export": "max_exports_per_day",
    "graph_nodes": "max_graph_nodes",
}

# 主动检查时分数低于此值不打扰用户
PROACTIVE_MIN_SCORE = 20

PROMPT_CONTENT = {
    Urgency.HIGH: ("配额已用完", "您的配额已达到上限，升级后可继续使用更多功能", "立即升级"),
    Urgency.MEDIUM: ("配额即将用完", "您的使用量很高，升级可获得更多配额和功能", "了解升级"),
    Urgency.LOW: ("发现更多可能", "升级可解锁更多强大功能，提升您的使用体验", "查看套餐"),
}


class BehaviorSource(Protocol):
    """行为快照来源（外部分析服务）"""

    async def get_snapshot(self, user_id: str) -> BehaviorSnapshot:
        ...


class StaticBehaviorSource:
    """内存中的固定快照，测试与本地调试使用"""

    def __init__(self, snapshots: Optional[Dict[str, BehaviorSnapshot]] = None, default_tier: str = "free"):
        self.snapshots = dict(snapshots or {})
        self.default_tier = default_tier

    async def get_snapshot(self, user_id: str) -> BehaviorSnapshot:
        snap = self.snapshots.get(str(user_id))
        if snap is None:
            snap = BehaviorSnapshot(user_id=str(user_id), tier=self.default_tier, registration_date=utcnow())
        return snap


class SubscriptionBehaviorSource:
    """
    没有接入分析服务时的最小快照：等级与注册时间取自订阅记录，其余字段为空。
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_snapshot(self, user_id: str) -> BehaviorSnapshot:
        user_id = str(user_id)
        first = await self.db.execute(
            select(func.min(Subscription.created_at)).where(Subscription.user_id == user_id)
        )
        registered = first.scalar_one_or_none() or utcnow()
        now = utcnow()
        current = await self.db.execute(
            select(Subscription.tier)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(("active", "cancelled")),
                Subscription.end_date > now,
            )
            .order_by(Subscription.end_date.desc())
            .limit(1)
        )
        tier = current.scalar_one_or_none() or "free"
        await self.db.commit()
        return BehaviorSnapshot(user_id=user_id, tier=tier, registration_date=registered, session_stats=SessionStats())


# ---------- 评分（纯函数） ---------- #
def _usage_score(behavior: BehaviorSnapshot, context: ScoringContext, factors: list) -> int:
    """配额压力，最高 40 分：当前使用率、本次是否被拒绝、近期用尽次数"""
    score = 0
    warning = settings.UPGRADE_WARNING_THRESHOLD * 100
    critical = settings.UPGRADE_CRITICAL_THRESHOLD * 100
    for dimension, pct in sorted(context.quota_percentages.items()):
        if pct >= critical:
            score += 15
            factors.append(f"{dimension}配额使用率超过{critical:.0f}%")
        elif pct >= warning:
            score += 10
            factors.append(f"{dimension}配额使用率超过{warning:.0f}%")
        elif pct >= 50:
            score += 5
            factors.append(f"{dimension}配额使用率较高")
    if context.blocked_dimension:
        score += 20
        factors.append(f"{context.blocked_dimension}配额不足，操作被拒绝")
    exhausted = sum(1 for history in behavior.quota_usage_history.values() for pct in history if pct >= 100)
    if exhausted >= 3:
        score += 10
        factors.append("近期多次用尽配额")
    elif exhausted >= 1:
        score += 5
        factors.append("近期用尽过配额")
    return min(40, score)


def _engagement_score(behavior: BehaviorSnapshot, factors: list) -> int:
    """参与度，最高 30 分：近 30 天活跃天数折算为 0..100"""
    engagement = min(100.0, behavior.session_stats.active_days_last_30 * 100.0 / 30)
    if engagement >= 80:
        factors.append("用户参与度很高")
        return 30
    if engagement >= 60:
        factors.append("用户参与度中等")
        return 20
    if engagement >= 30:
        factors.append("用户参与度较低")
        return 10
    return 0


def _maturity_score(behavior: BehaviorSnapshot, now: datetime, factors: list) -> int:
    """账户成熟度，最高 20 分"""
    age_days = (now - behavior.registration_date).days
    if age_days >= 30:
        factors.append("账户使用时间较长")
        return 20
    if age_days >= 7:
        factors.append("账户使用时间适中")
        return 10
    return 0


def _depth_score(behavior: BehaviorSnapshot, factors: list) -> int:
    """功能使用深度，最高 10 分"""
    used = len([k for k, v in behavior.feature_usage.items() if v > 0])
    if used >= 5:
        factors.append("使用了多种功能")
        return 10
    if used >= 3:
        factors.append("使用了部分功能")
        return 5
    return 0


def _time_adjustment(now: datetime, factors: list) -> int:
    """工作日白天加分，凌晨减分（按北京时间）"""
    local = now + timedelta(hours=8)
    if 0 <= local.hour < 6:
        factors.append("深夜时段")
        return -10
    if local.weekday() < 5 and 9 <= local.hour < 18:
        factors.append("工作日工作时段")
        return 5
    return 0


def determine_urgency(context: ScoringContext) -> Urgency:
    """被拒绝或两个以上维度超过紧急线为 high；一个维度超过紧急线或刚越过告警线为 medium"""
    if context.blocked_dimension:
        return Urgency.HIGH
    critical = settings.UPGRADE_CRITICAL_THRESHOLD * 100
    critical_count = len([p for p in context.quota_percentages.values() if p >= critical])
    if critical_count >= 2:
        return Urgency.HIGH
    if critical_count == 1 or context.crossed_warning:
        return Urgency.MEDIUM
    return Urgency.LOW


def select_prompt_type(urgency: Urgency, recommendation: RecommendationLevel) -> str:
    if urgency == Urgency.HIGH:
        return "modal"
    if urgency == Urgency.MEDIUM and recommendation == RecommendationLevel.AGGRESSIVE:
        return "banner"
    if recommendation == RecommendationLevel.GENTLE:
        return "toast"
    return "inline"


def score(behavior: BehaviorSnapshot, context: ScoringContext) -> UpgradeScore:
    """计算升级倾向。相同输入得到相同输出。"""
    factors: list = []
    total = 0
    total += _usage_score(behavior, context, factors)
    total += _engagement_score(behavior, factors)
    total += _maturity_score(behavior, context.now, factors)
    total += _depth_score(behavior, factors)

    rate = behavior.dismissal_rate
    if rate > 0:
        # 忽略率越高越少打扰，最多减半
        total = int(round(total * (1 - 0.5 * rate)))
        factors.append(f"历史忽略率 {rate:.0%}")
    total += _time_adjustment(context.now, factors)
    total = max(0, min(100, total))

    if total >= 70:
        recommendation = RecommendationLevel.AGGRESSIVE
    elif total >= 40:
        recommendation = RecommendationLevel.GENTLE
    else:
        recommendation = RecommendationLevel.NONE
    urgency = determine_urgency(context)
    recommended = next_tier(behavior.tier)
    if recommended is None:
        recommendation = RecommendationLevel.NONE

    return UpgradeScore(
        score=total,
        recommendation=recommendation,
        urgency=urgency,
        recommended_tier=recommended,
        prompt_type=select_prompt_type(urgency, recommendation),
        factors=factors,
    )


def cooldown_for(behavior: BehaviorSnapshot) -> timedelta:
    """主动提示冷却时间：从最短到最长按忽略率线性增加"""
    low = settings.UPGRADE_COOLDOWN_MIN_HOURS
    high = settings.UPGRADE_COOLDOWN_MAX_HOURS
    return timedelta(hours=low + (high - low) * behavior.dismissal_rate)


def quota_increase(current: dict, target: dict) -> Dict[str, int]:
    """升级后各维度每日配额的增加量，任一方不限时跳过"""
    increase = {}
    for dimension, field in _DIMENSION_FIELDS.items():
        before, after = current.get(field), target.get(field)
        if before is None or after is None or before == -1 or after == -1:
            continue
        if after > before:
            increase[dimension] = after - before
    return increase


def percentages_from_usages(usages: Dict[str, QuotaUsage]) -> Dict[str, float]:
    return {name: u.percentage for name, u in usages.items() if u.limit >= 0}


class UpgradeRecommendationEngine:
    """升级推荐引擎：组合行为快照、配额快照与套餐信息，只读"""

    def __init__(
        self,
        behavior_source: BehaviorSource,
        db: Optional[AsyncSession] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.behavior_source = behavior_source
        self.db = db
        self.clock = clock or utcnow

    async def _snapshot(self, user_id: str, tier: Optional[str]) -> BehaviorSnapshot:
        """读取行为快照；tier 以订阅记录为准覆盖快照中的值"""
        behavior = await self.behavior_source.get_snapshot(user_id)
        if tier and tier != behavior.tier:
            behavior = behavior.model_copy(update={"tier": tier})
        return behavior

    async def _plan_quotas(self, tier: str) -> Optional[dict]:
        if self.db is None:
            return default_quotas(tier) if tier in ("free", "basic", "pro", "admin") else None
        result = await self.db.execute(select(Plan).where(Plan.tier == tier).order_by(Plan.sort_order).limit(1))
        plan = result.scalar_one_or_none()
        return dict(plan.quotas) if plan else None

    async def _plan_price(self, tier: str) -> Optional[float]:
        if self.db is None:
            return None
        result = await self.db.execute(select(Plan.monthly_price).where(Plan.tier == tier).limit(1))
        price = result.scalar_one_or_none()
        return float(price) if price is not None else None

    async def _build(
        self,
        user_id: str,
        behavior: BehaviorSnapshot,
        context: ScoringContext,
        dimension: Optional[str] = None,
    ) -> UpgradeRecommendation:
        result = score(behavior, context)
        increase: Dict[str, int] = {}
        price_increase = None
        if result.recommended_tier:
            current_quotas = await self._plan_quotas(behavior.tier) or {}
            target_quotas = await self._plan_quotas(result.recommended_tier) or {}
            increase = quota_increase(current_quotas, target_quotas)
            current_price = await self._plan_price(behavior.tier)
            target_price = await self._plan_price(result.recommended_tier)
            if current_price is not None and target_price is not None:
                price_increase = round(target_price - current_price, 2)
        title, message, cta = PROMPT_CONTENT[result.urgency]
        return UpgradeRecommendation(
            **result.model_dump(),
            user_id=str(user_id),
            trigger=context.trigger,
            current_tier=behavior.tier,
            dimension=dimension,
            quota_increase=increase,
            price_increase=price_increase,
            title=title,
            message=message,
            cta=cta,
            dismissible=result.urgency != Urgency.HIGH,
            next_check_at=context.now + cooldown_for(behavior),
        )

    async def on_quota_decision(
        self,
        user_id: str,
        decision: QuotaDecision,
        usages: Optional[Dict[str, QuotaUsage]] = None,
        tier: Optional[str] = None,
    ) -> Optional[UpgradeRecommendation]:
        """响应式入口：配额被拒绝或本次越过告警线时返回推荐，否则返回 None。不受冷却限制。"""
        if decision.allowed and not decision.crossed_warning:
            return None
        if decision.unlimited:
            return None
        behavior = await self._snapshot(user_id, tier)
        percentages = percentages_from_usages(usages) if usages else {}
        if decision.limit > 0:
            percentages[decision.dimension] = min(100.0, decision.used * 100.0 / decision.limit)
        elif decision.limit == 0:
            percentages[decision.dimension] = 100.0
        context = ScoringContext(
            now=self.clock(),
            quota_percentages=percentages,
            blocked_dimension=None if decision.allowed else decision.dimension,
            crossed_warning=decision.crossed_warning,
            trigger="reactive",
        )
        recommendation = await self._build(user_id, behavior, context, dimension=decision.dimension)
        logger.info(
            "升级推荐(响应式) user_id=%s dimension=%s score=%s urgency=%s",
            user_id, decision.dimension, recommendation.score, recommendation.urgency.value,
        )
        return recommendation

    async def proactive_check(
        self,
        user_id: str,
        usages: Optional[Dict[str, QuotaUsage]] = None,
        tier: Optional[str] = None,
    ) -> ProactiveCheckResponse:
        """主动入口：冷却期内、已是最高等级或分数过低时不展示"""
        now = self.clock()
        behavior = await self._snapshot(user_id, tier)
        if behavior.last_prompt_at is not None:
            next_at = behavior.last_prompt_at + cooldown_for(behavior)
            if now < next_at:
                return ProactiveCheckResponse(should_show=False, reason="最近已显示过升级提示", next_check_at=next_at)
        if next_tier(behavior.tier) is None:
            return ProactiveCheckResponse(should_show=False, reason="已是最高等级")
        context = ScoringContext(
            now=now,
            quota_percentages=percentages_from_usages(usages) if usages else {},
            trigger="proactive",
        )
        recommendation = await self._build(user_id, behavior, context)
        if recommendation.score < PROACTIVE_MIN_SCORE:
            return ProactiveCheckResponse(
                should_show=False,
                reason="升级倾向分数过低",
                next_check_at=recommendation.next_check_at,
            )
        logger.info(
            "升级推荐(主动) user_id=%s score=%s recommendation=%s",
            user_id, recommendation.score, recommendation.recommendation.value,
        )
        return ProactiveCheckResponse(
            should_show=True,
            recommendation=recommendation,
            next_check_at=recommendation.next_check_at,
        )
