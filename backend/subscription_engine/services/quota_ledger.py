"""
配额账本：按用户、维度、周期桶计数，上限来自当前订阅的配额快照
计数放在 Redis，"检查并递增"由 Lua 脚本原子完成，同一用户并发请求也不会超过上限。
桶按日或按月切分，key 自然过期，无需清理。
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.config import settings
from subscription_engine.core.database import utcnow
from subscription_engine.core.exceptions import QuotaBackendError
from subscription_engine.schemas.quota import QuotaDecision, QuotaUsage
from subscription_engine.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

_redis_client = None


@dataclass(frozen=True)
class QuotaDimension:
    name: str
    quota_field: str
    cadence: str  # day | month


QUOTA_DIMENSIONS: Dict[str, QuotaDimension] = {
    "create": QuotaDimension("create", "daily_create_quota", "day"),
    "reuse": QuotaDimension("reuse", "daily_reuse_quota", "day"),
    "export": QuotaDimension("export", "max_exports_per_day", "day"),
    "graph_nodes": QuotaDimension("graph_nodes", "max_graph_nodes", "month"),
}

# 日桶保留 2 天、月桶保留 62 天，足够覆盖跨零点的读取
_BUCKET_TTL = {"day": 86400 * 2, "month": 86400 * 62}

# KEYS[1]=计数 key，ARGV=[amount, limit, ttl]
# 返回 {是否允许, 当前计数}；拒绝时不写入
_CONSUME_SCRIPT = """
local used = tonumber(redis.call('GET', KEYS[1]) or '0')
local amount = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
if used + amount > limit then
  return {0, used}
end
local n = redis.call('INCRBY', KEYS[1], amount)
if n == amount then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[3]))
end
return {1, n}
"""


def _get_redis():
    """获取 Redis 客户端（懒加载）"""
    global _redis_client
    if _redis_client is None:
        try:
            import redis
            _redis_client = redis.Redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
            )
        except Exception as e:
            logger.warning("配额 Redis 连接失败: %s", e)
    return _redis_client


def get_dimension(dimension: str) -> QuotaDimension:
    try:
        return QUOTA_DIMENSIONS[dimension]
    except KeyError:
        raise ValueError(f"未知的配额维度: {dimension}")


def bucket_for(cadence: str, now: datetime) -> str:
    if cadence == "month":
        return f"month:{now.strftime('%Y-%m')}"
    return f"day:{now.strftime('%Y-%m-%d')}"


def reset_at_for(cadence: str, now: datetime) -> datetime:
    """当前桶的结束时间（UTC）"""
    if cadence == "month":
        if now.month == 12:
            return datetime(now.year + 1, 1, 1)
        return datetime(now.year, now.month + 1, 1)
    return datetime(now.year, now.month, now.day) + timedelta(days=1)


def quota_key(user_id: str, dimension: str, now: datetime) -> str:
    dim = get_dimension(dimension)
    prefix = getattr(settings, "QUOTA_KEY_PREFIX", "quota:")
    return f"{prefix}{dim.name}:user:{user_id}:{bucket_for(dim.cadence, now)}"


def warning_level(used: int, limit: int) -> str:
    """safe | warning | critical | exceeded，不限时恒为 safe"""
    if limit < 0:
        return "safe"
    if used >= limit:
        return "exceeded"
    ratio = used / limit
    if ratio >= settings.UPGRADE_CRITICAL_THRESHOLD:
        return "critical"
    if ratio >= settings.UPGRADE_WARNING_THRESHOLD:
        return "warning"
    return "safe"


def _crossed_warning(before: int, after: int, limit: int) -> bool:
    if limit <= 0:
        return False
    threshold = settings.UPGRADE_WARNING_THRESHOLD
    return before / limit < threshold <= after / limit


def consume_with_limit(
    user_id: str,
    dimension: str,
    limit: int,
    amount: int = 1,
    now: Optional[datetime] = None,
) -> QuotaDecision:
    """
    对给定上限做原子的"检查并递增"。返回 QuotaDecision，配额不足是正常结果。
    limit=-1 表示不限，直接放行且不计数。
    Redis 不可用时：QUOTA_FAIL_OPEN 为真则放行，否则抛 QuotaBackendError。
    """
    dim = get_dimension(dimension)
    if amount < 1:
        raise ValueError("amount 必须为正整数")
    if limit == -1:
        return QuotaDecision(allowed=True, dimension=dim.name, used=0, limit=-1, remaining=-1, requested=amount)
    now = now or utcnow()
    key = quota_key(user_id, dim.name, now)
    r = _get_redis()
    try:
        if not r:
            raise QuotaBackendError("配额服务暂不可用: Redis 客户端未初始化")
        allowed, used = r.eval(_CONSUME_SCRIPT, 1, key, amount, limit, _BUCKET_TTL[dim.cadence])
        allowed, used = bool(int(allowed)), int(used)
    except Exception as e:
        if getattr(settings, "QUOTA_FAIL_OPEN", False):
            logger.warning("配额 Redis 操作失败，按配置放行 user_id=%s dimension=%s: %s", user_id, dim.name, e)
            return QuotaDecision(
                allowed=True, dimension=dim.name, used=0, limit=limit, remaining=limit,
                requested=amount, reason="backend_unavailable",
            )
        logger.error("配额 Redis 操作失败 user_id=%s dimension=%s: %s", user_id, dim.name, e)
        if isinstance(e, QuotaBackendError):
            raise
        raise QuotaBackendError(f"配额服务暂不可用: {e}") from e

    if not allowed:
        logger.info("配额不足 user_id=%s dimension=%s used=%s limit=%s requested=%s", user_id, dim.name, used, limit, amount)
        return QuotaDecision(
            allowed=False, dimension=dim.name, used=used, limit=limit,
            remaining=max(0, limit - used), requested=amount, reason="quota_exceeded",
        )
    return QuotaDecision(
        allowed=True,
        dimension=dim.name,
        used=used,
        limit=limit,
        remaining=max(0, limit - used),
        requested=amount,
        crossed_warning=_crossed_warning(used - amount, used, limit),
    )


def read_used(user_id: str, dimension: str, now: Optional[datetime] = None) -> int:
    """读取当前桶的计数，不修改。Redis 不可用时抛 QuotaBackendError。"""
    now = now or utcnow()
    r = _get_redis()
    if not r:
        raise QuotaBackendError("配额服务暂不可用: Redis 客户端未初始化")
    try:
        raw = r.get(quota_key(user_id, dimension, now))
    except Exception as e:
        raise QuotaBackendError(f"配额服务暂不可用: {e}") from e
    return int(raw) if raw else 0


class QuotaLedger:
    """配额账本：上限从订阅快照读取，计数委托给 Redis"""

    def __init__(self, db: AsyncSession, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or utcnow
        self.store = SubscriptionStore(db, clock=self.clock)

    async def limits(self, user_id: str) -> tuple[str, Dict[str, int]]:
        """返回 (tier, {维度: 上限})"""
        tier, quotas = await self.store.quota_snapshot_for(user_id)
        limits = {}
        for name, dim in QUOTA_DIMENSIONS.items():
            limits[name] = int(quotas.get(dim.quota_field, 0))
        return tier, limits

    async def limit_for(self, user_id: str, dimension: str) -> int:
        dim = get_dimension(dimension)
        _, limits = await self.limits(user_id)
        return limits[dim.name]

    async def try_consume(self, user_id: str, dimension: str, amount: int = 1) -> QuotaDecision:
        """消耗配额。拒绝时 remaining 为当前剩余量，不抛异常。"""
        dim = get_dimension(dimension)
        if amount < 1:
            raise ValueError("amount 必须为正整数")
        if not getattr(settings, "QUOTA_ENABLED", True):
            return QuotaDecision(allowed=True, dimension=dim.name, used=0, limit=-1, remaining=-1, requested=amount)
        limit = await self.limit_for(user_id, dim.name)
        # 提交只读事务，避免 SQLite 连接在等待 Redis 时占着锁
        await self.db.commit()
        return await asyncio.to_thread(consume_with_limit, str(user_id), dim.name, limit, amount, self.clock())

    async def remaining(self, user_id: str, dimension: str) -> QuotaUsage:
        """只读：当前桶的用量与上限"""
        dim = get_dimension(dimension)
        limit = await self.limit_for(user_id, dim.name)
        await self.db.commit()
        now = self.clock()
        return await asyncio.to_thread(self._usage, str(user_id), dim, limit, now)

    async def status(self, user_id: str) -> tuple[str, Dict[str, QuotaUsage]]:
        """全部维度的用量，返回 (tier, {维度: QuotaUsage})"""
        tier, limits = await self.limits(user_id)
        await self.db.commit()
        now = self.clock()
        usages = {}
        for name, dim in QUOTA_DIMENSIONS.items():
            usages[name] = await asyncio.to_thread(self._usage, str(user_id), dim, limits[name], now)
        return tier, usages

    @staticmethod
    def _usage(user_id: str, dim: QuotaDimension, limit: int, now: datetime) -> QuotaUsage:
        used = read_used(user_id, dim.name, now)
        if limit < 0:
            remaining, percentage = -1, 0.0
        else:
            remaining = max(0, limit - used)
            percentage = 100.0 if limit == 0 else round(min(100.0, used * 100.0 / limit), 2)
        return QuotaUsage(
            dimension=dim.name,
            used=used,
            limit=limit,
            remaining=remaining,
            percentage=percentage,
            warning_level=warning_level(used, limit),
            reset_at=reset_at_for(dim.cadence, now),
        )
