"""
套餐服务：默认套餐与按等级查询
"""
import asyncio
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.exceptions import PlanNotFoundError
from subscription_engine.models.plan import Plan
from subscription_engine.services import cache_service

logger = logging.getLogger(__name__)

# 等级从低到高
TIER_ORDER = ["free", "basic", "pro", "admin"]

# 配额维度对应的套餐字段，-1 表示不限
QUOTA_FIELDS = ("daily_create_quota", "daily_reuse_quota", "max_exports_per_day", "max_graph_nodes")

DEFAULT_PLANS = [
    {
        "code": "free",
        "name": "免费版",
        "tier": "free",
        "description": "适合个人用户体验产品功能",
        "monthly_price": Decimal("0"),
        "quotas": {"daily_create_quota": 5, "daily_reuse_quota": 1, "max_exports_per_day": 10, "max_graph_nodes": 50},
        "features": ["基础卡片创建", "简单模板", "标准导出"],
        "sort_order": 1,
    },
    {
        "code": "basic",
        "name": "基础版",
        "tier": "basic",
        "description": "适合个人创作者和小团队使用",
        "monthly_price": Decimal("69"),
        "quotas": {"daily_create_quota": 20, "daily_reuse_quota": 5, "max_exports_per_day": 50, "max_graph_nodes": -1},
        "features": ["高清导出", "智能分析", "无限知识图谱", "24/7客服支持", "数据备份"],
        "sort_order": 2,
    },
    {
        "code": "pro",
        "name": "专业版",
        "tier": "pro",
        "description": "适合企业用户和专业团队",
        "monthly_price": Decimal("99"),
        "quotas": {"daily_create_quota": 100, "daily_reuse_quota": 50, "max_exports_per_day": 200, "max_graph_nodes": -1},
        "features": ["高清导出", "智能分析", "无限知识图谱", "品牌定制", "数据导出", "专属客服", "优先技术支持", "API访问"],
        "sort_order": 3,
    },
    {
        # 管理员套餐不对外售卖
        "code": "admin",
        "name": "管理员",
        "tier": "admin",
        "description": "内部使用，全部不限",
        "monthly_price": Decimal("0"),
        "quotas": {"daily_create_quota": -1, "daily_reuse_quota": -1, "max_exports_per_day": -1, "max_graph_nodes": -1},
        "features": ["全部功能"],
        "sort_order": 99,
        "is_active": False,
    },
]


def tier_rank(tier: str) -> int:
    """等级序号，未知等级按 free 处理"""
    try:
        return TIER_ORDER.index(tier)
    except ValueError:
        return 0


def next_tier(tier: str) -> Optional[str]:
    """可购买的下一级；pro 与 admin 没有下一级"""
    if tier in ("pro", "admin"):
        return None
    return TIER_ORDER[tier_rank(tier) + 1]


def default_quotas(tier: str) -> dict:
    for p in DEFAULT_PLANS:
        if p["tier"] == tier:
            return dict(p["quotas"])
    return dict(DEFAULT_PLANS[0]["quotas"])


class PlanService:
    """套餐服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def ensure_default_plans(self) -> int:
        """写入缺失的默认套餐，已存在的不覆盖（避免改动线上价格）。返回新增数量。"""
        result = await self.db.execute(select(Plan.code))
        existing = set(result.scalars().all())
        created = 0
        for data in DEFAULT_PLANS:
            if data["code"] in existing:
                continue
            self.db.add(Plan(**data))
            created += 1
        if created:
            await self.db.commit()
            logger.info("已写入默认套餐 %s 个", created)
            await asyncio.to_thread(cache_service.invalidate_plans)
        return created

    async def list_plans(self, include_inactive: bool = False) -> List[Plan]:
        stmt = select(Plan).order_by(Plan.sort_order)
        if not include_inactive:
            stmt = stmt.where(Plan.is_active == True)  # noqa: E712
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_plan(self, plan_id: int) -> Optional[Plan]:
        return await self.db.get(Plan, plan_id)

    async def get_plan_by_tier(self, tier: str) -> Optional[Plan]:
        result = await self.db.execute(
            select(Plan).where(Plan.tier == tier).order_by(Plan.sort_order).limit(1)
        )
        return result.scalar_one_or_none()

    async def get_purchasable_plan(self, plan_id: int) -> Plan:
        """下单用：套餐必须存在、上架且收费"""
        plan = await self.get_plan(plan_id)
        if not plan or not plan.is_active:
            raise PlanNotFoundError("套餐不存在或已下架")
        if plan.monthly_price is None or Decimal(plan.monthly_price) <= 0:
            raise PlanNotFoundError("免费套餐无需购买")
        return plan
