"""
订阅与套餐 Schema
"""
from datetime import datetime
from typing import Optional, List, Dict

from pydantic import BaseModel, ConfigDict


class PlanResponse(BaseModel):
    """套餐响应"""
    id: int
    code: str
    name: str
    tier: str
    description: Optional[str] = None
    monthly_price: float
    currency: str
    quotas: Dict[str, int] = {}
    features: List[str] = []

    model_config = ConfigDict(from_attributes=True)


class PlanListResponse(BaseModel):
    """套餐列表响应"""
    plans: List[PlanResponse]
    total: int


class SubscriptionResponse(BaseModel):
    """订阅响应"""
    id: int
    user_id: str
    plan_id: int
    tier: str
    status: str
    start_date: datetime
    end_date: datetime
    next_billing_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    last_payment_id: Optional[int] = None
    auto_renew: bool = True
    quotas: Optional[Dict[str, int]] = None

    model_config = ConfigDict(from_attributes=True)


class CurrentSubscriptionResponse(BaseModel):
    """当前权益：无付费订阅时 tier 为 free，subscription 为空"""
    tier: str
    quotas: Dict[str, int]
    subscription: Optional[SubscriptionResponse] = None
