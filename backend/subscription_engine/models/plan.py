"""
套餐模型
"""
from sqlalchemy import Column, Integer, String, Text, Numeric, Boolean, DateTime, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from subscription_engine.core.database import Base


class Plan(Base):
    """套餐表"""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(32), nullable=False, unique=True, index=True)  # free, basic, pro, admin
    name = Column(String(50), nullable=False)
    tier = Column(String(20), nullable=False)
    description = Column(Text, nullable=True)
    monthly_price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="CNY")
    # {"daily_create_quota": 20, "daily_reuse_quota": 5, ...}，-1 表示不限
    quotas = Column(JSON, nullable=False)
    features = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True)
    sort_order = Column(Integer, default=0)
    created_at = Column(DateTime, server_default=func.now())

    # 关系
    subscriptions = relationship("Subscription", back_populates="plan")
