"""
订阅模型
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, JSON
from sqlalchemy.orm import relationship
from subscription_engine.core.database import Base, utcnow


class Subscription(Base):
    """订阅表。时间均为 UTC。"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    tier = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)  # pending, active, cancelled, expired, suspended
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    next_billing_date = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    payment_method = Column(String(32), nullable=True)
    last_payment_id = Column(Integer, nullable=True)
    auto_renew = Column(Boolean, default=True)
    quotas = Column(JSON, nullable=True)  # 开通时的配额快照
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # 关系
    plan = relationship("Plan", back_populates="subscriptions")
    payments = relationship("PaymentRecord", back_populates="subscription")
