"""
操作审计日志：支付入账、订阅开通/续费/取消/到期等状态变更
"""
from sqlalchemy import Column, Integer, String, Text, DateTime
from subscription_engine.core.database import Base, utcnow


class AuditLog(Base):
    """审计日志表"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    action = Column(String(64), nullable=False, index=True)  # payment_succeeded, payment_failed, subscription_cancelled 等
    resource_type = Column(String(32), nullable=True, index=True)  # payment, subscription
    resource_id = Column(String(64), nullable=True)  # 订单号或订阅 ID
    detail = Column(Text, nullable=True)  # JSON
    ip = Column(String(64), nullable=True)
    request_id = Column(String(64), nullable=True, index=True)  # 与 X-Request-ID 一致
    created_at = Column(DateTime, default=utcnow)
