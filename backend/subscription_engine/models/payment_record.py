"""
支付记录模型：一次扫码支付对应一条记录，order_id 为商户订单号
"""
from sqlalchemy import Column, Integer, String, Text, Numeric, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from subscription_engine.core.database import Base, utcnow

# 终态：进入后不再变化，重复通知直接确认
TERMINAL_PAYMENT_STATUSES = ("completed", "failed", "refunded", "cancelled")
OPEN_PAYMENT_STATUSES = ("pending", "processing")
# 本地已关闭的订单仍可能在网关被支付，支付成功以网关为准入账
SUCCESS_CLAIMABLE_STATUSES = OPEN_PAYMENT_STATUSES + ("cancelled",)


class PaymentRecord(Base):
    """支付记录表"""
    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), unique=True, nullable=False, index=True)
    transaction_id = Column(String(64), nullable=True)  # 网关交易号
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    amount_paid = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(8), nullable=False, default="CNY")
    status = Column(String(20), nullable=False, default="pending", index=True)  # pending, processing, completed, failed, refunded, cancelled
    payment_type = Column(String(20), nullable=False, default="initial")  # initial, renewal
    payment_method = Column(String(32), nullable=True)
    billing_period_start = Column(DateTime, nullable=True)
    billing_period_end = Column(DateTime, nullable=True)
    qr_code_url = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(255), nullable=True)
    retry_count = Column(Integer, default=0)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # 关系
    subscription = relationship("Subscription", back_populates="payments")
    plan = relationship("Plan")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES
