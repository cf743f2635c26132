"""
支付相关 Schema：网关事件、对账结果、下单与状态查询
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentOutcome(str, Enum):
    """网关报告的支付结果。pending 只会来自查单（用户尚未付款），回调不会产生。"""
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class PaymentEvent(BaseModel):
    """归一化的支付事件：回调与查单输出同一形状，统一交给对账引擎"""
    order_id: str
    transaction_id: Optional[str] = None
    outcome: PaymentOutcome
    amount_paid: Optional[Decimal] = None  # 元
    paid_at: Optional[datetime] = None     # UTC，无时区
    failure_reason: Optional[str] = None
    source: str = "notify"                 # notify | query


class VerificationFailure(BaseModel):
    """回调验签或解码失败。只记录，不进入对账。"""
    reason: str   # malformed, missing_signature, bad_signature, mch_mismatch, stale_timestamp, missing_signature_headers, bad_ciphertext
    encoding: str  # xml | json
    detail: Optional[str] = None

    @property
    def is_malformed(self) -> bool:
        return self.reason in ("malformed", "bad_ciphertext")


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    ALREADY_RECONCILED = "already_reconciled"
    UNKNOWN_ORDER = "unknown_order"
    STILL_PENDING = "still_pending"


class ReconciliationResult(BaseModel):
    """apply() 的返回值"""
    status: ReconcileStatus
    order_id: str
    payment_status: Optional[str] = None
    subscription_id: Optional[int] = None
    subscription_status: Optional[str] = None
    end_date: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.payment_status in ("completed", "failed", "refunded", "cancelled")


class OrderCreate(BaseModel):
    """下单请求"""
    plan_id: int
    payment_method: str = "wechat_pay"


class OrderResponse(BaseModel):
    """下单响应：前端据此展示二维码并开始轮询"""
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(serialization_alias="orderId")
    qr_code_url: str = Field(serialization_alias="qrCodeUrl")
    # 二维码图片由前端根据 qrCodeUrl 渲染，服务端不生成图片
    qr_code_image: Optional[str] = Field(default=None, serialization_alias="qrCodeImage")
    expires_at: datetime = Field(serialization_alias="expiresAt")
    amount: Decimal
    currency: str
    payment_type: str = Field(serialization_alias="paymentType")


class PaymentStatusData(BaseModel):
    order_id: str = Field(serialization_alias="orderId")
    status: str
    message: str
    subscription_status: Optional[str] = Field(default=None, serialization_alias="subscriptionStatus")


class PaymentStatusResponse(BaseModel):
    """轮询接口响应：{success, data: {orderId, status}}"""
    success: bool = True
    data: PaymentStatusData


class PaymentRecordResponse(BaseModel):
    """支付记录"""
    id: int
    order_id: str
    transaction_id: Optional[str] = None
    subscription_id: int
    plan_id: int
    amount: float
    amount_paid: Optional[float] = None
    currency: str
    status: str
    payment_type: str
    billing_period_start: Optional[datetime] = None
    billing_period_end: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
