"""
领域异常。业务结果（验签失败、重复通知、配额不足）以返回值表达，不在此列。
"""


class SubscriptionEngineError(Exception):
    """引擎异常基类"""


class GatewayError(SubscriptionEngineError):
    """支付网关返回了明确的错误（通信失败以外的业务错误、响应签名不符等）"""


class TransientGatewayError(GatewayError):
    """网关超时、网络错误或 5xx：结果不确定，下次轮询重试，不能据此判定支付失败"""


class PlanNotFoundError(SubscriptionEngineError, ValueError):
    """套餐不存在或已下架"""


class SubscriptionError(SubscriptionEngineError, ValueError):
    """订阅状态不允许当前操作"""


class QuotaBackendError(SubscriptionEngineError):
    """配额计数存储不可用"""
