"""
通用依赖：当前用户、支付网关、行为快照来源
用户体系由外部服务维护，这里只解析 JWT 中的用户 ID。
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.database import get_db
from subscription_engine.core.security import decode_access_token
from subscription_engine.services.payment_gateway import PaymentGatewayAdapter
from subscription_engine.services.upgrade_recommendation import BehaviorSource, SubscriptionBehaviorSource

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> str:
    """从 Bearer 令牌解析用户 ID，无效时返回 401。"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="未提供认证凭据",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_access_token(credentials.credentials)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_gateway() -> PaymentGatewayAdapter:
    """支付网关适配器，测试中可覆盖"""
    return PaymentGatewayAdapter()


async def get_behavior_source(db: AsyncSession = Depends(get_db)) -> BehaviorSource:
    """行为快照来源。接入分析服务后替换此依赖。"""
    return SubscriptionBehaviorSource(db)
