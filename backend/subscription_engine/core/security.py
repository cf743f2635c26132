"""
访问令牌：签发与解析 JWT，sub 为用户 ID（用户体系由外部服务维护）
"""
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt

from subscription_engine.core.config import settings


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """创建访问令牌"""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {"sub": str(user_id), "exp": datetime.utcnow() + expires_delta}
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> str:
    """解析令牌并返回用户 ID，无效时抛 ValueError"""
    credentials_exception = ValueError("无效的认证凭据")
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise credentials_exception
    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception
    return str(user_id)
