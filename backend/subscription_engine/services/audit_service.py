"""
操作审计服务：记录订阅与支付状态变更到 audit_logs 表
"""
import json
import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from subscription_engine.core.config import settings
from subscription_engine.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def add_audit_entry(
    db: AsyncSession,
    user_id: str,
    action: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    detail: Optional[dict[str, Any]] = None,
    ip: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[AuditLog]:
    """把审计记录加入当前事务，不提交。与业务写入一同提交或一同回滚。"""
    if not getattr(settings, "AUDIT_LOG_ENABLED", True):
        return None
    detail_str = json.dumps(detail, ensure_ascii=False, default=str) if isinstance(detail, dict) else (str(detail) if detail else None)
    entry = AuditLog(
        user_id=str(user_id),
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        detail=detail_str,
        ip=ip,
        request_id=request_id,
    )
    db.add(entry)
    return entry


async def log_audit(
    db: AsyncSession,
    user_id: str,
    action: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    detail: Optional[dict[str, Any]] = None,
    ip: Optional[str] = None,
    request_id: Optional[str] = None,
) -> None:
    """单独写入一条审计日志并提交。若未启用 AUDIT_LOG_ENABLED 则跳过，写入失败只记警告。"""
    if not getattr(settings, "AUDIT_LOG_ENABLED", True):
        return
    try:
        add_audit_entry(db, user_id, action, resource_type, resource_id, detail, ip, request_id)
        await db.commit()
    except Exception as e:
        logger.warning("审计日志写入失败: %s", e)
        await db.rollback()
