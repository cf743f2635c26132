"""
数据库：异步引擎、会话工厂与声明式 Base
"""
from datetime import datetime

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from subscription_engine.core.config import settings

Base = declarative_base()


def _use_immediate_transactions(engine) -> None:
    """SQLite 下以 BEGIN IMMEDIATE 开启事务：并发的回调与轮询对同一订单按事务串行，而不是在提交时互相报 locked。"""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # 关闭驱动自带的隐式事务，交给下面的 begin 事件
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_and_session(url: str = None, **engine_kwargs):
    """创建 engine 与 session 工厂。url 为空时使用 DATABASE_URL。"""
    url = url or settings.DATABASE_URL
    engine = create_async_engine(url, echo=settings.DATABASE_ECHO, **engine_kwargs)
    if url.startswith("sqlite"):
        _use_immediate_transactions(engine)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, session_factory


engine, AsyncSessionLocal = create_engine_and_session()


async def get_db():
    """FastAPI 依赖：每个请求一个会话"""
    async with AsyncSessionLocal() as session:
        yield session


def create_async_engine_and_session_for_celery():
    """Celery 任务内使用：每个任务在自己的事件循环里新建 engine，不能复用全局 engine。"""
    return create_engine_and_session()


def utcnow() -> datetime:
    """库内统一存储无时区的 UTC 时间"""
    return datetime.utcnow()
