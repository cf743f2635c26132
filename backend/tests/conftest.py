"""
测试公共夹具：每个测试独立的 SQLite 文件库、fakeredis、模拟模式的支付网关
"""
import json
from datetime import datetime, timedelta, timezone

import fakeredis
import httpx
import pytest

from subscription_engine import models  # noqa: F401  注册全部表
from subscription_engine.core.database import Base, create_engine_and_session
from subscription_engine.core.security import create_access_token
from subscription_engine.models.subscription import Subscription
from subscription_engine.services import cache_service, quota_ledger
from subscription_engine.services.payment_gateway import (
    PaymentGatewayAdapter,
    build_sign,
    build_v3_signature,
    encrypt_resource,
    to_xml,
)
from subscription_engine.services.plan_service import PlanService

APP_ID = "wx_test_app"
MCH_ID = "1900000109"
API_KEY = "test-api-key-0123456789abcdefabcd"
API_V3_KEY = "0123456789abcdef0123456789abcdef"

# 2026-03-02 04:00 UTC，北京时间周一 12:00
NOW = datetime(2026, 3, 2, 4, 0, 0)


def fixed_clock(value: datetime = NOW):
    return lambda: value


def xml_notification(
    order_id: str,
    total_fee: int = 6900,
    result_code: str = "SUCCESS",
    transaction_id: str = "4200000001202603020000000001",
    mch_id: str = MCH_ID,
    key: str = API_KEY,
    **extra,
) -> str:
    """构造带签名的 v2 XML 支付通知"""
    params = {
        "appid": APP_ID,
        "mch_id": mch_id,
        "nonce_str": "5K8264ILTKCH16CQ2502SI8ZNMTM67VS",
        "return_code": "SUCCESS",
        "result_code": result_code,
        "out_trade_no": order_id,
        "transaction_id": transaction_id,
        "total_fee": total_fee,
        "time_end": "20260302120000",
        "trade_type": "NATIVE",
    }
    params.update(extra)
    params["sign"] = build_sign(params, key)
    return to_xml(params)


def json_notification(data: dict, now: datetime = NOW, encrypt: bool = True, key: str = API_V3_KEY):
    """构造 v3 JSON 通知，返回 (报文, 头部)"""
    if encrypt:
        nonce = "fdasflkja484"
        resource = {
            "algorithm": "AEAD_AES_256_GCM",
            "ciphertext": encrypt_resource(json.dumps(data), key, nonce, "transaction"),
            "nonce": nonce,
            "associated_data": "transaction",
        }
    else:
        resource = data
    body = json.dumps({"id": "EV-2018022511223320873", "event_type": "TRANSACTION.SUCCESS", "resource": resource})
    timestamp = str(int(now.replace(tzinfo=timezone.utc).timestamp()))
    headers = {
        "Content-Type": "application/json",
        "Wechatpay-Timestamp": timestamp,
        "Wechatpay-Nonce": "n0nce",
        "Wechatpay-Signature": build_v3_signature(timestamp, "n0nce", body, key),
    }
    return body, headers


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    """缓存与配额计数共用一个 fakeredis"""
    client = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(cache_service, "_redis_client", client)
    monkeypatch.setattr(quota_ledger, "_redis_client", client)
    yield client
    client.flushall()


@pytest.fixture
async def session_factory(tmp_path):
    """独立的 SQLite 文件库，已建表并写入默认套餐"""
    url = f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine, factory = create_engine_and_session(url, connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with factory() as session:
        await PlanService(session).ensure_default_plans()
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return PaymentGatewayAdapter(
        app_id=APP_ID,
        mch_id=MCH_ID,
        api_key=API_KEY,
        api_v3_key=API_V3_KEY,
        notify_url="https://example.com/api/v1/payments/notify",
        mock_mode=True,
    )


@pytest.fixture
def make_subscription(session_factory):
    """直接写入一条订阅记录，配额取自套餐"""
    async def _make(user_id: str, tier: str, status: str = "active", end_date: datetime = None, start_date: datetime = None):
        async with session_factory() as session:
            plan = await PlanService(session).get_plan_by_tier(tier)
            sub = Subscription(
                user_id=user_id,
                plan_id=plan.id,
                tier=tier,
                status=status,
                start_date=start_date or NOW - timedelta(days=1),
                end_date=end_date or NOW + timedelta(days=29),
                payment_method="wechat_pay",
                auto_renew=status == "active",
                quotas=dict(plan.quotas),
            )
            session.add(sub)
            await session.commit()
            return sub
    return _make


@pytest.fixture
async def client(session_factory, gateway):
    """ASGI 测试客户端，不触发 lifespan，数据库与网关使用测试夹具"""
    from subscription_engine.api.deps import get_gateway
    from subscription_engine.core.database import get_db
    from subscription_engine.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
