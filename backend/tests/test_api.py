from datetime import timedelta

import redis
from sqlalchemy import select

from conftest import auth_headers, xml_notification
from subscription_engine.core.database import utcnow
from subscription_engine.models.payment_record import PaymentRecord
from subscription_engine.services.payment_gateway import parse_xml
from subscription_engine.services import quota_ledger


async def _basic_plan_id(client):
    resp = await client.get("/api/v1/subscriptions/plans")
    return next(p["id"] for p in resp.json()["plans"] if p["tier"] == "basic")


async def test_plans_are_public(client):
    resp = await client.get("/api/v1/subscriptions/plans")
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 3
    assert [p["tier"] for p in body["plans"]] == ["free", "basic", "pro"]
    # 第二次命中缓存
    assert (await client.get("/api/v1/subscriptions/plans")).json() == body


async def test_authentication_required(client):
    resp = await client.get("/api/v1/subscriptions/current")
    assert resp.status_code == 401
    resp = await client.get("/api/v1/subscriptions/current", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401


async def test_current_defaults_to_free(client):
    resp = await client.get("/api/v1/subscriptions/current", headers=auth_headers("u1"))
    assert resp.status_code == 200
    assert resp.json()["tier"] == "free"
    assert resp.json()["subscription"] is None


async def test_order_then_notify_then_poll(client, session_factory):
    headers = auth_headers("u1")
    # 先读一次当前权益，写入缓存
    await client.get("/api/v1/subscriptions/current", headers=headers)

    resp = await client.post("/api/v1/payments/orders", json={"plan_id": await _basic_plan_id(client)}, headers=headers)
    assert resp.status_code == 201
    order = resp.json()
    assert set(order) >= {"orderId", "qrCodeUrl", "expiresAt", "amount"}
    assert order["qrCodeUrl"].startswith("weixin://wxpay/bizpayurl")

    poll = await client.get("/api/v1/payments/callback", params={"orderId": order["orderId"]}, headers=headers)
    assert poll.status_code == 200
    assert poll.json()["data"]["status"] == "pending"

    notify = await client.post(
        "/api/v1/payments/notify",
        content=xml_notification(order["orderId"]).encode("utf-8"),
        headers={"Content-Type": "text/xml"},
    )
    assert notify.status_code == 200
    assert notify.headers["content-type"].startswith("application/xml")
    assert parse_xml(notify.text)["return_code"] == "SUCCESS"

    poll = await client.get("/api/v1/payments/callback", params={"orderId": order["orderId"]}, headers=headers)
    data = poll.json()["data"]
    assert poll.json()["success"] is True
    assert data["orderId"] == order["orderId"]
    assert data["status"] == "completed"
    assert data["message"] == "支付成功，订阅已生效"
    assert data["subscriptionStatus"] == "active"

    current = await client.get("/api/v1/subscriptions/current", headers=headers)
    assert current.json()["tier"] == "basic"
    assert current.json()["subscription"]["status"] == "active"

    async with session_factory() as session:
        record = (await session.execute(select(PaymentRecord))).scalar_one()
    assert record.status == "completed"


async def test_notify_with_bad_signature(client):
    headers = auth_headers("u1")
    resp = await client.post("/api/v1/payments/orders", json={"plan_id": await _basic_plan_id(client)}, headers=headers)
    order_id = resp.json()["orderId"]

    notify = await client.post("/api/v1/payments/notify", content=xml_notification(order_id, key="forged"))
    assert notify.status_code == 401
    assert parse_xml(notify.text)["return_code"] == "FAIL"

    detail = await client.get(f"/api/v1/payments/orders/{order_id}", headers=headers)
    assert detail.json()["status"] == "pending"


async def test_poll_unknown_or_foreign_order(client):
    resp = await client.get("/api/v1/payments/callback", params={"orderId": "SUB-NOPE"}, headers=auth_headers("u1"))
    assert resp.status_code == 404

    created = await client.post(
        "/api/v1/payments/orders", json={"plan_id": await _basic_plan_id(client)}, headers=auth_headers("u1")
    )
    resp = await client.get(
        "/api/v1/payments/callback", params={"orderId": created.json()["orderId"]}, headers=auth_headers("u2")
    )
    assert resp.status_code == 404


async def test_order_for_unknown_plan(client):
    resp = await client.post("/api/v1/payments/orders", json={"plan_id": 999}, headers=auth_headers("u1"))
    assert resp.status_code == 404
    assert "request_id" in resp.json()


async def test_quota_consume_and_recommendation(client):
    headers = auth_headers("u1")
    for _ in range(5):
        resp = await client.post("/api/v1/quotas/create/consume", json={}, headers=headers)
        assert resp.json()["decision"]["allowed"] is True

    resp = await client.post("/api/v1/quotas/create/consume", json={"amount": 1}, headers=headers)
    body = resp.json()
    assert resp.status_code == 200
    assert body["decision"]["allowed"] is False
    assert body["decision"]["remaining"] == 0
    assert body["recommendation"]["urgency"] == "high"
    assert body["recommendation"]["recommended_tier"] == "basic"

    status = await client.get("/api/v1/quotas", headers=headers)
    assert status.json()["usages"]["create"]["warning_level"] == "exceeded"


async def test_unknown_quota_dimension(client):
    resp = await client.get("/api/v1/quotas/video", headers=auth_headers("u1"))
    assert resp.status_code == 404


class _DownRedis:
    def eval(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")

    def get(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")


async def test_quota_backend_down_is_503(client, monkeypatch):
    monkeypatch.setattr(quota_ledger, "_redis_client", _DownRedis())
    resp = await client.post(
        "/api/v1/quotas/create/consume", json={"amount": 1}, headers=auth_headers("u1"),
    )
    assert resp.status_code == 503
    assert resp.json()["detail"].startswith("配额服务暂不可用")
    assert "request_id" in resp.json()


async def test_cancel_and_audit_log(client, make_subscription):
    now = utcnow()
    await make_subscription("u1", "basic", start_date=now, end_date=now + timedelta(days=30))
    headers = auth_headers("u1")
    resp = await client.post("/api/v1/subscriptions/cancel", json={"reason": "暂时不用"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    again = await client.post("/api/v1/subscriptions/cancel", json={}, headers=headers)
    assert again.status_code == 409

    logs = await client.get("/api/v1/audit-logs", headers=headers)
    assert logs.json()["total"] == 1
    assert logs.json()["items"][0]["action"] == "subscription_cancelled"


async def test_upgrade_recommendation_endpoint(client):
    resp = await client.get("/api/v1/upgrade/recommendation", headers=auth_headers("u1"))
    assert resp.status_code == 200
    assert "should_show" in resp.json()
