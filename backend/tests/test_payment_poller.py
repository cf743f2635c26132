import asyncio
from datetime import timedelta

import pytest

from subscription_engine.core.database import utcnow
from subscription_engine.core.exceptions import TransientGatewayError
from subscription_engine.schemas.payment import ReconciliationResult, ReconcileStatus
from subscription_engine.services.payment_poller import PaymentPoller, PollerState, state_for_result


def _result(payment_status, status=ReconcileStatus.APPLIED):
    return ReconciliationResult(status=status, order_id="SUB1", payment_status=payment_status)


PENDING = _result("pending", ReconcileStatus.STILL_PENDING)


class FakeQuery:
    """按顺序返回预设结果，用完后一直返回待支付"""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self, order_id):
        self.calls += 1
        item = self.results.pop(0) if self.results else PENDING
        if isinstance(item, Exception):
            raise item
        return item


def test_state_for_result():
    assert state_for_result(_result("completed")) == PollerState.SUCCEEDED
    assert state_for_result(_result("failed")) == PollerState.FAILED
    assert state_for_result(_result("cancelled")) == PollerState.EXPIRED
    assert state_for_result(PENDING) is None


async def test_success_stops_polling():
    query = FakeQuery(PENDING, PENDING, _result("completed"))
    expired = []

    async def on_expire(order_id):
        expired.append(order_id)

    poller = PaymentPoller("SUB1", utcnow() + timedelta(seconds=5), query, on_expire=on_expire, interval=0.01)
    state = await asyncio.wait_for(poller.run(), timeout=2)

    assert state == PollerState.SUCCEEDED
    assert query.calls == 3
    assert expired == []
    await asyncio.sleep(0.05)
    assert query.calls == 3


async def test_failure_is_terminal():
    poller = PaymentPoller("SUB1", utcnow() + timedelta(seconds=5), FakeQuery(_result("failed")), interval=0.01)
    assert await asyncio.wait_for(poller.run(), timeout=2) == PollerState.FAILED


async def test_expiry_stops_polling():
    query = FakeQuery()
    expired = []

    async def on_expire(order_id):
        expired.append(order_id)
        return _result("cancelled")

    poller = PaymentPoller("SUB1", utcnow() + timedelta(seconds=0.2), query, on_expire=on_expire, interval=0.03)
    state = await asyncio.wait_for(poller.run(), timeout=2)

    assert state == PollerState.EXPIRED
    assert expired == ["SUB1"]
    assert query.calls >= 1
    calls = query.calls
    await asyncio.sleep(0.1)
    assert query.calls == calls


async def test_paid_at_expiry_counts_as_success():
    async def on_expire(order_id):
        return _result("completed")

    poller = PaymentPoller("SUB1", utcnow() + timedelta(seconds=0.05), FakeQuery(), on_expire=on_expire, interval=1)
    assert await asyncio.wait_for(poller.run(), timeout=2) == PollerState.SUCCEEDED


async def test_transient_errors_are_retried():
    query = FakeQuery(TransientGatewayError("timeout"), TransientGatewayError("timeout"), _result("completed"))
    poller = PaymentPoller("SUB1", utcnow() + timedelta(seconds=5), query, interval=0.01)

    assert await asyncio.wait_for(poller.run(), timeout=2) == PollerState.SUCCEEDED
    assert poller.poll_count == 3


async def test_reconcile_errors_are_retried():
    query = FakeQuery(RuntimeError("database is locked"), _result("completed"))
    poller = PaymentPoller("SUB1", utcnow() + timedelta(seconds=5), query, interval=0.01)

    assert await asyncio.wait_for(poller.run(), timeout=2) == PollerState.SUCCEEDED
    assert query.calls == 2


async def test_persistent_reconcile_errors_end_in_expiry():
    query = FakeQuery(*[RuntimeError("database is locked")] * 100)
    poller = PaymentPoller("SUB1", utcnow() + timedelta(seconds=0.3), query, interval=0.02)

    assert await asyncio.wait_for(poller.run(), timeout=2) == PollerState.EXPIRED
    assert query.calls > 1


async def test_already_expired_order_expires_immediately():
    query = FakeQuery()
    poller = PaymentPoller("SUB1", utcnow() - timedelta(minutes=1), query, interval=0.5)
    assert await asyncio.wait_for(poller.run(), timeout=2) == PollerState.EXPIRED
    assert query.calls == 0


async def test_stop_before_terminal_returns_to_idle():
    poller = PaymentPoller("SUB1", utcnow() + timedelta(seconds=5), FakeQuery(), interval=0.01)
    poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()
    assert poller.state == PollerState.IDLE
    assert not poller.is_terminal


async def test_start_twice_is_rejected():
    poller = PaymentPoller("SUB1", utcnow() + timedelta(seconds=5), FakeQuery(), interval=0.01)
    poller.start()
    try:
        with pytest.raises(RuntimeError):
            poller.start()
    finally:
        await poller.stop()
