import json
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from conftest import API_KEY, API_V3_KEY, APP_ID, MCH_ID, NOW, json_notification, xml_notification
from subscription_engine.core.exceptions import GatewayError, TransientGatewayError
from subscription_engine.schemas.payment import PaymentEvent, PaymentOutcome, VerificationFailure
from subscription_engine.services.payment_gateway import (
    PaymentGatewayAdapter,
    build_sign,
    build_v3_signature,
    decrypt_resource,
    encrypt_resource,
    map_trade_state,
    parse_gateway_time,
    parse_xml,
    to_xml,
    yuan_to_fen,
)


def test_build_sign_matches_documented_example():
    params = {
        "appid": "wxd930ea5d5a258f4f",
        "mch_id": "10000100",
        "device_info": "1000",
        "body": "test",
        "nonce_str": "ibuaiVcKdpRxkhJA",
    }
    assert build_sign(params, "192006250b4c09247ec02edce69f6a2d") == "9A0A8659F005D6984697E2CA0A9CF3B7"


def test_build_sign_skips_empty_values_and_sign_field():
    params = {"a": "1", "b": "", "c": None, "sign": "XXX"}
    assert build_sign(params, "k") == build_sign({"a": "1"}, "k")


def test_xml_round_trip_keeps_values():
    text = to_xml({"return_code": "SUCCESS", "total_fee": 6900})
    assert "<total_fee>6900</total_fee>" in text
    assert parse_xml(text) == {"return_code": "SUCCESS", "total_fee": "6900"}


def test_parse_xml_rejects_doctype():
    with pytest.raises(ValueError):
        parse_xml('<!DOCTYPE xml [<!ENTITY x "y">]><xml><a>&x;</a></xml>')


def test_parse_gateway_time_converts_beijing_to_utc():
    assert parse_gateway_time("20260302120000") == datetime(2026, 3, 2, 4, 0, 0)
    assert parse_gateway_time("2026-03-02T12:00:00+08:00") == datetime(2026, 3, 2, 4, 0, 0)
    assert parse_gateway_time("garbage") is None


def test_map_trade_state():
    assert map_trade_state("SUCCESS") == PaymentOutcome.SUCCESS
    assert map_trade_state("NOTPAY") == PaymentOutcome.PENDING
    assert map_trade_state("CLOSED") == PaymentOutcome.FAILURE
    assert map_trade_state("REFUND") == PaymentOutcome.FAILURE
    assert map_trade_state(None) == PaymentOutcome.PENDING


def test_yuan_to_fen_rounds_half_up():
    assert yuan_to_fen(Decimal("69")) == 6900
    assert yuan_to_fen("0.015") == 2


def test_resource_encryption_round_trip_and_tamper():
    ciphertext = encrypt_resource('{"out_trade_no": "SUB1"}', API_V3_KEY, "fdasflkja484", "transaction")
    resource = {"ciphertext": ciphertext, "nonce": "fdasflkja484", "associated_data": "transaction"}
    assert decrypt_resource(resource, API_V3_KEY) == {"out_trade_no": "SUB1"}
    with pytest.raises(ValueError):
        decrypt_resource({**resource, "associated_data": "other"}, API_V3_KEY)


class TestXmlNotification:
    def test_success_event(self, gateway):
        event = gateway.decode_notification(xml_notification("SUB1").encode("utf-8"))
        assert isinstance(event, PaymentEvent)
        assert event.order_id == "SUB1"
        assert event.outcome == PaymentOutcome.SUCCESS
        assert event.amount_paid == Decimal("69.00")
        assert event.paid_at == datetime(2026, 3, 2, 4, 0, 0)
        assert event.transaction_id == "4200000001202603020000000001"

    def test_hmac_sha256_sign_type(self, gateway):
        params = {
            "appid": APP_ID,
            "mch_id": MCH_ID,
            "return_code": "SUCCESS",
            "result_code": "SUCCESS",
            "out_trade_no": "SUB2",
            "total_fee": 100,
            "sign_type": "HMAC-SHA256",
        }
        params["sign"] = build_sign(params, API_KEY, "HMAC-SHA256")
        event = gateway.decode_notification(to_xml(params))
        assert isinstance(event, PaymentEvent)
        assert event.amount_paid == Decimal("1.00")

    def test_tampered_amount_is_rejected(self, gateway):
        body = xml_notification("SUB1").replace("<total_fee>6900</total_fee>", "<total_fee>1</total_fee>")
        result = gateway.decode_notification(body)
        assert isinstance(result, VerificationFailure)
        assert result.reason == "bad_signature"
        assert not result.is_malformed

    def test_wrong_key_is_rejected(self, gateway):
        result = gateway.decode_notification(xml_notification("SUB1", key="another-key"))
        assert result.reason == "bad_signature"

    def test_missing_signature(self, gateway):
        body = "<xml><return_code>SUCCESS</return_code><out_trade_no>SUB1</out_trade_no></xml>"
        result = gateway.decode_notification(body)
        assert result.reason == "missing_signature"

    def test_other_merchant_is_rejected(self, gateway):
        result = gateway.decode_notification(xml_notification("SUB1", mch_id="1900000999"))
        assert result.reason == "mch_mismatch"

    def test_malformed_body(self, gateway):
        result = gateway.decode_notification("<xml><unclosed></xml>", {"Content-Type": "text/xml"})
        assert result.reason == "malformed"
        assert result.is_malformed

    def test_failed_payment_becomes_failure_event(self, gateway):
        body = xml_notification("SUB1", result_code="FAIL", err_code="NOTENOUGH", err_code_des="余额不足")
        event = gateway.decode_notification(body)
        assert event.outcome == PaymentOutcome.FAILURE
        assert event.failure_reason == "余额不足"
        assert event.amount_paid is None


class TestJsonNotification:
    def _data(self, **overrides):
        data = {
            "mchid": MCH_ID,
            "appid": APP_ID,
            "out_trade_no": "SUB1",
            "transaction_id": "4200000002",
            "trade_state": "SUCCESS",
            "success_time": "2026-03-02T12:00:00+08:00",
            "amount": {"total": 9900, "payer_total": 9900, "currency": "CNY"},
        }
        data.update(overrides)
        return data

    def test_encrypted_success(self, gateway):
        body, headers = json_notification(self._data())
        event = gateway.decode_notification(body, headers, now=NOW)
        assert isinstance(event, PaymentEvent)
        assert event.outcome == PaymentOutcome.SUCCESS
        assert event.amount_paid == Decimal("99.00")
        assert event.paid_at == datetime(2026, 3, 2, 4, 0, 0)

    def test_plain_resource(self, gateway):
        body, headers = json_notification(self._data(), encrypt=False)
        event = gateway.decode_notification(body, headers, now=NOW)
        assert event.order_id == "SUB1"

    def test_closed_trade_is_failure(self, gateway):
        body, headers = json_notification(self._data(trade_state="CLOSED", trade_state_desc="订单已关闭"))
        event = gateway.decode_notification(body, headers, now=NOW)
        assert event.outcome == PaymentOutcome.FAILURE
        assert event.failure_reason == "订单已关闭"
        assert event.amount_paid is None

    def test_stale_timestamp(self, gateway):
        body, headers = json_notification(self._data(), now=NOW - timedelta(minutes=10))
        result = gateway.decode_notification(body, headers, now=NOW)
        assert result.reason == "stale_timestamp"

    def test_tampered_body(self, gateway):
        body, headers = json_notification(self._data(), encrypt=False)
        tampered = body.replace("9900", "1")
        result = gateway.decode_notification(tampered, headers, now=NOW)
        assert result.reason == "bad_signature"

    def test_missing_headers(self, gateway):
        body, _ = json_notification(self._data())
        result = gateway.decode_notification(body, {"Content-Type": "application/json"}, now=NOW)
        assert result.reason == "missing_signature_headers"

    def test_undecryptable_resource(self, gateway):
        # 密文用另一把密钥加密，签名用正确的密钥，只让解密失败
        body, headers = json_notification(self._data(), key="f" * 32)
        headers["Wechatpay-Signature"] = build_v3_signature(
            headers["Wechatpay-Timestamp"], headers["Wechatpay-Nonce"], body, API_V3_KEY
        )
        result = gateway.decode_notification(body, headers, now=NOW)
        assert result.reason == "bad_ciphertext"
        assert result.is_malformed


def test_acknowledgement_formats():
    body, media_type = PaymentGatewayAdapter.acknowledgement("xml", True)
    assert media_type == "application/xml"
    assert parse_xml(body) == {"return_code": "SUCCESS", "return_msg": "OK"}
    body, media_type = PaymentGatewayAdapter.acknowledgement("json", False, "验签失败")
    assert media_type == "application/json"
    assert json.loads(body) == {"code": "FAIL", "message": "验签失败"}


def _signed_response(**params) -> str:
    base = {"return_code": "SUCCESS", "appid": APP_ID, "mch_id": MCH_ID, "nonce_str": "abc"}
    base.update(params)
    base["sign"] = build_sign(base, API_KEY)
    return to_xml(base)


def _live_gateway(handler) -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter(
        app_id=APP_ID,
        mch_id=MCH_ID,
        api_key=API_KEY,
        api_v3_key=API_V3_KEY,
        base_url="https://gateway.test",
        mock_mode=False,
        transport=httpx.MockTransport(handler),
    )


class TestQueryStatus:
    async def test_paid_order(self):
        def handler(request):
            assert request.url.path == "/pay/orderquery"
            sent = parse_xml(request.content.decode("utf-8"))
            assert sent["out_trade_no"] == "SUB1"
            assert sent["sign"] == build_sign(sent, API_KEY)
            return httpx.Response(200, text=_signed_response(
                result_code="SUCCESS", trade_state="SUCCESS", out_trade_no="SUB1",
                transaction_id="4200000003", total_fee="6900", time_end="20260302120000",
            ))

        event = await _live_gateway(handler).query_status("SUB1")
        assert event.outcome == PaymentOutcome.SUCCESS
        assert event.amount_paid == Decimal("69.00")
        assert event.source == "query"

    async def test_unpaid_order_is_pending(self):
        def handler(request):
            return httpx.Response(200, text=_signed_response(result_code="SUCCESS", trade_state="NOTPAY", out_trade_no="SUB1"))

        event = await _live_gateway(handler).query_status("SUB1")
        assert event.outcome == PaymentOutcome.PENDING

    async def test_order_not_exist_is_pending(self):
        def handler(request):
            return httpx.Response(200, text=_signed_response(result_code="FAIL", err_code="ORDERNOTEXIST"))

        event = await _live_gateway(handler).query_status("SUB1")
        assert event.outcome == PaymentOutcome.PENDING

    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientGatewayError):
            await _live_gateway(handler).query_status("SUB1")

    async def test_server_error_is_transient(self):
        with pytest.raises(TransientGatewayError):
            await _live_gateway(lambda request: httpx.Response(502)).query_status("SUB1")

    async def test_system_error_is_transient(self):
        def handler(request):
            return httpx.Response(200, text=_signed_response(result_code="FAIL", err_code="SYSTEMERROR"))

        with pytest.raises(TransientGatewayError):
            await _live_gateway(handler).query_status("SUB1")

    async def test_client_error_is_not_transient(self):
        with pytest.raises(GatewayError) as exc_info:
            await _live_gateway(lambda request: httpx.Response(400)).query_status("SUB1")
        assert not isinstance(exc_info.value, TransientGatewayError)

    async def test_unsigned_response_is_rejected(self):
        def handler(request):
            return httpx.Response(200, text=to_xml({"return_code": "SUCCESS", "result_code": "SUCCESS", "trade_state": "SUCCESS"}))

        with pytest.raises(GatewayError):
            await _live_gateway(handler).query_status("SUB1")

    async def test_mock_mode_is_pending(self, gateway):
        event = await gateway.query_status("SUB1")
        assert event.outcome == PaymentOutcome.PENDING


async def test_close_order_reports_paid():
    def handler(request):
        return httpx.Response(200, text=_signed_response(result_code="FAIL", err_code="ORDERPAID"))

    assert await _live_gateway(handler).close_order("SUB1") is False


async def test_create_native_order():
    def handler(request):
        sent = parse_xml(request.content.decode("utf-8"))
        assert sent["trade_type"] == "NATIVE"
        assert sent["total_fee"] == "6900"
        return httpx.Response(200, text=_signed_response(
            result_code="SUCCESS", code_url="weixin://wxpay/bizpayurl?pr=abc", prepay_id="wx201410272009395522657a690389285100",
        ))

    order = await _live_gateway(handler).create_native_order("SUB1", Decimal("69"), "订阅 基础版", "u1")
    assert order["code_url"] == "weixin://wxpay/bizpayurl?pr=abc"


async def test_mock_order_url(gateway):
    order = await gateway.create_native_order("SUB1", Decimal("69"), "订阅 基础版", "u1")
    assert order["code_url"] == "weixin://wxpay/bizpayurl?pr=mock_SUB1"
