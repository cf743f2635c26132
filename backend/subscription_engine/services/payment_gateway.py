"""
支付网关适配（微信扫码支付）
- 回调解码与验签：XML（v2，sign 字段）与 JSON（v3，Wechatpay-* 头部签名，resource 可加密）
- 主动查单、下单、关单：v2 XML 接口，httpx 异步调用，短超时
回调与查单都归一化为 PaymentEvent，对账引擎不区分来源。
"""
import base64
import hashlib
import hmac
import json
import logging
import secrets
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Mapping, Optional, Tuple, Union

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from subscription_engine.core.config import settings
from subscription_engine.core.database import utcnow
from subscription_engine.core.exceptions import GatewayError, TransientGatewayError
from subscription_engine.schemas.payment import PaymentEvent, PaymentOutcome, VerificationFailure

logger = logging.getLogger(__name__)

# 网关交易状态 → 归一化结果
TRADE_STATE_OUTCOMES = {
    "SUCCESS": PaymentOutcome.SUCCESS,
    "NOTPAY": PaymentOutcome.PENDING,
    "USERPAYING": PaymentOutcome.PENDING,
    "CLOSED": PaymentOutcome.FAILURE,
    "REVOKED": PaymentOutcome.FAILURE,
    "PAYERROR": PaymentOutcome.FAILURE,
    "REFUND": PaymentOutcome.FAILURE,
}

# v2 接口时间为北京时间
_GATEWAY_TZ = timezone(timedelta(hours=8))


# ---------- 签名与编解码 ---------- #
def build_sign(params: Mapping[str, Any], api_key: str, sign_type: str = "MD5") -> str:
    """v2 签名：非空参数按 key 排序拼成 k=v&k=v，末尾加 &key=密钥，MD5 或 HMAC-SHA256 后转大写"""
    pairs = [
        f"{k}={v}"
        for k, v in sorted(params.items())
        if k != "sign" and v is not None and v != ""
    ]
    payload = "&".join(pairs) + f"&key={api_key}"
    if (sign_type or "MD5").upper() == "HMAC-SHA256":
        digest = hmac.new(api_key.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()
    else:
        digest = hashlib.md5(payload.encode("utf-8")).hexdigest()
    return digest.upper()


def to_xml(params: Mapping[str, Any]) -> str:
    """字典转 v2 XML，数字直接输出，字符串用 CDATA 包裹"""
    parts = ["<xml>"]
    for k, v in params.items():
        if v is None:
            continue
        if isinstance(v, int) and not isinstance(v, bool):
            parts.append(f"<{k}>{v}</{k}>")
        else:
            parts.append(f"<{k}><![CDATA[{v}]]></{k}>")
    parts.append("</xml>")
    return "".join(parts)


def parse_xml(text: str) -> dict:
    """解析 v2 XML 为扁平字典，格式不合法时抛 ValueError"""
    if "<!DOCTYPE" in text or "<!ENTITY" in text:
        raise ValueError("XML 不允许包含 DTD")
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ValueError(f"XML 解析失败: {e}") from e
    if root.tag != "xml":
        raise ValueError("XML 根节点应为 <xml>")
    return {child.tag: (child.text or "").strip() for child in root}


def build_v3_signature(timestamp: str, nonce: str, body: str, api_v3_key: str) -> str:
    """JSON 回调签名：base64(HMAC-SHA256(v3 密钥, "时间戳\\n随机串\\n报文\\n"))"""
    message = f"{timestamp}\n{nonce}\n{body}\n"
    digest = hmac.new(api_v3_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def encrypt_resource(plaintext: str, api_v3_key: str, nonce: str, associated_data: str = "") -> str:
    """AES-256-GCM 加密回调 resource，返回 base64 密文（含 16 字节认证标签）。联调与测试构造通知时使用。"""
    aes = AESGCM(api_v3_key.encode("utf-8"))
    data = aes.encrypt(nonce.encode("utf-8"), plaintext.encode("utf-8"), associated_data.encode("utf-8") or None)
    return base64.b64encode(data).decode("ascii")


def decrypt_resource(resource: Mapping[str, Any], api_v3_key: str) -> dict:
    """解密回调 resource，认证失败或内容不是 JSON 时抛 ValueError"""
    ciphertext = resource.get("ciphertext")
    nonce = resource.get("nonce")
    if not ciphertext or not nonce:
        raise ValueError("resource 缺少 ciphertext 或 nonce")
    associated_data = resource.get("associated_data") or ""
    try:
        aes = AESGCM(api_v3_key.encode("utf-8"))
        plain = aes.decrypt(
            nonce.encode("utf-8"),
            base64.b64decode(ciphertext),
            associated_data.encode("utf-8") or None,
        )
        return json.loads(plain.decode("utf-8"))
    except (InvalidTag, ValueError, TypeError) as e:
        raise ValueError(f"resource 解密失败: {e}") from e


def parse_gateway_time(value: Optional[str]) -> Optional[datetime]:
    """网关时间转为无时区 UTC：v2 为 yyyyMMddHHmmss（北京时间），v3 为 ISO 8601"""
    if not value:
        return None
    value = value.strip()
    try:
        if len(value) == 14 and value.isdigit():
            dt = datetime.strptime(value, "%Y%m%d%H%M%S").replace(tzinfo=_GATEWAY_TZ)
        else:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("无法解析网关时间: %s", value)
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def fen_to_yuan(fen: Union[int, str, None]) -> Optional[Decimal]:
    if fen is None or fen == "":
        return None
    return (Decimal(int(fen)) / Decimal(100)).quantize(Decimal("0.01"))


def yuan_to_fen(amount: Union[Decimal, float, str]) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def generate_nonce() -> str:
    return secrets.token_hex(16)


def map_trade_state(state: Optional[str]) -> PaymentOutcome:
    """未知或缺失的交易状态按待支付处理，不据此判定失败"""
    if not state:
        return PaymentOutcome.PENDING
    return TRADE_STATE_OUTCOMES.get(state.upper(), PaymentOutcome.FAILURE)


def _lower_headers(headers: Optional[Mapping[str, str]]) -> dict:
    if not headers:
        return {}
    return {str(k).lower(): v for k, v in headers.items()}


def detect_encoding(body: str, headers: Optional[Mapping[str, str]] = None) -> str:
    """按 Content-Type 判断，其次看报文首字符。返回 xml | json | unknown"""
    content_type = _lower_headers(headers).get("content-type", "").lower()
    if "json" in content_type:
        return "json"
    if "xml" in content_type:
        return "xml"
    stripped = body.lstrip()
    if stripped.startswith("<"):
        return "xml"
    if stripped.startswith("{"):
        return "json"
    return "unknown"


class PaymentGatewayAdapter:
    """
    微信支付适配器。参数默认取自 settings，测试可覆盖。
    mock_mode 只影响对外调用（下单返回模拟链接、查单返回待支付）；回调验签始终执行。
    """

    def __init__(
        self,
        app_id: Optional[str] = None,
        mch_id: Optional[str] = None,
        api_key: Optional[str] = None,
        api_v3_key: Optional[str] = None,
        notify_url: Optional[str] = None,
        base_url: Optional[str] = None,
        mock_mode: Optional[bool] = None,
        timeout: Optional[float] = None,
        max_skew_seconds: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.app_id = app_id if app_id is not None else settings.WECHAT_APP_ID
        self.mch_id = mch_id if mch_id is not None else settings.WECHAT_MCH_ID
        self.api_key = api_key if api_key is not None else settings.WECHAT_API_KEY
        self.api_v3_key = api_v3_key if api_v3_key is not None else settings.WECHAT_API_V3_KEY
        self.notify_url = notify_url if notify_url is not None else settings.WECHAT_NOTIFY_URL
        self.base_url = (base_url or settings.WECHAT_API_BASE_URL).rstrip("/")
        self.mock_mode = settings.PAYMENT_MOCK_MODE if mock_mode is None else mock_mode
        self.timeout = timeout if timeout is not None else settings.PAYMENT_QUERY_TIMEOUT
        self.max_skew_seconds = (
            max_skew_seconds if max_skew_seconds is not None else settings.PAYMENT_NOTIFY_MAX_SKEW_SECONDS
        )
        self.transport = transport
        self.clock = clock or utcnow

    # ---------- 回调 ---------- #
    def decode_notification(
        self,
        raw_body: Union[bytes, str],
        headers: Optional[Mapping[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> Union[PaymentEvent, VerificationFailure]:
        """验签并解码回调。只依赖入参与配置，不抛异常，不修改任何状态。"""
        if isinstance(raw_body, bytes):
            try:
                body = raw_body.decode("utf-8")
            except UnicodeDecodeError:
                return self._reject("malformed", "unknown", "报文不是 UTF-8")
        else:
            body = raw_body
        encoding = detect_encoding(body, headers)
        if encoding == "xml":
            return self._decode_xml(body)
        if encoding == "json":
            return self._decode_json(body, _lower_headers(headers), now or self.clock())
        return self._reject("malformed", "unknown", "无法识别的回调格式")

    def _reject(self, reason: str, encoding: str, detail: Optional[str] = None) -> VerificationFailure:
        logger.warning("[security] 支付回调被拒绝 reason=%s encoding=%s detail=%s", reason, encoding, detail)
        return VerificationFailure(reason=reason, encoding=encoding, detail=detail)

    def _decode_xml(self, body: str) -> Union[PaymentEvent, VerificationFailure]:
        try:
            params = parse_xml(body)
        except ValueError as e:
            return self._reject("malformed", "xml", str(e))
        sign = params.get("sign")
        if not sign:
            return self._reject("missing_signature", "xml")
        if not self.api_key:
            return self._reject("bad_signature", "xml", "未配置签名密钥")
        expected = build_sign(params, self.api_key, params.get("sign_type", "MD5"))
        if not hmac.compare_digest(expected, sign.upper()):
            return self._reject("bad_signature", "xml", f"out_trade_no={params.get('out_trade_no')}")
        if self.mch_id and params.get("mch_id") != self.mch_id:
            return self._reject("mch_mismatch", "xml", f"mch_id={params.get('mch_id')}")
        if params.get("return_code") != "SUCCESS":
            return self._reject("malformed", "xml", params.get("return_msg") or "return_code 非 SUCCESS")
        order_id = params.get("out_trade_no")
        if not order_id:
            return self._reject("malformed", "xml", "缺少 out_trade_no")

        if params.get("result_code") == "SUCCESS":
            return PaymentEvent(
                order_id=order_id,
                transaction_id=params.get("transaction_id") or None,
                outcome=PaymentOutcome.SUCCESS,
                amount_paid=fen_to_yuan(params.get("total_fee")),
                paid_at=parse_gateway_time(params.get("time_end")),
                source="notify",
            )
        return PaymentEvent(
            order_id=order_id,
            transaction_id=params.get("transaction_id") or None,
            outcome=PaymentOutcome.FAILURE,
            failure_reason=params.get("err_code_des") or params.get("err_code") or "支付失败",
            source="notify",
        )

    def _decode_json(self, body: str, headers: dict, now: datetime) -> Union[PaymentEvent, VerificationFailure]:
        signature = headers.get("wechatpay-signature")
        timestamp = headers.get("wechatpay-timestamp")
        nonce = headers.get("wechatpay-nonce")
        if not signature or not timestamp or not nonce:
            return self._reject("missing_signature_headers", "json")
        if not self.api_v3_key:
            return self._reject("bad_signature", "json", "未配置 v3 密钥")
        try:
            ts = int(timestamp)
        except ValueError:
            return self._reject("malformed", "json", f"时间戳非法: {timestamp}")
        now_ts = int(now.replace(tzinfo=timezone.utc).timestamp())
        if abs(now_ts - ts) > self.max_skew_seconds:
            return self._reject("stale_timestamp", "json", f"timestamp={ts}")
        expected = build_v3_signature(timestamp, nonce, body, self.api_v3_key)
        if not hmac.compare_digest(expected, signature):
            return self._reject("bad_signature", "json")

        try:
            payload = json.loads(body)
        except ValueError as e:
            return self._reject("malformed", "json", str(e))
        resource = payload.get("resource") if isinstance(payload, dict) else None
        if not isinstance(resource, dict):
            return self._reject("malformed", "json", "缺少 resource")
        if resource.get("ciphertext"):
            try:
                data = decrypt_resource(resource, self.api_v3_key)
            except ValueError as e:
                return self._reject("bad_ciphertext", "json", str(e))
        else:
            data = resource
        if not isinstance(data, dict) or not data.get("out_trade_no"):
            return self._reject("malformed", "json", "缺少 out_trade_no")
        if self.mch_id and data.get("mchid") and data.get("mchid") != self.mch_id:
            return self._reject("mch_mismatch", "json", f"mchid={data.get('mchid')}")

        outcome = map_trade_state(data.get("trade_state"))
        amount = data.get("amount") or {}
        return PaymentEvent(
            order_id=data["out_trade_no"],
            transaction_id=data.get("transaction_id") or None,
            outcome=outcome,
            amount_paid=fen_to_yuan(amount.get("payer_total", amount.get("total"))) if outcome == PaymentOutcome.SUCCESS else None,
            paid_at=parse_gateway_time(data.get("success_time")),
            failure_reason=(data.get("trade_state_desc") or data.get("trade_state")) if outcome == PaymentOutcome.FAILURE else None,
            source="notify",
        )

    @staticmethod
    def acknowledgement(encoding: str, success: bool, message: str = "OK") -> Tuple[str, str]:
        """回调应答：JSON 为 {code, message}，XML 为 return_code/return_msg。返回 (报文, media_type)"""
        code = "SUCCESS" if success else "FAIL"
        if encoding == "xml":
            return to_xml({"return_code": code, "return_msg": message}), "application/xml"
        return json.dumps({"code": code, "message": message}, ensure_ascii=False), "application/json"

    # ---------- 对外调用 ---------- #
    async def _post_xml(self, path: str, params: dict) -> dict:
        """调用 v2 接口并校验响应签名。超时、网络错误、5xx 抛 TransientGatewayError。"""
        if not self.api_key or not self.mch_id:
            raise GatewayError("微信支付商户参数未配置")
        params = {k: v for k, v in params.items() if v is not None and v != ""}
        params["sign"] = build_sign(params, self.api_key)
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(
                    url,
                    content=to_xml(params).encode("utf-8"),
                    headers={"Content-Type": "text/xml; charset=utf-8"},
                )
                resp.raise_for_status()
        except httpx.TimeoutException as e:
            logger.warning("网关请求超时 %s: %s", path, e)
            raise TransientGatewayError(f"网关请求超时: {path}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning("网关返回 HTTP %s: %s", status, path)
            if status >= 500:
                raise TransientGatewayError(f"网关返回 HTTP {status}") from e
            raise GatewayError(f"网关返回 HTTP {status}") from e
        except httpx.TransportError as e:
            logger.warning("网关请求失败 %s: %s", path, e)
            raise TransientGatewayError(f"网关请求失败: {e}") from e

        try:
            data = parse_xml(resp.text)
        except ValueError as e:
            raise GatewayError("网关响应无法解析") from e
        if data.get("return_code") != "SUCCESS":
            raise GatewayError(data.get("return_msg") or "网关通信失败")
        sign = data.get("sign")
        if not sign or not hmac.compare_digest(build_sign(data, self.api_key, data.get("sign_type", "MD5")), sign.upper()):
            logger.warning("[security] 网关响应签名校验失败 path=%s", path)
            raise GatewayError("网关响应签名校验失败")
        if data.get("result_code") == "FAIL" and data.get("err_code") == "SYSTEMERROR":
            raise TransientGatewayError(data.get("err_code_des") or "网关系统繁忙")
        return data

    async def query_status(self, order_id: str) -> PaymentEvent:
        """主动查单。用户未付款时 outcome 为 pending；超时等不确定结果抛 TransientGatewayError。"""
        if self.mock_mode:
            return PaymentEvent(order_id=order_id, outcome=PaymentOutcome.PENDING, source="query")
        data = await self._post_xml(
            "/pay/orderquery",
            {
                "appid": self.app_id,
                "mch_id": self.mch_id,
                "out_trade_no": order_id,
                "nonce_str": generate_nonce(),
            },
        )
        if data.get("result_code") != "SUCCESS":
            if data.get("err_code") == "ORDERNOTEXIST":
                # 网关侧尚无该订单（未扫码下单或下单失败），视为待支付
                return PaymentEvent(order_id=order_id, outcome=PaymentOutcome.PENDING, source="query")
            raise GatewayError(data.get("err_code_des") or data.get("err_code") or "查单失败")

        outcome = map_trade_state(data.get("trade_state"))
        if outcome == PaymentOutcome.SUCCESS:
            return PaymentEvent(
                order_id=order_id,
                transaction_id=data.get("transaction_id") or None,
                outcome=outcome,
                amount_paid=fen_to_yuan(data.get("total_fee")),
                paid_at=parse_gateway_time(data.get("time_end")),
                source="query",
            )
        if outcome == PaymentOutcome.FAILURE:
            return PaymentEvent(
                order_id=order_id,
                transaction_id=data.get("transaction_id") or None,
                outcome=outcome,
                failure_reason=data.get("trade_state_desc") or data.get("trade_state"),
                source="query",
            )
        return PaymentEvent(order_id=order_id, outcome=PaymentOutcome.PENDING, source="query")

    async def create_native_order(
        self,
        order_id: str,
        amount: Decimal,
        description: str,
        user_id: str,
        client_ip: Optional[str] = None,
    ) -> dict:
        """扫码支付下单，返回 {"code_url", "prepay_id"}"""
        if self.mock_mode:
            return {"code_url": f"weixin://wxpay/bizpayurl?pr=mock_{order_id}", "prepay_id": None}
        data = await self._post_xml(
            "/pay/unifiedorder",
            {
                "appid": self.app_id,
                "mch_id": self.mch_id,
                "nonce_str": generate_nonce(),
                "body": description,
                "out_trade_no": order_id,
                "total_fee": yuan_to_fen(amount),
                "spbill_create_ip": client_ip or "127.0.0.1",
                "notify_url": self.notify_url,
                "trade_type": "NATIVE",
                "product_id": order_id,
                "attach": json.dumps({"userId": str(user_id)}),
            },
        )
        if data.get("result_code") != "SUCCESS" or not data.get("code_url"):
            raise GatewayError(data.get("err_code_des") or "下单失败，未获取到 code_url")
        return {"code_url": data["code_url"], "prepay_id": data.get("prepay_id")}

    async def close_order(self, order_id: str) -> bool:
        """关闭订单。订单已支付时返回 False，调用方应重新查单。"""
        if self.mock_mode:
            return True
        data = await self._post_xml(
            "/pay/closeorder",
            {
                "appid": self.app_id,
                "mch_id": self.mch_id,
                "out_trade_no": order_id,
                "nonce_str": generate_nonce(),
            },
        )
        if data.get("result_code") == "SUCCESS" or data.get("err_code") in ("ORDERCLOSED", "ORDERNOTEXIST"):
            return True
        if data.get("err_code") == "ORDERPAID":
            return False
        raise GatewayError(data.get("err_code_des") or data.get("err_code") or "关单失败")
