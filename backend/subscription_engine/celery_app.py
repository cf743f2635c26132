"""
Celery应用配置：到期订阅扫描、待支付订单对账、单订单服务端轮询
"""
from urllib.parse import urlparse, urlunparse, parse_qs, urlencode
from celery import Celery
from celery.signals import worker_process_init
from subscription_engine.core.config import settings
from subscription_engine.core.logging import setup_logging


def _ensure_rediss_ssl_cert_reqs(url: str, default: str = "CERT_NONE") -> str:
    """rediss:// URL 必须带 ssl_cert_reqs 参数，否则 Celery Redis 后端会报错。"""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = [default]
    new_query = urlencode(qs, doseq=True)
    return urlunparse(parsed._replace(query=new_query))


# 未单独配置时与 REDIS_URL 一致，.env 里只填 REDIS_URL 即可
_broker_url = _ensure_rediss_ssl_cert_reqs(settings.CELERY_BROKER_URL or settings.REDIS_URL)
_backend_url = _ensure_rediss_ssl_cert_reqs(settings.CELERY_RESULT_BACKEND or settings.REDIS_URL)

celery_app = Celery(
    "subscription_engine",
    broker=_broker_url,
    backend=_backend_url,
    include=["subscription_engine.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_concurrency=2,
    # 周期任务：celery -A subscription_engine.celery_app beat
    beat_schedule={
        "expire-overdue-subscriptions": {
            "task": "subscriptions.expire_overdue",
            "schedule": float(settings.CELERY_EXPIRE_SWEEP_SECONDS),
        },
        "reconcile-pending-payments": {
            "task": "payments.reconcile_pending",
            "schedule": float(settings.CELERY_RECONCILE_SWEEP_SECONDS),
        },
    },
)


@worker_process_init.connect
def _init_worker_logging(**kwargs):
    setup_logging()
