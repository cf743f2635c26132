"""
应用配置：从环境变量读取配置
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """应用配置类"""

    # 项目根目录
    PROJECT_ROOT: Path = Path(__file__).parent.parent.parent

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT.parent / ".env"),  # 从项目根目录读取 .env
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API配置
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "订阅计费与配额引擎"
    CORS_ORIGINS: List[str] = ["*"]

    # 数据库配置（生产环境使用 PostgreSQL：postgresql+asyncpg://...）
    DATABASE_URL: str = "sqlite+aiosqlite:///./subscription_engine.db"
    DATABASE_ECHO: bool = False

    # Redis配置（配额计数与缓存共用）
    REDIS_URL: str = "redis://localhost:6379/0"

    # 缓存配置（使用同一 Redis，key 前缀区分）
    CACHE_ENABLED: bool = True
    CACHE_KEY_PREFIX: str = "cache:"
    CACHE_TTL_ENTITLEMENT: int = 300   # 当前订阅/权益 5 分钟
    CACHE_TTL_STATS: int = 60          # 配额快照 60 秒

    # Celery配置（不填则与 REDIS_URL 一致）
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""
    CELERY_EXPIRE_SWEEP_SECONDS: int = 600      # 到期订阅扫描间隔
    CELERY_RECONCILE_SWEEP_SECONDS: int = 60    # 待支付订单对账扫描间隔

    # 安全配置
    JWT_SECRET_KEY: str = "your-jwt-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 10080

    # 微信支付（扫码支付）配置
    WECHAT_APP_ID: str = ""
    WECHAT_MCH_ID: str = ""
    WECHAT_API_KEY: str = ""      # v2 签名密钥（XML 通知、下单、查单）
    WECHAT_API_V3_KEY: str = ""   # v3 密钥（JSON 通知签名与资源解密），32 字节
    WECHAT_NOTIFY_URL: str = ""
    WECHAT_API_BASE_URL: str = "https://api.mch.weixin.qq.com"
    # 模拟模式：不调用真实网关，下单返回模拟二维码链接，查单始终返回待支付
    PAYMENT_MOCK_MODE: bool = True
    PAYMENT_METHOD: str = "wechat_pay"
    PAYMENT_CURRENCY: str = "CNY"
    PAYMENT_QUERY_TIMEOUT: float = 5.0           # 查单超时（秒），超时视为结果不确定
    PAYMENT_QR_EXPIRE_MINUTES: int = 30
    PAYMENT_POLL_INTERVAL: float = 2.0           # 轮询间隔（秒）
    PAYMENT_NOTIFY_MAX_SKEW_SECONDS: int = 300   # JSON 通知时间戳允许偏差
    PAYMENT_WATCH_ENABLED: bool = False          # 下单后是否提交服务端轮询任务

    # 订阅周期
    BILLING_PERIOD_DAYS: int = 30

    # 配额
    QUOTA_ENABLED: bool = True
    QUOTA_FAIL_OPEN: bool = False   # Redis 不可用时是否放行（默认拒绝）
    QUOTA_KEY_PREFIX: str = "quota:"

    # 升级推荐
    UPGRADE_WARNING_THRESHOLD: float = 0.8
    UPGRADE_CRITICAL_THRESHOLD: float = 0.95
    UPGRADE_COOLDOWN_MIN_HOURS: float = 4.0
    UPGRADE_COOLDOWN_MAX_HOURS: float = 24.0

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Path = PROJECT_ROOT / "logs" / "app.log"

    # 操作审计：是否记录订阅与支付状态变更到 audit_log 表
    AUDIT_LOG_ENABLED: bool = True

    @property
    def wechat_configured(self) -> bool:
        """真实网关所需的商户参数是否齐全"""
        return bool(self.WECHAT_APP_ID and self.WECHAT_MCH_ID and self.WECHAT_API_KEY)


# 创建全局配置实例
settings = Settings()
