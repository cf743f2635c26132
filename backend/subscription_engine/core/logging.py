"""
日志配置：控制台 + 按大小滚动的文件日志
"""
import logging
from logging.handlers import RotatingFileHandler

from subscription_engine.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def setup_logging() -> None:
    """初始化根 logger，重复调用无副作用（FastAPI 启动与 Celery worker 都会调用）。"""
    global _configured
    if _configured:
        return
    level = getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if settings.LOG_FILE:
        try:
            settings.LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                settings.LOG_FILE,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as e:
            root.warning("日志文件不可写，仅输出到控制台: %s", e)

    # 第三方库日志过多，只保留警告以上
    for name in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True
