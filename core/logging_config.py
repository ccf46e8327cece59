"""
Structlog 日志配置模块
"""
import logging
import json
import structlog
from structlog.processors import TimeStamper, add_log_level, JSONRenderer
from structlog.dev import ConsoleRenderer
from structlog.contextvars import merge_contextvars
from structlog.stdlib import ProcessorFormatter
from typing import Any, List

from core.config import settings


# 日志中永远不能出现的凭据字段
SECRET_KEYS = frozenset({
    "password", "passkey", "consumer_secret", "consumer_key",
    "access_token", "token", "authorization", "secret_key",
})
# 个人信息：保留尾号便于排查
PARTIAL_KEYS = frozenset({"phone", "msisdn", "phone_number"})

# 第三方库的 DEBUG 日志会包含请求头
NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def mask_value(value: Any, keep: int = 3) -> str:
    s = str(value)
    if len(s) <= keep:
        return "***"
    return "*" * (len(s) - keep) + s[-keep:]


def redact_sensitive(_, __, event_dict: dict) -> dict:
    """structlog 处理器：屏蔽凭据、部分隐藏手机号"""
    for key in list(event_dict.keys()):
        lowered = key.lower()
        if lowered in SECRET_KEYS:
            event_dict[key] = "***"
        elif lowered in PARTIAL_KEYS and event_dict[key]:
            event_dict[key] = mask_value(event_dict[key])
    return event_dict


def get_renderer() -> Any:
    """根据环境选择渲染器 (Console in DEBUG, JSON otherwise).
    注意：structlog 会向 serializer 传入 default/sort_keys 等参数，需要适配。
    """
    if settings.DEBUG:
        return ConsoleRenderer(colors=False)

    def _dumps(obj, default=None, **kwargs):
        return json.dumps(obj, ensure_ascii=False, default=default, **kwargs)
    return JSONRenderer(serializer=_dumps)


def configure_logging() -> None:
    """配置 structlog 并桥接标准库 logging 到同一处理链。"""
    shared_pre_chain: List[Any] = [
        merge_contextvars,
        add_log_level,
        structlog.stdlib.add_logger_name,
        TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[
            *shared_pre_chain,
            ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = ProcessorFormatter(
        foreign_pre_chain=shared_pre_chain,
        processors=[
            ProcessorFormatter.remove_processors_meta,
            get_renderer(),
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """获取 structlog logger 实例。"""
    return structlog.get_logger(name)


# 初始化配置
configure_logging()
