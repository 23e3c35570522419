"""
日志配置模块 - 使用 structlog 输出结构化日志
"""

import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Mapping

import structlog
from structlog.types import EventDict, WrappedLogger

# 日志中需要脱敏的字段名片段
SENSITIVE_FIELD_MARKERS = ("password", "secret", "token", "key")

# 日志中字符串值的最大长度
MAX_LOGGED_VALUE_LENGTH = 200


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """添加 UTC ISO 时间戳"""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _add_log_level(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """添加日志级别"""
    event_dict["level"] = method_name
    return event_dict


def _format_exception(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """
    格式化异常信息

    驱动层的原始异常只出现在日志里，调用方拿到的是摘要消息。
    """
    exc_info = event_dict.pop("exc_info", None)
    if exc_info:
        if isinstance(exc_info, BaseException):
            event_dict["exception"] = "".join(
                traceback.format_exception(type(exc_info), exc_info, exc_info.__traceback__)
            )
        elif exc_info is True:
            event_dict["exception"] = traceback.format_exc()
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = False,
) -> None:
    """
    配置结构化日志

    参数:
        log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        json_format: 是否输出 JSON（生产环境推荐）
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # asyncpg 自带的日志太吵
    logging.getLogger("asyncpg").setLevel(logging.WARNING)

    if json_format:
        processors: list[Any] = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            _format_exception,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(default=str),
        ]
    else:
        processors = [
            structlog.contextvars.merge_contextvars,
            _add_timestamp,
            _add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            _format_exception,
            structlog.dev.ConsoleRenderer(
                colors=True,
                sort_keys=False,
                pad_level=False,
            ),
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """
    获取结构化日志记录器

    示例:
        >>> from pg_mirror.utils.logging import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("cdc_table_synced", table="accounts", rows=3)
        2024-01-01T10:30:00 [info] cdc_table_synced table=accounts rows=3
    """
    return structlog.get_logger(name)


def set_log_level(level: str) -> None:
    """动态设置日志级别"""
    logging.getLogger().setLevel(getattr(logging, level.upper()))


def bind_context(**kwargs: Any) -> None:
    """
    绑定上下文字段到当前任务的所有日志

    示例:
        >>> bind_context(cycle_id="a1b2c3")
        >>> logger.info("cdc_cycle_started")  # 自动带上 cycle_id
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """清除上下文字段"""
    structlog.contextvars.clear_contextvars()


def sanitize_row(row: Mapping[str, Any]) -> dict[str, Any]:
    """
    生成可写入日志的行数据副本

    敏感字段替换为 [REDACTED]，过长字符串截断。

    参数:
        row: 原始行

    返回:
        脱敏后的新字典
    """
    sanitized: dict[str, Any] = {}
    for key, value in row.items():
        lowered = str(key).lower()
        if any(marker in lowered for marker in SENSITIVE_FIELD_MARKERS):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, str) and len(value) > MAX_LOGGED_VALUE_LENGTH:
            sanitized[key] = value[:MAX_LOGGED_VALUE_LENGTH] + "..."
        else:
            sanitized[key] = value
    return sanitized
