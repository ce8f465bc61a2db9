"""
pinchat.core.logging
~~~~~~~~~~~~~~~~~~~~

统一日志配置，根据环境自动设置日志级别和格式。

所有模块应通过 ``get_logger(__name__)`` 获取 logger 实例，
不要直接使用 ``print()`` 输出调试信息。

WebSocket 端点在处理某个连接期间会设置 ``connection_id_ctx_var``，
该连接上产生的所有日志都会带上对应的连接 ID。
"""
from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

from pinchat.core.config import settings

# 日志格式：时间 | 级别 | 模块名 | 连接 ID | 消息
_LOG_FORMAT: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(conn_id)s | %(message)s"
_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"

# 当前正在处理的连接 ID，未处于连接上下文时为 "-"
connection_id_ctx_var: ContextVar[str] = ContextVar("connection_id", default="-")


class ConnectionIdFilter(logging.Filter):
    """把当前上下文中的连接 ID 写入日志记录的 ``conn_id`` 字段。"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.conn_id = connection_id_ctx_var.get()
        return True


def setup_logging() -> None:
    """根据当前环境配置全局日志。应在应用启动时调用一次。"""
    level = getattr(logging, settings.effective_log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    handler.addFilter(ConnectionIdFilter())

    logging.basicConfig(
        level=level,
        handlers=[handler],
        force=True,  # 覆盖可能已有的 basicConfig
    )

    # 降低第三方库的日志噪音
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """获取指定模块的 logger 实例。

    Args:
        name: 模块名，通常传 ``__name__``。

    Returns:
        配置好的 ``logging.Logger`` 实例。
    """
    return logging.getLogger(name)
