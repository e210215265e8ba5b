"""
llamatrix.core.logging
~~~~~~~~~~~~~~~~~~~~~~

统一日志配置，根据环境自动设置日志级别和格式。

所有模块应通过 ``get_logger(__name__)`` 获取 logger 实例，
不要直接使用 ``print()`` 输出调试信息。

每个房间的中继协程会设置 ``room_id_ctx_var``，日志过滤器将其注入到
每条记录中，方便按房间排查问题。
"""
from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

from llamatrix.core.config import settings

# 当前协程正在处理的房间 ID（无房间上下文时为 "-"）
room_id_ctx_var: ContextVar[str] = ContextVar("room_id", default="-")

# 日志格式：时间 | 级别 | 房间 | 模块名 | 消息
_LOG_FORMAT: str = "%(asctime)s | %(levelname)-7s | %(room_id)s | %(name)s | %(message)s"
_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"


class RoomIdFilter(logging.Filter):
    """把 ``room_id_ctx_var`` 的值写入日志记录的 ``room_id`` 字段。"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.room_id = room_id_ctx_var.get()
        return True


def setup_logging() -> None:
    """根据当前环境配置全局日志。应在应用启动时调用一次。"""
    level = getattr(logging, settings.effective_log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    handler.addFilter(RoomIdFilter())

    logging.basicConfig(
        level=level,
        handlers=[handler],
        force=True,  # 覆盖可能已有的 basicConfig
    )

    # 降低第三方库的日志噪音
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("nio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """获取指定模块的 logger 实例。

    Args:
        name: 模块名，通常传 ``__name__``。

    Returns:
        配置好的 ``logging.Logger`` 实例。
    """
    return logging.getLogger(name)
