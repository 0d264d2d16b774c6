"""
skillhost 日志系统

功能:
- 日志文件输出（按大小轮转）
- 分离 error.log（只记录 ERROR/CRITICAL）
- 支持控制台彩色输出
- 每条日志带上当前调用 ID
"""

from .config import setup_logging
from .context import bind_invocation_id, get_invocation_id
from .handlers import ColoredConsoleHandler, ErrorOnlyHandler, InvocationIdFilter

__all__ = [
    "setup_logging",
    "bind_invocation_id",
    "get_invocation_id",
    "ColoredConsoleHandler",
    "ErrorOnlyHandler",
    "InvocationIdFilter",
]
