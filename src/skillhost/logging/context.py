"""
调用上下文标识

编排器在一次调用期间把调用 ID 写入 ContextVar，
asyncio 任务会自动继承，日志过滤器据此为每条记录打标。
"""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

_NO_INVOCATION = "-"

_invocation_id: ContextVar[str] = ContextVar("skillhost_invocation_id", default=_NO_INVOCATION)


def get_invocation_id() -> str:
    """当前调用 ID（调用之外为 '-'）"""
    return _invocation_id.get()


@contextmanager
def bind_invocation_id(invocation_id: str) -> Iterator[None]:
    """在 with 块内绑定调用 ID"""
    token = _invocation_id.set(invocation_id)
    try:
        yield
    finally:
        _invocation_id.reset(token)
