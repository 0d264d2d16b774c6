"""
调用状态管理

InvocationContext 记录单次调用从匹配到结果的完整状态，
状态转换经 _VALID_TRANSITIONS 校验:

Idle -> Matching -> (NoMatch | Ambiguous | Selected)
Selected -> Prerequisites -> Executing -> Completed | Failed
Ambiguous -> Selected（仅当策略为 auto）

任何非终止状态都可以转到 Cancelled。
"""

import asyncio
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..skills.parser import SkillPackage
from .matcher import MatchResult, normalize_text

logger = logging.getLogger(__name__)


class InvocationState(Enum):
    """调用状态"""

    IDLE = "idle"  # 已创建，尚未匹配
    MATCHING = "matching"  # 相关性匹配中
    NO_MATCH = "no_match"  # 没有技能达到阈值（终止）
    AMBIGUOUS = "ambiguous"  # 多个候选并列（ask 策略下终止）
    SELECTED = "selected"  # 已选中技能
    PREREQUISITES = "prerequisites"  # 解析前置资源
    EXECUTING = "executing"  # 执行技能脚本
    COMPLETED = "completed"  # 完成
    FAILED = "failed"  # 失败
    CANCELLED = "cancelled"  # 被调用方取消


TERMINAL_STATES = frozenset(
    {
        InvocationState.NO_MATCH,
        InvocationState.AMBIGUOUS,
        InvocationState.COMPLETED,
        InvocationState.FAILED,
        InvocationState.CANCELLED,
    }
)

# 合法的状态转换表
_VALID_TRANSITIONS: dict[InvocationState, set[InvocationState]] = {
    InvocationState.IDLE: {
        InvocationState.MATCHING,
        InvocationState.SELECTED,  # 显式指定技能时跳过匹配
        InvocationState.FAILED,
        InvocationState.CANCELLED,
    },
    InvocationState.MATCHING: {
        InvocationState.NO_MATCH,
        InvocationState.AMBIGUOUS,
        InvocationState.SELECTED,
        InvocationState.FAILED,
        InvocationState.CANCELLED,
    },
    InvocationState.AMBIGUOUS: {InvocationState.SELECTED},
    InvocationState.SELECTED: {
        InvocationState.PREREQUISITES,
        InvocationState.FAILED,
        InvocationState.CANCELLED,
    },
    InvocationState.PREREQUISITES: {
        InvocationState.EXECUTING,
        InvocationState.FAILED,
        InvocationState.CANCELLED,
    },
    InvocationState.EXECUTING: {
        InvocationState.COMPLETED,
        InvocationState.FAILED,
        InvocationState.CANCELLED,
    },
    InvocationState.NO_MATCH: set(),
    InvocationState.COMPLETED: set(),
    InvocationState.FAILED: set(),
    InvocationState.CANCELLED: set(),
}


def request_fingerprint(
    skill_name: str, request_text: str, inputs: Optional[dict[str, Any]] = None
) -> str:
    """合并键的指纹部分: 技能名 + 规范化请求文本 + 脚本输入"""
    payload = f"{skill_name}\0{normalize_text(request_text)}"
    if inputs:
        payload += "\0" + json.dumps(inputs, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class InvocationContext:
    """
    单次调用的完整状态

    每次 dispatch 创建一个新的 InvocationContext；
    合并到同一执行的调用各自持有自己的上下文。
    """

    request_text: str
    invocation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    requested_skill: Optional[str] = None
    inputs: dict[str, Any] = field(default_factory=dict)
    state: InvocationState = InvocationState.IDLE

    # 匹配结果
    selected_skill: Optional[str] = None
    package: Optional[SkillPackage] = field(default=None, repr=False)
    candidates: list[MatchResult] = field(default_factory=list)
    snapshot_version: int = 0

    # 前置资源: 名称 -> 内容（缺失的可选资源为默认值）
    prerequisites: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    # 失败原因（SkillError.to_dict()）
    error: Optional[dict] = None

    # 截止时间（time.monotonic()）
    deadline: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    # 取消机制
    cancelled: bool = False
    cancel_reason: str = ""
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    # 是否合并到了其他调用的执行上
    coalesced: bool = False

    @property
    def fingerprint(self) -> Optional[str]:
        if not self.selected_skill:
            return None
        return request_fingerprint(self.selected_skill, self.request_text, self.inputs)

    @property
    def key(self) -> Optional[tuple[str, str]]:
        """合并键 (skillName, fingerprint)"""
        fingerprint = self.fingerprint
        if fingerprint is None:
            return None
        return (self.selected_skill, fingerprint)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def remaining(self) -> Optional[float]:
        """距截止时间的剩余秒数（未设截止时间返回 None）"""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def transition(self, new_state: InvocationState) -> None:
        """
        执行状态转换，带合法性验证。

        Raises:
            ValueError: 非法状态转换
        """
        valid_targets = _VALID_TRANSITIONS.get(self.state, set())
        if new_state not in valid_targets:
            raise ValueError(
                f"Illegal invocation transition: {self.state.value} -> {new_state.value}. "
                f"Valid targets: {sorted(s.value for s in valid_targets)}"
            )
        old_state = self.state
        self.state = new_state
        logger.debug(
            f"[Invocation] {old_state.value} -> {new_state.value} "
            f"(invocation={self.invocation_id[:8]})"
        )

    def cancel(self, reason: str = "cancelled by caller") -> bool:
        """
        取消调用，同时触发 cancel_event 通知执行方

        Returns:
            是否生效（已终止的调用无法取消）
        """
        if self.is_terminal:
            return False
        self.cancelled = True
        self.cancel_reason = reason
        self.cancel_event.set()
        logger.info(
            f"[Invocation] {self.invocation_id[:8]} cancel(): "
            f"state={self.state.value}, reason={reason!r}"
        )
        return True

    def fail(self, error: dict) -> None:
        """记录错误并转到 Failed"""
        self.error = error
        self.transition(InvocationState.FAILED)
