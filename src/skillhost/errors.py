"""
结构化错误

提供 SkillError 异常基类和 ErrorType 枚举。

- 加载期错误（ValidationError / DuplicateSkillError）按技能包收集，不影响其他包
- 调用期错误写入该次调用的 ResponseEnvelope，不影响共享索引和其他调用
- 只有 RegistryUnavailableError（没有任何可用快照）会向上抛出

Usage:
    from skillhost.errors import PrerequisiteMissingError

    raise PrerequisiteMissingError(
        "preferences",
        skill_name="booking",
    )
"""

from __future__ import annotations

import json
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .dispatch.sandbox import ExecutionResult


class ErrorType(Enum):
    """错误类型"""

    VALIDATION = "validation"  # 清单无效，技能包被排除
    DUPLICATE = "duplicate"  # 同名技能，后加载者被排除
    PREREQUISITE_MISSING = "prerequisite_missing"  # 必需的前置资源缺失
    SCRIPT_FAILED = "script_failed"  # 脚本非零退出
    TIMEOUT = "timeout"  # 超过截止时间，进程已被终止
    LOCK_CONTENTION = "lock_contention"  # 同键调用冲突（内部通过请求合并解决）
    CANCELLED = "cancelled"  # 调用方取消
    REGISTRY_UNAVAILABLE = "registry_unavailable"  # 没有可用的技能索引
    NOT_FOUND = "not_found"  # 指定的技能或资源不存在
    INTERNAL = "internal"  # 未预期的内部错误


_ERROR_TYPE_HINTS: dict[ErrorType, str] = {
    ErrorType.VALIDATION: "Fix the SKILL.md front matter and reload",
    ErrorType.DUPLICATE: "Rename one of the skills; the earlier location wins",
    ErrorType.PREREQUISITE_MISSING: "Create the required resource before invoking the skill",
    ErrorType.SCRIPT_FAILED: "Inspect the captured output of the script",
    ErrorType.TIMEOUT: "The invocation exceeded its deadline and was terminated",
    ErrorType.LOCK_CONTENTION: "An identical invocation is already in flight",
    ErrorType.CANCELLED: "The invocation was cancelled by the caller",
    ErrorType.REGISTRY_UNAVAILABLE: "No skill could be loaded; check the skill directories",
    ErrorType.NOT_FOUND: "Check the skill or resource name",
    ErrorType.INTERNAL: "Unexpected failure; see the server log",
}


class SkillError(Exception):
    """
    结构化错误基类。

    包含错误类型、所属技能和附加信息，
    to_dict() 序列化后放入响应信封返回给调用方。
    """

    error_type: ErrorType = ErrorType.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        skill_name: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.skill_name = skill_name
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """序列化为字典"""
        result: dict[str, Any] = {
            "error_type": self.error_type.value,
            "message": self.message,
            "hint": _ERROR_TYPE_HINTS.get(self.error_type, ""),
        }
        if self.skill_name:
            result["skill_name"] = self.skill_name
        if self.details:
            result["details"] = self.details
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class ValidationError(SkillError):
    """技能清单无效（缺少 name/description、YAML 错误等）"""

    error_type = ErrorType.VALIDATION


class DuplicateSkillError(SkillError):
    """同一批次中出现重名技能"""

    error_type = ErrorType.DUPLICATE


class SkillNotFoundError(SkillError):
    """显式指定的技能或参考文档不存在"""

    error_type = ErrorType.NOT_FOUND


class PrerequisiteMissingError(SkillError):
    """必需的前置资源缺失"""

    error_type = ErrorType.PREREQUISITE_MISSING

    def __init__(self, prerequisite: str, *, skill_name: str | None = None) -> None:
        self.prerequisite = prerequisite
        super().__init__(
            f"Required prerequisite '{prerequisite}' is missing",
            skill_name=skill_name,
            details={"prerequisite": prerequisite},
        )


class ScriptExecutionError(SkillError):
    """脚本非零退出，携带捕获的输出"""

    error_type = ErrorType.SCRIPT_FAILED

    def __init__(
        self,
        message: str,
        *,
        result: ExecutionResult,
        skill_name: str | None = None,
    ) -> None:
        self.result = result
        super().__init__(
            message,
            skill_name=skill_name,
            details={"exit_code": result.exit_code, "stderr": result.stderr[-2000:]},
        )


class InvocationTimeoutError(SkillError, TimeoutError):
    """超过截止时间"""

    error_type = ErrorType.TIMEOUT


class InvocationCancelledError(SkillError):
    """调用被取消"""

    error_type = ErrorType.CANCELLED


class LockContentionError(SkillError):
    """
    同一 (skill, fingerprint) 已有调用在执行。

    只在编排器内部使用，由请求合并消化，不会出现在响应中。
    """

    error_type = ErrorType.LOCK_CONTENTION


class RegistryUnavailableError(SkillError):
    """没有任何技能可以发布，注册中心不可用"""

    error_type = ErrorType.REGISTRY_UNAVAILABLE


class InternalError(SkillError):
    """未预期的异常，包装后写入响应"""

    error_type = ErrorType.INTERNAL
