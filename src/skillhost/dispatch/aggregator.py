"""
结果汇总

assemble() 把调用的最终状态转换为 ResponseEnvelope。
纯函数: 不做 I/O，不读时钟，不包含调用 ID，
因此合并到同一执行的调用得到相等的信封。
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from .matcher import MatchResult
from .sandbox import ExecutionResult
from .state import InvocationContext, InvocationState

PREREQUISITES_HEADER = "## Prerequisites"
MISSING_PREREQUISITE_TEXT = "_Not provided. Proceed with defaults._"


class ResponseEnvelope(BaseModel):
    """分发结果"""

    status: str = Field(..., description="completed | failed | no_match | ambiguous | cancelled")
    selected_skill: Optional[str] = Field(None, description="选中的技能")
    instructions: Optional[str] = Field(None, description="技能指令（SKILL.md body + 前置资源）")
    warnings: list[str] = Field(default_factory=list)
    artifacts: list[ExecutionResult] = Field(default_factory=list, description="脚本执行结果")
    candidates: list[MatchResult] = Field(default_factory=list, description="匹配候选")
    references: list[str] = Field(default_factory=list, description="可按需读取的参考文档")
    error: Optional[dict[str, Any]] = None
    fingerprint: Optional[str] = None
    snapshot_version: int = 0

    @property
    def ok(self) -> bool:
        return self.status == InvocationState.COMPLETED.value


def render_instructions(body: str, prerequisites: dict[str, Optional[str]]) -> str:
    """SKILL.md body 后追加前置资源内容"""
    if not prerequisites:
        return body

    sections = [body.rstrip(), "", PREREQUISITES_HEADER]
    for name, content in prerequisites.items():
        sections.append("")
        sections.append(f"### {name}")
        sections.append("")
        sections.append(content.strip() if content else MISSING_PREREQUISITE_TEXT)
    return "\n".join(sections) + "\n"


def assemble(
    context: InvocationContext,
    execution_result: Optional[ExecutionResult] = None,
) -> ResponseEnvelope:
    """
    根据调用最终状态生成响应信封

    - Completed: 选中技能 + 指令 + 警告 + 脚本结果
    - Failed: 选中技能（如有）+ 错误 + 已产生的脚本结果
    - NoMatch / Ambiguous: 没有选中技能，附带候选
    - Cancelled: 没有指令
    """
    state = context.state
    package = context.package
    artifacts = [execution_result] if execution_result is not None else []

    instructions = None
    references: list[str] = []
    if state == InvocationState.COMPLETED and package is not None:
        instructions = render_instructions(package.body, context.prerequisites)
        references = [p.name for p in package.references]

    selected = context.selected_skill
    if state in (InvocationState.NO_MATCH, InvocationState.AMBIGUOUS):
        selected = None

    return ResponseEnvelope(
        status=state.value,
        selected_skill=selected,
        instructions=instructions,
        warnings=list(context.warnings),
        artifacts=artifacts,
        candidates=list(context.candidates),
        references=references,
        error=context.error,
        fingerprint=context.fingerprint if selected else None,
        snapshot_version=context.snapshot_version,
    )
