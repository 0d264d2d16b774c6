"""
调用编排

驱动单次调用的完整生命周期: 匹配/选择 -> 前置资源 -> 脚本执行 -> 结果汇总。

并发控制:
- 调用按 (skillName, fingerprint) 作为键；同键同时只有一个执行（_Flight）
- 同键的重复请求附着到已有执行上等待结果（请求合并），不会再次运行脚本
- 不同键完全并发，没有全局锁；脚本执行数量由信号量限制
- 在途表只在事件循环线程中读写，执行结束后立即移除

取消与超时:
- 每个调用都有截止时间；超时的调用以 InvocationTimeoutError 失败
- 取消只影响该调用；最后一个等待者离开时共享执行才被取消（进程被杀死）
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..errors import (
    InternalError,
    InvocationCancelledError,
    InvocationTimeoutError,
    LockContentionError,
    SkillError,
    SkillNotFoundError,
)
from ..logging import bind_invocation_id
from ..skills.index import SkillIndex
from ..skills.parser import SkillPackage
from .aggregator import ResponseEnvelope, assemble
from .matcher import AmbiguousMatch, NoMatch, RelevanceMatcher
from .prerequisites import PrerequisiteResolver, resolve_prerequisites
from .sandbox import ExecutionResult, ScriptSandbox
from .state import InvocationContext, InvocationState

logger = logging.getLogger(__name__)

# 等待共享执行时在截止时间之外的宽限，让沙箱自己的超时结果先返回
_DEADLINE_GRACE = 0.5

InvocationKey = tuple[str, str]


class AmbiguityPolicy(str, Enum):
    """并列候选的处理策略"""

    ASK = "ask"  # 返回候选，由调用方消歧
    AUTO = "auto"  # 自动选择排名第一的候选


@dataclass(frozen=True)
class _FlightOutcome:
    state: InvocationState
    prerequisites: dict[str, Any] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()
    error: Optional[dict] = None
    execution_result: Optional[ExecutionResult] = None


@dataclass(eq=False)
class _Flight:
    """同键调用共享的一次执行"""

    key: InvocationKey
    package: SkillPackage
    snapshot_version: int
    task: Optional[asyncio.Task] = None
    reached: list[InvocationState] = field(default_factory=list)
    observers: dict[str, InvocationContext] = field(default_factory=dict)
    waiters: int = 0

    def attach(self, context: InvocationContext) -> None:
        # 追上执行已经到达的阶段
        for state in self.reached:
            context.transition(state)
        self.observers[context.invocation_id] = context
        self.waiters += 1

    def detach(self, context: InvocationContext) -> int:
        self.observers.pop(context.invocation_id, None)
        self.waiters -= 1
        return self.waiters

    def advance(self, state: InvocationState) -> None:
        self.reached.append(state)
        for context in list(self.observers.values()):
            context.transition(state)


class InvocationOrchestrator:
    """
    调用编排器

    Usage:
        orchestrator = InvocationOrchestrator(index, matcher, resolver, sandbox)
        envelope = await orchestrator.dispatch("Find hotels in Portland")

        # 需要取消时先创建上下文
        ctx = orchestrator.begin("...")
        task = asyncio.create_task(orchestrator.run(ctx))
        orchestrator.cancel(ctx.invocation_id)
    """

    def __init__(
        self,
        index: SkillIndex,
        matcher: RelevanceMatcher,
        resolver: PrerequisiteResolver,
        sandbox: ScriptSandbox,
        ambiguity_policy: AmbiguityPolicy | str = AmbiguityPolicy.ASK,
        script_timeout: float = 30.0,
        invocation_timeout: float = 60.0,
        max_concurrent: int = 8,
        match_top_k: int = 5,
    ):
        self.index = index
        self.matcher = matcher
        self.resolver = resolver
        self.sandbox = sandbox
        self.ambiguity_policy = AmbiguityPolicy(ambiguity_policy)
        self.script_timeout = script_timeout
        self.invocation_timeout = invocation_timeout
        self.match_top_k = match_top_k
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._inflight: dict[InvocationKey, _Flight] = {}
        self._contexts: dict[str, InvocationContext] = {}

    # ==================== 公共接口 ====================

    def begin(
        self,
        request_text: str,
        skill: Optional[str] = None,
        timeout: Optional[float] = None,
        inputs: Optional[dict[str, Any]] = None,
    ) -> InvocationContext:
        """
        创建调用上下文（尚未运行）

        Args:
            request_text: 请求文本
            skill: 显式指定技能（跳过匹配）
            timeout: 截止时间（秒），None 使用 invocation_timeout
            inputs: 传给技能脚本的输入
        """
        timeout = self.invocation_timeout if timeout is None else timeout
        context = InvocationContext(
            request_text=request_text,
            requested_skill=skill,
            inputs=dict(inputs or {}),
            deadline=time.monotonic() + timeout,
        )
        self._contexts[context.invocation_id] = context
        return context

    async def run(self, context: InvocationContext) -> ResponseEnvelope:
        """运行调用直到终止状态，返回响应信封"""
        self._contexts[context.invocation_id] = context
        try:
            with bind_invocation_id(context.invocation_id):
                return await self._run(context)
        finally:
            self._contexts.pop(context.invocation_id, None)

    async def dispatch(
        self,
        request_text: str,
        skill: Optional[str] = None,
        timeout: Optional[float] = None,
        inputs: Optional[dict[str, Any]] = None,
    ) -> ResponseEnvelope:
        """begin + run"""
        return await self.run(self.begin(request_text, skill=skill, timeout=timeout, inputs=inputs))

    def cancel(self, invocation_id: str, reason: str = "cancelled by caller") -> bool:
        """
        取消调用

        Returns:
            是否找到并取消了该调用
        """
        context = self._contexts.get(invocation_id)
        if context is None:
            return False
        return context.cancel(reason)

    def get_context(self, invocation_id: str) -> Optional[InvocationContext]:
        return self._contexts.get(invocation_id)

    @property
    def active_invocations(self) -> int:
        return len(self._contexts)

    @property
    def inflight_keys(self) -> list[InvocationKey]:
        return list(self._inflight)

    # ==================== 生命周期 ====================

    async def _run(self, context: InvocationContext) -> ResponseEnvelope:
        snapshot = self.index.current()
        context.snapshot_version = snapshot.version

        if context.cancelled:
            return self._finish_cancelled(context)

        logger.info(f"Dispatching request: {context.request_text[:100]!r}")

        if context.requested_skill:
            package = snapshot.get(context.requested_skill)
            if package is None:
                error = SkillNotFoundError(
                    f"Skill '{context.requested_skill}' is not installed",
                    skill_name=context.requested_skill,
                )
                context.fail(error.to_dict())
                return assemble(context)
            context.transition(InvocationState.SELECTED)
        else:
            try:
                package = self._select(context, snapshot)
            except Exception as e:
                logger.error(f"Matching failed: {e}", exc_info=True)
                context.fail(InternalError(f"Matching failed: {e}").to_dict())
                return assemble(context)
            if package is None:
                return assemble(context)

        context.selected_skill = package.name
        context.package = package
        logger.info(f"Selected skill: {package.name}")

        if context.cancelled:
            return self._finish_cancelled(context)

        return await self._execute_coalesced(context, package, snapshot.version)

    def _select(self, context: InvocationContext, snapshot) -> Optional[SkillPackage]:
        """相关性匹配，返回选中的技能包；没有选中时上下文已处于终止状态"""
        context.transition(InvocationState.MATCHING)
        outcome = self.matcher.select(context.request_text, snapshot)

        if isinstance(outcome, NoMatch):
            context.candidates = list(outcome.ranked[: self.match_top_k])
            context.transition(InvocationState.NO_MATCH)
            logger.info("No skill matched the request")
            return None

        if isinstance(outcome, AmbiguousMatch):
            context.candidates = list(outcome.candidates[: self.match_top_k])
            context.transition(InvocationState.AMBIGUOUS)
            names = [c.skill_name for c in outcome.candidates]
            if self.ambiguity_policy != AmbiguityPolicy.AUTO:
                logger.info(f"Ambiguous match, returning candidates: {names}")
                return None
            chosen = outcome.candidates[0]
            context.warnings.append(
                f"Ambiguous match between {', '.join(names)}; selected {chosen.skill_name}"
            )
            context.transition(InvocationState.SELECTED)
            return snapshot.get(chosen.skill_name)

        context.candidates = list(outcome.ranked[: self.match_top_k])
        context.transition(InvocationState.SELECTED)
        return snapshot.get(outcome.skill_name)

    async def _execute_coalesced(
        self, context: InvocationContext, package: SkillPackage, snapshot_version: int
    ) -> ResponseEnvelope:
        key = context.key
        try:
            flight = self._register(key, package, snapshot_version)
            flight.task = asyncio.create_task(self._execute(flight, context))
            flight.task.add_done_callback(lambda _t, f=flight: self._release(f))
        except LockContentionError:
            flight = self._inflight[key]
            context.coalesced = True
            context.package = flight.package
            context.snapshot_version = flight.snapshot_version
            logger.info(f"Coalescing with in-flight invocation of {package.name}")

        flight.attach(context)
        try:
            outcome = await self._wait(context, flight)
        finally:
            if flight.detach(context) == 0 and not flight.task.done():
                logger.info(f"No callers left for {package.name}, cancelling execution")
                flight.task.cancel()

        if outcome is None:
            return assemble(context)

        context.prerequisites = dict(outcome.prerequisites)
        context.warnings.extend(outcome.warnings)
        if outcome.state == InvocationState.FAILED:
            context.fail(outcome.error)
        else:
            context.transition(InvocationState.COMPLETED)
        logger.info(f"Invocation of {package.name} finished: {context.state.value}")
        return assemble(context, outcome.execution_result)

    async def _wait(self, context: InvocationContext, flight: _Flight) -> Optional[_FlightOutcome]:
        """
        等待共享执行、取消信号或截止时间中最先发生者

        Returns:
            执行结果；被取消或超时时返回 None（上下文已处于终止状态）
        """
        cancel_wait = asyncio.create_task(context.cancel_event.wait())
        remaining = context.remaining()
        timeout = None if remaining is None else remaining + _DEADLINE_GRACE
        try:
            done, _ = await asyncio.wait(
                {flight.task, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()

        if flight.task in done:
            if flight.task.cancelled():
                # 其他路径取消了共享执行（如引擎关闭）
                flight.observers.pop(context.invocation_id, None)
                self._finish_cancelled(context)
                return None
            return flight.task.result()

        flight.observers.pop(context.invocation_id, None)
        if cancel_wait in done:
            self._finish_cancelled(context)
        else:
            logger.warning(f"Invocation {context.invocation_id[:8]} exceeded its deadline")
            error = InvocationTimeoutError(
                "Invocation exceeded its deadline",
                skill_name=context.selected_skill,
            )
            context.fail(error.to_dict())
        return None

    async def _execute(self, flight: _Flight, owner: InvocationContext) -> _FlightOutcome:
        """共享执行: 前置资源 -> 脚本"""
        package = flight.package
        deadline = owner.deadline
        prerequisites: dict[str, Any] = {}
        warnings: list[str] = []
        result: Optional[ExecutionResult] = None

        try:
            flight.advance(InvocationState.PREREQUISITES)
            prerequisites, warnings = await asyncio.wait_for(
                resolve_prerequisites(package, self.resolver),
                timeout=_remaining(deadline),
            )

            flight.advance(InvocationState.EXECUTING)
            script_path = package.script_path
            if script_path is not None:
                async with self._semaphore:
                    remaining = _remaining(deadline)
                    timeout = self.script_timeout if remaining is None else min(self.script_timeout, remaining)
                    result = await self.sandbox.run(
                        script_path,
                        self._script_inputs(owner, package, prerequisites),
                        timeout=timeout,
                    )
                result.raise_for_status(package.name)

        except SkillError as e:
            logger.warning(f"Invocation of {package.name} failed: {e.message}")
            return _FlightOutcome(
                state=InvocationState.FAILED,
                prerequisites=prerequisites,
                warnings=tuple(warnings),
                error=e.to_dict(),
                execution_result=result,
            )
        except TimeoutError:
            logger.warning(f"Invocation of {package.name} timed out")
            error = InvocationTimeoutError("Invocation exceeded its deadline", skill_name=package.name)
            return _FlightOutcome(
                state=InvocationState.FAILED,
                prerequisites=prerequisites,
                warnings=tuple(warnings),
                error=error.to_dict(),
                execution_result=result,
            )
        except Exception as e:
            logger.error(f"Invocation of {package.name} crashed: {e}", exc_info=True)
            return _FlightOutcome(
                state=InvocationState.FAILED,
                prerequisites=prerequisites,
                warnings=tuple(warnings),
                error=InternalError(str(e), skill_name=package.name).to_dict(),
                execution_result=result,
            )

        return _FlightOutcome(
            state=InvocationState.COMPLETED,
            prerequisites=prerequisites,
            warnings=tuple(warnings),
            execution_result=result,
        )

    # ==================== 在途表 ====================

    def _register(
        self, key: InvocationKey, package: SkillPackage, snapshot_version: int
    ) -> _Flight:
        """
        为键登记新的执行

        Raises:
            LockContentionError: 该键已有执行在途
        """
        existing = self._inflight.get(key)
        if existing is not None and existing.task is not None and not existing.task.done():
            raise LockContentionError(
                f"Invocation of {key[0]} already in flight",
                skill_name=key[0],
            )
        flight = _Flight(key=key, package=package, snapshot_version=snapshot_version)
        self._inflight[key] = flight
        return flight

    def _release(self, flight: _Flight) -> None:
        if self._inflight.get(flight.key) is flight:
            del self._inflight[flight.key]

    @staticmethod
    def _script_inputs(
        context: InvocationContext, package: SkillPackage, prerequisites: dict[str, Any]
    ) -> dict[str, Any]:
        inputs = {
            "request": context.request_text,
            "skill": package.name,
            "prerequisites": prerequisites,
        }
        inputs.update(context.inputs)
        return inputs

    @staticmethod
    def _finish_cancelled(context: InvocationContext) -> ResponseEnvelope:
        if not context.is_terminal:
            context.transition(InvocationState.CANCELLED)
        context.error = InvocationCancelledError(
            context.cancel_reason or "Invocation was cancelled",
            skill_name=context.selected_skill,
        ).to_dict()
        logger.info(f"Invocation {context.invocation_id[:8]} cancelled")
        return assemble(context)


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())
