"""
分发引擎

把加载器、索引、匹配器、编排器、沙箱和监视器组装在一起，
是 CLI 与 HTTP API 共用的入口。
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from .config import Settings, settings as default_settings
from .dispatch import (
    AmbiguityPolicy,
    FilePrerequisiteResolver,
    InvocationContext,
    InvocationOrchestrator,
    MatchOutcome,
    MatchResult,
    PrerequisiteResolver,
    RelevanceMatcher,
    RelevanceScorer,
    ResponseEnvelope,
    ScriptSandbox,
)
from .errors import RegistryUnavailableError, SkillNotFoundError
from .skills import (
    LoadReport,
    SkillCatalog,
    SkillIndex,
    SkillLoader,
    SkillPackage,
    SkillSnapshot,
    SkillWatcher,
)

logger = logging.getLogger(__name__)


class DispatchEngine:
    """
    技能分发引擎

    Usage:
        engine = DispatchEngine()
        await engine.start()          # 首次加载 + 启动监视器
        envelope = await engine.dispatch("Find hotels in Portland for August 2-4")
        await engine.stop()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        scorer: RelevanceScorer | None = None,
        resolver: PrerequisiteResolver | None = None,
        sandbox: ScriptSandbox | None = None,
        loader: SkillLoader | None = None,
    ):
        self.settings = settings or default_settings
        cfg = self.settings

        self.loader = loader or SkillLoader()
        self.index = SkillIndex()
        self.catalog = SkillCatalog()
        self.matcher = RelevanceMatcher(
            scorer=scorer,
            selection_threshold=cfg.selection_threshold,
            ambiguity_margin=cfg.ambiguity_margin,
        )
        self.sandbox = sandbox or ScriptSandbox(
            output_cap_bytes=cfg.script_output_cap_bytes,
            default_timeout=cfg.script_timeout_seconds,
        )
        self.resolver = resolver or FilePrerequisiteResolver(cfg.prerequisite_paths)
        self.orchestrator = InvocationOrchestrator(
            index=self.index,
            matcher=self.matcher,
            resolver=self.resolver,
            sandbox=self.sandbox,
            ambiguity_policy=AmbiguityPolicy(cfg.ambiguity_policy),
            script_timeout=cfg.script_timeout_seconds,
            invocation_timeout=cfg.invocation_timeout_seconds,
            max_concurrent=cfg.max_concurrent_executions,
            match_top_k=cfg.match_top_k,
        )

        self.watcher: Optional[SkillWatcher] = None
        if cfg.skill_watch_interval_seconds > 0:
            self.watcher = SkillWatcher(
                self.skill_locations,
                self.reload,
                interval=cfg.skill_watch_interval_seconds,
            )

        self.last_report: Optional[LoadReport] = None
        self._reload_lock = asyncio.Lock()

    # ==================== 加载 ====================

    def skill_locations(self) -> list[Path]:
        """当前存在的技能目录（按优先级）"""
        return self.loader.discover_skill_directories(
            self.settings.project_root, self.settings.skill_directories
        )

    def load(self) -> SkillSnapshot:
        """
        同步加载并发布快照（CLI 使用）

        Raises:
            RegistryUnavailableError: 首次加载没有任何可用技能
        """
        report = self.loader.load(self.skill_locations())
        return self._publish(report)

    async def reload(self) -> SkillSnapshot:
        """
        重新加载并原子发布新快照

        加载在线程池中进行，不阻塞事件循环；并发调用按顺序执行。
        已发布过快照时，加载结果为空会保留旧快照。
        """
        async with self._reload_lock:
            report = await asyncio.to_thread(self.loader.load, self.skill_locations())
            return self._publish(report)

    def _publish(self, report: LoadReport) -> SkillSnapshot:
        self.last_report = report
        for error in report.errors:
            logger.warning(f"Skill excluded from index: {error.location}: {error.error.message}")

        if report.loaded_count == 0:
            if not self.index.is_populated:
                logger.critical(
                    "No skill could be loaded; the registry is unusable. "
                    f"Searched: {[str(p) for p in self.skill_locations()]}"
                )
                raise RegistryUnavailableError(
                    "No skill could be loaded",
                    details={"errors": [e.to_dict() for e in report.errors]},
                )
            logger.error(
                f"Reload produced no skills, keeping snapshot v{self.index.version} live"
            )
            return self.index.current()

        return self.index.publish_packages(report.packages, report.errors)

    # ==================== 生命周期 ====================

    async def start(self) -> SkillSnapshot:
        """首次加载，并按配置启动目录监视"""
        snapshot = await self.reload()
        if self.watcher is not None:
            await self.watcher.start()
        return snapshot

    async def stop(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()

    # ==================== 查询 ====================

    def snapshot(self) -> SkillSnapshot:
        return self.index.current()

    def list_skills(self) -> list[SkillPackage]:
        return list(self.index.current())

    def get_skill(self, name: str) -> SkillPackage:
        """
        Raises:
            SkillNotFoundError: 技能不存在
        """
        package = self.index.current().get(name)
        if package is None:
            raise SkillNotFoundError(f"Skill '{name}' is not installed", skill_name=name)
        return package

    def get_reference(self, skill_name: str, ref_name: str) -> str:
        """读取技能的参考文档（原样返回）"""
        return self.loader.read_reference(self.get_skill(skill_name), ref_name)

    def get_catalog(self, compact: bool = False) -> str:
        snapshot = self.index.current()
        return self.catalog.compact(snapshot) if compact else self.catalog.generate(snapshot)

    def match(self, request_text: str) -> list[MatchResult]:
        """排序后的候选（最多 match_top_k 个）"""
        results = self.matcher.match(request_text, self.index.current())
        return results[: self.settings.match_top_k]

    def select(self, request_text: str) -> MatchOutcome:
        return self.matcher.select(request_text, self.index.current())

    # ==================== 调用 ====================

    def begin(
        self,
        request_text: str,
        skill: Optional[str] = None,
        timeout: Optional[float] = None,
        inputs: Optional[dict[str, Any]] = None,
    ) -> InvocationContext:
        return self.orchestrator.begin(request_text, skill=skill, timeout=timeout, inputs=inputs)

    async def run(self, context: InvocationContext) -> ResponseEnvelope:
        return await self.orchestrator.run(context)

    async def dispatch(
        self,
        request_text: str,
        skill: Optional[str] = None,
        timeout: Optional[float] = None,
        inputs: Optional[dict[str, Any]] = None,
    ) -> ResponseEnvelope:
        """分发请求，返回响应信封"""
        return await self.orchestrator.dispatch(
            request_text, skill=skill, timeout=timeout, inputs=inputs
        )

    def cancel(self, invocation_id: str) -> bool:
        return self.orchestrator.cancel(invocation_id)
