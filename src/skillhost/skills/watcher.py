"""
技能目录监视器

定期计算技能目录的指纹（文件路径 + mtime + 大小），
指纹变化时触发重新加载。这是索引重新加载的外部触发源之一，
另一种是显式调用 DispatchEngine.reload()（CLI / HTTP API）。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

Fingerprint = tuple[tuple[str, int, int], ...]


def compute_fingerprint(locations: Iterable[Path]) -> Fingerprint:
    """
    计算目录指纹

    包含所有位置下的文件（SKILL.md、scripts/、references/ 等）。
    不存在的位置被忽略。
    """
    entries: list[tuple[str, int, int]] = []
    for location in locations:
        location = Path(location)
        if not location.is_dir():
            continue
        for path in location.rglob("*"):
            try:
                if not path.is_file():
                    continue
                stat = path.stat()
            except OSError:
                # 扫描期间被删除
                continue
            entries.append((str(path), stat.st_mtime_ns, stat.st_size))
    return tuple(sorted(entries))


class SkillWatcher:
    """
    轮询式技能目录监视器

    Usage:
        watcher = SkillWatcher(engine.skill_locations, engine.reload, interval=5)
        await watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        locations: Callable[[], Iterable[Path]],
        on_change: Callable[[], Awaitable[Any]],
        interval: float = 5.0,
    ):
        """
        Args:
            locations: 返回当前需要监视的目录
            on_change: 指纹变化时调用（通常是 engine.reload）
            interval: 轮询间隔（秒）
        """
        self._locations = locations
        self._on_change = on_change
        self.interval = interval
        self._fingerprint: Fingerprint | None = None
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """开始监视（以当前指纹为基线）"""
        if self._running:
            return
        self._fingerprint = await asyncio.to_thread(self._compute)
        self._running = True
        self._task = asyncio.create_task(self._watch_loop())
        logger.info(f"SkillWatcher started (interval={self.interval}s)")

    async def stop(self) -> None:
        """停止监视"""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("SkillWatcher stopped")

    async def check(self) -> bool:
        """
        检查一次指纹

        Returns:
            是否检测到变化（检测到时已调用 on_change）
        """
        fingerprint = await asyncio.to_thread(self._compute)
        if fingerprint == self._fingerprint:
            return False

        logger.info("Skill directories changed, reloading")
        await self._on_change()
        # 重新加载成功后才记录，失败时下个周期重试
        self._fingerprint = fingerprint
        return True

    def _compute(self) -> Fingerprint:
        return compute_fingerprint(self._locations())

    async def _watch_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.check()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # 重新加载失败不终止监视，下个周期重试
                logger.error(f"SkillWatcher reload failed: {e}")
