"""
技能索引

SkillSnapshot 是一组技能包的不可变快照；SkillIndex 持有当前快照，
通过 publish() 原子替换。匹配过程拿到的快照引用在整个查询期间保持不变，
重新加载只会产生新快照，旧快照在没有引用后由 GC 回收。
"""

import logging
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Optional

from .loader import LoadError
from .parser import SkillPackage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkillSnapshot:
    """
    技能索引快照

    - packages: 按优先级排序的技能包
    - version: 单调递增的版本号
    - load_errors: 产生该快照的加载批次中被排除的技能包
    """

    version: int
    packages: tuple[SkillPackage, ...] = ()
    load_errors: tuple[LoadError, ...] = ()
    created_at: datetime = field(default_factory=datetime.now)
    _by_name: Mapping[str, SkillPackage] = field(
        init=False, repr=False, compare=False, hash=False
    )

    def __post_init__(self):
        by_name: dict[str, SkillPackage] = {}
        for package in self.packages:
            if package.name in by_name:
                raise ValueError(f"Duplicate skill name in snapshot: {package.name}")
            by_name[package.name] = package
        object.__setattr__(self, "_by_name", MappingProxyType(by_name))

    @classmethod
    def empty(cls) -> "SkillSnapshot":
        return cls(version=0)

    def get(self, name: str) -> Optional[SkillPackage]:
        return self._by_name.get(name)

    def names(self) -> list[str]:
        return [p.name for p in self.packages]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[SkillPackage]:
        return iter(self.packages)

    def __len__(self) -> int:
        return len(self.packages)

    def __bool__(self) -> bool:
        """确保空快照不被误判为 falsy"""
        return True


class SkillIndex:
    """
    技能索引

    持有当前快照引用:
    - current(): 返回当前快照（读不加锁，引用赋值是原子的）
    - publish(): 原子替换快照，拒绝旧版本
    """

    def __init__(self, snapshot: SkillSnapshot | None = None):
        self._snapshot = snapshot or SkillSnapshot.empty()
        self._publish_lock = threading.Lock()

    def current(self) -> SkillSnapshot:
        """当前快照"""
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    @property
    def is_populated(self) -> bool:
        """是否已发布过非空快照"""
        return self._snapshot.version > 0 and len(self._snapshot) > 0

    def next_version(self) -> int:
        return self._snapshot.version + 1

    def publish(self, snapshot: SkillSnapshot) -> SkillSnapshot:
        """
        发布新快照

        Args:
            snapshot: 新快照，版本号必须大于当前版本

        Returns:
            被替换的旧快照

        Raises:
            ValueError: 版本号不大于当前版本
        """
        with self._publish_lock:
            previous = self._snapshot
            if snapshot.version <= previous.version:
                raise ValueError(
                    f"Stale snapshot version {snapshot.version} "
                    f"(current is {previous.version})"
                )
            self._snapshot = snapshot

        logger.info(
            f"Published skill index v{snapshot.version} "
            f"({len(snapshot)} skills, replaced v{previous.version})"
        )
        return previous

    def publish_packages(
        self,
        packages: Iterable[SkillPackage],
        load_errors: Iterable[LoadError] = (),
    ) -> SkillSnapshot:
        """用一组技能包构建并发布下一版本快照"""
        with self._publish_lock:
            snapshot = SkillSnapshot(
                version=self._snapshot.version + 1,
                packages=tuple(packages),
                load_errors=tuple(load_errors),
            )
            self._snapshot = snapshot

        logger.info(f"Published skill index v{snapshot.version} ({len(snapshot)} skills)")
        return snapshot
