"""
前置资源解析

技能可以声明需要的外部文档（如 preferences、plan）。
解析器只需实现读取约定: 返回内容，或 None 表示 "not found"。

缺失处理:
- 可选资源: 记录警告 "<name> missing, using defaults"，使用声明的默认值
- 必需资源: 抛出 PrerequisiteMissingError
"""

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Optional, Protocol

import aiofiles

from ..errors import PrerequisiteMissingError
from ..skills.parser import Prerequisite, SkillPackage

logger = logging.getLogger(__name__)


class PrerequisiteResolver(Protocol):
    """前置资源读取约定"""

    async def read(self, prerequisite: Prerequisite, package: SkillPackage) -> Optional[str]: ...


class FilePrerequisiteResolver:
    """
    从文件系统解析前置资源

    相对路径依次在 roots 中查找，最后查找技能目录本身；
    绝对路径直接读取。
    """

    def __init__(self, roots: Iterable[Path] = ()):
        self.roots = [Path(r) for r in roots]

    def candidates(self, prerequisite: Prerequisite, package: SkillPackage) -> list[Path]:
        """按查找顺序列出候选路径"""
        resource = Path(prerequisite.resource_path).expanduser()
        if resource.is_absolute():
            return [resource]
        return [root / resource for root in self.roots] + [package.skill_dir / resource]

    async def read(self, prerequisite: Prerequisite, package: SkillPackage) -> Optional[str]:
        for path in self.candidates(prerequisite, package):
            if not path.is_file():
                continue
            try:
                async with aiofiles.open(path, encoding="utf-8") as f:
                    content = await f.read()
            except (OSError, UnicodeDecodeError) as e:
                # 无法读取（已删除、无权限、非 UTF-8）按未找到处理
                logger.warning(f"Cannot read prerequisite {prerequisite.name} from {path}: {e}")
                continue
            logger.debug(f"Resolved prerequisite {prerequisite.name} from {path}")
            return content
        return None


async def resolve_prerequisites(
    package: SkillPackage,
    resolver: PrerequisiteResolver,
) -> tuple[dict[str, Optional[str]], list[str]]:
    """
    解析技能声明的所有前置资源

    Returns:
        (资源名 -> 内容, 警告列表)

    Raises:
        PrerequisiteMissingError: 必需资源缺失
    """
    resolved: dict[str, Optional[str]] = {}
    warnings: list[str] = []

    for prerequisite in package.manifest.prerequisites:
        content = await resolver.read(prerequisite, package)
        if content is not None:
            resolved[prerequisite.name] = content
            continue

        if prerequisite.required:
            logger.warning(f"Required prerequisite missing: {prerequisite.name} ({package.name})")
            raise PrerequisiteMissingError(prerequisite.name, skill_name=package.name)

        warnings.append(f"{prerequisite.name} missing, using defaults")
        resolved[prerequisite.name] = prerequisite.default
        logger.info(f"Optional prerequisite missing: {prerequisite.name} ({package.name})")

    return resolved, warnings
