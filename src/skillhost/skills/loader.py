"""
技能加载器

遵循 Agent Skills 规范 (agentskills.io/specification)
从标准目录结构批量加载 SKILL.md 定义的技能。

单个技能包的失败（清单无效、重名）只排除该包，
错误随加载报告返回，不会中断整个批次。
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import DuplicateSkillError, SkillError, SkillNotFoundError, ValidationError
from .parser import SkillPackage, SkillParser

logger = logging.getLogger(__name__)

# 标准技能目录 (按优先级排序)
SKILL_DIRECTORIES = [
    # 项目级别
    "skills",
    ".claude/skills",
    ".cursor/skills",
    ".codex/skills",
    # 用户级别 (全局)
    "~/.claude/skills",
    "~/.cursor/skills",
    "~/.codex/skills",
]

# 该名称的子目录会被递归扫描，用于存放系统技能
SYSTEM_SUBDIRECTORY = "system"


@dataclass(frozen=True)
class LoadError:
    """单个技能包的加载错误"""

    location: Path
    error: SkillError

    @property
    def skill_name(self) -> str | None:
        return self.error.skill_name

    def to_dict(self) -> dict:
        return {"location": str(self.location), **self.error.to_dict()}


@dataclass
class LoadReport:
    """
    一次批量加载的结果

    packages 按加载顺序排列（即优先级顺序），名称唯一。
    """

    packages: list[SkillPackage] = field(default_factory=list)
    errors: list[LoadError] = field(default_factory=list)

    @property
    def loaded_count(self) -> int:
        return len(self.packages)

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.packages]


class SkillLoader:
    """
    技能加载器

    支持:
    - 从标准目录自动发现技能
    - 解析 SKILL.md 文件
    - 同名检测（保留先加载的，排除后加载的）
    - 按需读取参考文档
    """

    def __init__(self, parser: SkillParser | None = None):
        self.parser = parser or SkillParser()

    def discover_skill_directories(
        self,
        base_path: Path | None = None,
        directories: Iterable[str] | None = None,
    ) -> list[Path]:
        """
        发现所有存在的技能目录

        Args:
            base_path: 基础路径 (项目根目录)
            directories: 候选目录，默认 SKILL_DIRECTORIES

        Returns:
            存在的技能目录列表 (保持优先级顺序，去重)
        """
        base_path = base_path or Path.cwd()
        found: list[Path] = []
        seen: set[Path] = set()

        for entry in directories if directories is not None else SKILL_DIRECTORIES:
            path = Path(entry).expanduser()
            if not path.is_absolute():
                path = base_path / path

            if not path.is_dir():
                continue

            resolved = path.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)
            found.append(path)
            logger.debug(f"Found skill directory: {path}")

        return found

    def expand_locations(self, locations: Iterable[Path]) -> list[Path]:
        """
        将位置展开为技能包目录列表

        位置可以是技能包目录（包含 SKILL.md），也可以是存放技能包的容器目录。
        子目录按名称排序，保证"后加载"的定义是确定的。
        """
        package_dirs: list[Path] = []

        for location in locations:
            location = Path(location)
            if (location / "SKILL.md").is_file():
                package_dirs.append(location)
                continue

            if not location.is_dir():
                logger.warning(f"Skill location not found: {location}")
                continue

            for item in sorted(location.iterdir()):
                if not item.is_dir():
                    continue
                if (item / "SKILL.md").is_file():
                    package_dirs.append(item)
                elif item.name == SYSTEM_SUBDIRECTORY:
                    package_dirs.extend(self.expand_locations([item]))

        return package_dirs

    def load(self, locations: Iterable[Path]) -> LoadReport:
        """
        批量加载技能包

        Args:
            locations: 技能包目录或容器目录（按优先级排序）

        Returns:
            LoadReport，包含成功加载的技能包和逐包错误
        """
        report = LoadReport()
        loaded: dict[str, SkillPackage] = {}

        for skill_dir in self.expand_locations(locations):
            try:
                package = self.parser.parse_directory(skill_dir)
            except ValidationError as e:
                logger.warning(f"Failed to load skill from {skill_dir}: {e}")
                report.errors.append(LoadError(location=skill_dir, error=e))
                continue
            except Exception as e:
                # 单个包的意外错误只排除该包
                logger.error(f"Unexpected error loading skill from {skill_dir}: {e}", exc_info=True)
                error = ValidationError(
                    f"Failed to parse {skill_dir / 'SKILL.md'}: {e}",
                    details={"exception": type(e).__name__},
                )
                report.errors.append(LoadError(location=skill_dir, error=error))
                continue

            existing = loaded.get(package.name)
            if existing is not None:
                error = DuplicateSkillError(
                    f"Skill '{package.name}' already loaded from {existing.skill_dir}",
                    skill_name=package.name,
                    details={"kept": str(existing.skill_dir), "rejected": str(skill_dir)},
                )
                logger.warning(f"Duplicate skill rejected: {error}")
                report.errors.append(LoadError(location=skill_dir, error=error))
                continue

            for warning in self.parser.validate(package):
                logger.debug(f"Skill validation warning: {warning}")

            loaded[package.name] = package
            report.packages.append(package)
            logger.info(f"Loaded skill: {package.name}")

        logger.info(
            f"Loaded {report.loaded_count} skills ({len(report.errors)} rejected)"
        )
        return report

    def load_all(
        self,
        base_path: Path | None = None,
        directories: Iterable[str] | None = None,
    ) -> LoadReport:
        """从所有标准目录加载技能"""
        return self.load(self.discover_skill_directories(base_path, directories))

    def read_reference(self, package: SkillPackage, ref_name: str) -> str:
        """
        获取技能参考文档 (原样返回)

        Raises:
            SkillNotFoundError: 文档不存在
        """
        ref_path = package.get_reference(ref_name)
        if ref_path is None or not ref_path.is_file():
            raise SkillNotFoundError(
                f"Reference '{ref_name}' not found in skill '{package.name}'",
                skill_name=package.name,
            )
        return ref_path.read_text(encoding="utf-8")
