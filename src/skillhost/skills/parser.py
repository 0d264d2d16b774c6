"""
SKILL.md 解析器

遵循 Agent Skills 规范 (agentskills.io/specification)
解析 SKILL.md 文件的 YAML frontmatter 和 Markdown body，
生成不可变的 SkillManifest / SkillPackage。
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

import yaml

from ..errors import ValidationError

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")

MAX_NAME_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 1024


@dataclass(frozen=True)
class Prerequisite:
    """
    技能声明的前置资源

    - name: 资源名称 (如 preferences)
    - path: 资源路径，缺省为 <name>.md
    - required: 缺失时是否直接失败
    - default: 缺失时使用的降级内容
    """

    name: str
    path: str = ""
    required: bool = False
    default: Optional[str] = None
    description: str = ""

    @property
    def resource_path(self) -> str:
        return self.path or f"{self.name}.md"


@dataclass(frozen=True)
class SkillManifest:
    """
    技能元数据 (来自 YAML frontmatter)

    必需字段:
    - name: 技能名称 (1-64字符, 小写字母/数字/连字符)
    - description: 技能描述 (1-1024字符)

    可选字段:
    - triggers: 触发短语
    - prerequisites: 前置资源
    - script: 随包脚本 (相对技能目录)
    - license / compatibility / metadata / allowed_tools
    - disable_model_invocation: 不参与相关性匹配，只能显式调用
    """

    name: str
    description: str
    triggers: tuple[str, ...] = ()
    prerequisites: tuple[Prerequisite, ...] = ()
    script: Optional[str] = None
    license: Optional[str] = None
    compatibility: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)
    allowed_tools: tuple[str, ...] = ()
    disable_model_invocation: bool = False

    def __post_init__(self):
        """验证字段"""
        self._validate_name()
        self._validate_description()
        # 冻结 metadata，避免发布后被修改
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def _validate_name(self):
        if not self.name or not self.name.strip():
            raise ValidationError("name field is required")

        if len(self.name) > MAX_NAME_LENGTH:
            raise ValidationError(
                f"name must be <= {MAX_NAME_LENGTH} characters, got {len(self.name)}",
                skill_name=self.name,
            )

        if not _NAME_PATTERN.match(self.name):
            raise ValidationError(
                "name must contain only lowercase letters, numbers, and hyphens. "
                f"Cannot start/end with hyphen or have consecutive hyphens. Got: {self.name}",
                skill_name=self.name,
            )

    def _validate_description(self):
        if not self.description or not self.description.strip():
            raise ValidationError("description field is required", skill_name=self.name)

        if len(self.description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"description must be <= {MAX_DESCRIPTION_LENGTH} characters, "
                f"got {len(self.description)}",
                skill_name=self.name,
            )

    def get_prerequisite(self, name: str) -> Optional[Prerequisite]:
        for prereq in self.prerequisites:
            if prereq.name == name:
                return prereq
        return None


@dataclass(frozen=True)
class SkillPackage:
    """
    技能包

    清单 + 指令正文 + 随包文件引用。
    发布到索引快照后只读共享。
    """

    manifest: SkillManifest
    body: str
    path: Path  # SKILL.md 文件路径
    scripts: tuple[Path, ...] = ()
    references: tuple[Path, ...] = ()
    assets: tuple[Path, ...] = ()

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def description(self) -> str:
        return self.manifest.description

    @property
    def skill_dir(self) -> Path:
        """技能根目录"""
        return self.path.parent

    @property
    def script_path(self) -> Optional[Path]:
        """声明脚本的绝对路径"""
        if not self.manifest.script:
            return None
        return (self.skill_dir / self.manifest.script).resolve()

    def get_reference(self, ref_name: str) -> Optional[Path]:
        for ref in self.references:
            if ref.name == ref_name:
                return ref
        return None


class SkillParser:
    """
    SKILL.md 解析器

    解析符合 Agent Skills 规范的 SKILL.md 文件，
    任何格式问题都以 ValidationError 报告。
    """

    FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n(.*))?$", re.DOTALL)

    def parse_directory(self, skill_dir: Path) -> SkillPackage:
        """解析技能目录"""
        return self.parse_file(skill_dir / "SKILL.md")

    def parse_file(self, path: Path) -> SkillPackage:
        """
        解析 SKILL.md 文件

        Raises:
            ValidationError: 文件缺失或内容无效
        """
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ValidationError(f"SKILL.md not found: {path}")
        except (OSError, UnicodeDecodeError) as e:
            raise ValidationError(f"Cannot read {path}: {e}")

        return self.parse_content(content, path)

    def parse_content(self, content: str, path: Path) -> SkillPackage:
        """
        解析 SKILL.md 内容

        Args:
            content: 文件内容
            path: 文件路径 (用于定位相关目录)
        """
        match = self.FRONTMATTER_PATTERN.match(content.lstrip("\ufeff"))
        if not match:
            raise ValidationError(f"Invalid SKILL.md format: missing YAML frontmatter in {path}")

        yaml_content = match.group(1)
        body = (match.group(2) or "").strip()

        try:
            data = yaml.safe_load(yaml_content) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML frontmatter in {path}: {e}")

        if not isinstance(data, dict):
            raise ValidationError(f"YAML frontmatter must be a mapping in {path}")

        manifest = self._build_manifest(data, path)
        skill_dir = path.parent

        if skill_dir.name != manifest.name:
            logger.warning(
                f"Skill directory name '{skill_dir.name}' does not match "
                f"skill name '{manifest.name}' in {path}"
            )

        if manifest.script:
            self._check_script(manifest, skill_dir)

        return SkillPackage(
            manifest=manifest,
            body=body,
            path=path,
            scripts=self._list_files(skill_dir / "scripts"),
            references=self._list_files(skill_dir / "references", suffix=".md"),
            assets=self._list_files(skill_dir / "assets"),
        )

    def _build_manifest(self, data: dict, path: Path) -> SkillManifest:
        """从 YAML 数据构建清单"""
        name = data.get("name")
        description = data.get("description")

        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"Missing required 'name' field in {path}")
        if not isinstance(description, str) or not description.strip():
            raise ValidationError(f"Missing required 'description' field in {path}", skill_name=name)

        # allowed-tools 可以是空格分隔字符串或列表
        allowed_tools = data.get("allowed-tools", "")
        if isinstance(allowed_tools, str):
            allowed_tools = allowed_tools.split() if allowed_tools else []
        elif allowed_tools is None:
            allowed_tools = []
        elif not isinstance(allowed_tools, list):
            raise ValidationError(
                f"'allowed-tools' must be a string or a list in {path}", skill_name=name
            )

        for key in ("license", "compatibility"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"'{key}' must be a string in {path}", skill_name=name)

        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError(f"'metadata' must be a mapping in {path}", skill_name=name)

        script = data.get("script")
        if script is not None and (not isinstance(script, str) or not script.strip()):
            raise ValidationError(f"'script' must be a relative path in {path}", skill_name=name)

        return SkillManifest(
            name=name.strip(),
            description=description.strip(),
            triggers=self._parse_triggers(data.get("triggers"), name, path),
            prerequisites=self._parse_prerequisites(data.get("prerequisites"), name, path),
            script=script.strip() if script else None,
            license=data.get("license"),
            compatibility=data.get("compatibility"),
            metadata=metadata,
            allowed_tools=tuple(str(t) for t in allowed_tools),
            disable_model_invocation=bool(data.get("disable-model-invocation", False)),
        )

    @staticmethod
    def _parse_triggers(raw: Any, name: str, path: Path) -> tuple[str, ...]:
        if raw is None:
            return ()
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list):
            raise ValidationError(f"'triggers' must be a list of phrases in {path}", skill_name=name)
        # 去重但保持顺序
        seen: dict[str, None] = {}
        for item in raw:
            phrase = str(item).strip()
            if phrase:
                seen.setdefault(phrase, None)
        return tuple(seen)

    @staticmethod
    def _parse_prerequisites(raw: Any, name: str, path: Path) -> tuple[Prerequisite, ...]:
        if raw is None:
            return ()
        if not isinstance(raw, list):
            raise ValidationError(f"'prerequisites' must be a list in {path}", skill_name=name)

        result: list[Prerequisite] = []
        seen: set[str] = set()
        for item in raw:
            if isinstance(item, str):
                prereq = Prerequisite(name=item.strip())
            elif isinstance(item, dict):
                default = item.get("default")
                prereq = Prerequisite(
                    name=str(item.get("name") or "").strip(),
                    path=str(item.get("path") or "").strip(),
                    required=bool(item.get("required", False)),
                    default=None if default is None else str(default),
                    description=str(item.get("description") or "").strip(),
                )
            else:
                raise ValidationError(
                    f"Invalid prerequisite entry {item!r} in {path}", skill_name=name
                )

            if not prereq.name:
                raise ValidationError(f"Prerequisite without a name in {path}", skill_name=name)
            if prereq.name in seen:
                raise ValidationError(
                    f"Prerequisite '{prereq.name}' declared twice in {path}", skill_name=name
                )
            seen.add(prereq.name)
            result.append(prereq)

        return tuple(result)

    @staticmethod
    def _check_script(manifest: SkillManifest, skill_dir: Path) -> None:
        """脚本必须位于技能目录内且存在"""
        root = skill_dir.resolve()
        script_path = (skill_dir / manifest.script).resolve()
        if not script_path.is_relative_to(root):
            raise ValidationError(
                f"Script '{manifest.script}' escapes the skill directory",
                skill_name=manifest.name,
            )
        if not script_path.is_file():
            raise ValidationError(
                f"Script '{manifest.script}' not found in {skill_dir}",
                skill_name=manifest.name,
            )

    @staticmethod
    def _list_files(directory: Path, suffix: str | None = None) -> tuple[Path, ...]:
        if not directory.is_dir():
            return ()
        return tuple(
            sorted(
                f
                for f in directory.iterdir()
                if f.is_file() and (suffix is None or f.suffix == suffix)
            )
        )

    def validate(self, skill: SkillPackage) -> list[str]:
        """
        非致命检查

        Returns:
            警告消息列表 (空列表表示通过)
        """
        warnings = []

        if skill.skill_dir.name != skill.name:
            warnings.append(
                f"Directory name '{skill.skill_dir.name}' should match skill name '{skill.name}'"
            )

        # body 建议 < 500 行
        body_lines = skill.body.count("\n") + 1
        if body_lines > 500:
            warnings.append(
                f"SKILL.md body has {body_lines} lines. "
                "Recommended: keep under 500 lines for efficient context usage."
            )

        return warnings


# 全局解析器实例
skill_parser = SkillParser()


def parse_skill_directory(skill_dir: Path) -> SkillPackage:
    """便捷函数：解析技能目录"""
    return skill_parser.parse_directory(skill_dir)
