"""
技能目录 (Skill Catalog)

遵循 Agent Skills 规范的渐进式披露:
- Level 1: 技能清单 (name + description) - 在系统提示中提供
- Level 2: 完整指令 (SKILL.md body) - 分发选中后返回
- Level 3: 资源文件 - 按需读取

清单从索引快照生成，快照不变则结果不变。
"""

import logging

from .index import SkillSnapshot

logger = logging.getLogger(__name__)


class SkillCatalog:
    """
    技能目录

    管理技能清单的生成和格式化，用于系统提示注入。
    """

    CATALOG_TEMPLATE = """
## Available Skills

The following skills are available. Each skill has specialized capabilities.
When a user's request matches a skill's description, dispatch the request to load its full instructions.

{skill_list}
"""

    SKILL_ENTRY_TEMPLATE = "- **{name}**: {description}"

    EMPTY_CATALOG = "\n## Available Skills\n\nNo skills installed.\n"

    def __init__(self, max_description_chars: int = 120):
        self.max_description_chars = max_description_chars
        self._cache: tuple[int, str] | None = None

    def generate(self, snapshot: SkillSnapshot) -> str:
        """
        生成技能清单

        同一版本的快照只生成一次。
        """
        if self._cache is not None and self._cache[0] == snapshot.version:
            return self._cache[1]

        if not len(snapshot):
            catalog = self.EMPTY_CATALOG
        else:
            entries = [
                self.SKILL_ENTRY_TEMPLATE.format(
                    name=package.name,
                    description=self._short_description(package.description),
                )
                for package in snapshot
            ]
            catalog = self.CATALOG_TEMPLATE.format(skill_list="\n".join(entries))
            logger.debug(f"Generated skill catalog with {len(entries)} skills")

        self._cache = (snapshot.version, catalog)
        return catalog

    def compact(self, snapshot: SkillSnapshot) -> str:
        """
        紧凑版技能清单 (仅名称列表)

        用于 token 受限的场景
        """
        if not len(snapshot):
            return "No skills installed."
        return f"Available skills: {', '.join(snapshot.names())}"

    def _short_description(self, description: str) -> str:
        # 第一行，超长截断
        first_line = description.split("\n")[0].strip()
        limit = self.max_description_chars
        if len(first_line) > limit:
            first_line = first_line[: limit - 3] + "..."
        return first_line
