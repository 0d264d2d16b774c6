"""
技能系统

遵循 Agent Skills 规范 (agentskills.io/specification)
支持渐进式披露:
- Level 1: 技能清单 (name + description) - 系统提示
- Level 2: 完整指令 (SKILL.md body) - 分发选中时
- Level 3: 资源文件 - 按需加载
"""

from .catalog import SkillCatalog
from .index import SkillIndex, SkillSnapshot
from .loader import SKILL_DIRECTORIES, LoadError, LoadReport, SkillLoader
from .parser import (
    Prerequisite,
    SkillManifest,
    SkillPackage,
    SkillParser,
    parse_skill_directory,
)
from .watcher import SkillWatcher, compute_fingerprint

__all__ = [
    # Parser
    "SkillParser",
    "SkillManifest",
    "SkillPackage",
    "Prerequisite",
    "parse_skill_directory",
    # Loader
    "SkillLoader",
    "LoadReport",
    "LoadError",
    "SKILL_DIRECTORIES",
    # Index
    "SkillIndex",
    "SkillSnapshot",
    # Catalog
    "SkillCatalog",
    # Watcher
    "SkillWatcher",
    "compute_fingerprint",
]
