"""前置资源解析测试"""

import pytest

from conftest import write_skill
from skillhost.dispatch import FilePrerequisiteResolver, resolve_prerequisites
from skillhost.errors import PrerequisiteMissingError
from skillhost.skills import SkillParser


@pytest.fixture
def planner(tmp_path):
    skill_dir = write_skill(
        tmp_path / "skills",
        "planner",
        "Plan trips",
        prerequisites=[
            {"name": "preferences", "default": "defaults"},
            {"name": "plan", "path": "plans/current.md", "required": True},
        ],
    )
    return SkillParser().parse_directory(skill_dir)


@pytest.mark.asyncio
class TestFilePrerequisiteResolver:
    async def test_reads_from_roots_in_order(self, tmp_path, planner):
        first = tmp_path / "first"
        second = tmp_path / "second"
        for root, text in ((first, "first"), (second, "second")):
            root.mkdir()
            (root / "preferences.md").write_text(text, encoding="utf-8")

        resolver = FilePrerequisiteResolver([first, second])
        prereq = planner.manifest.get_prerequisite("preferences")

        assert await resolver.read(prereq, planner) == "first"

    async def test_falls_back_to_skill_directory(self, planner):
        (planner.skill_dir / "preferences.md").write_text("bundled", encoding="utf-8")
        resolver = FilePrerequisiteResolver([])
        prereq = planner.manifest.get_prerequisite("preferences")

        assert await resolver.read(prereq, planner) == "bundled"

    async def test_not_found_returns_none(self, tmp_path, planner):
        resolver = FilePrerequisiteResolver([tmp_path / "empty"])
        prereq = planner.manifest.get_prerequisite("plan")

        assert await resolver.read(prereq, planner) is None


@pytest.mark.asyncio
class TestResolvePrerequisites:
    async def test_optional_missing_warns_and_uses_default(self, tmp_path, planner):
        data = tmp_path / "data"
        (data / "plans").mkdir(parents=True)
        (data / "plans" / "current.md").write_text("Day 1: arrive", encoding="utf-8")

        resolved, warnings = await resolve_prerequisites(planner, FilePrerequisiteResolver([data]))

        assert resolved == {"preferences": "defaults", "plan": "Day 1: arrive"}
        assert warnings == ["preferences missing, using defaults"]

    async def test_required_missing_raises(self, tmp_path, planner):
        with pytest.raises(PrerequisiteMissingError) as exc_info:
            await resolve_prerequisites(planner, FilePrerequisiteResolver([tmp_path / "data"]))

        assert exc_info.value.prerequisite == "plan"
        assert exc_info.value.skill_name == "planner"
        assert exc_info.value.to_dict()["error_type"] == "prerequisite_missing"

    async def test_undecodable_optional_uses_default(self, tmp_path, planner):
        data = tmp_path / "data"
        (data / "plans").mkdir(parents=True)
        (data / "plans" / "current.md").write_text("Day 1: arrive", encoding="utf-8")
        (data / "preferences.md").write_bytes(b"\xff\xfe bad")

        resolved, warnings = await resolve_prerequisites(planner, FilePrerequisiteResolver([data]))

        assert resolved["preferences"] == "defaults"
        assert warnings == ["preferences missing, using defaults"]
