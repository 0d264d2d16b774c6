"""CLI 测试"""

import json

import pytest
from typer.testing import CliRunner

from conftest import write_skill
from skillhost import main

runner = CliRunner()


@pytest.fixture
def project(tmp_path, skills_root, monkeypatch):
    monkeypatch.setattr(main.settings, "project_root", tmp_path)
    monkeypatch.setattr(main.settings, "skill_directories", ["skills"])
    monkeypatch.setattr(main.settings, "prerequisite_directories", ["data"])
    return tmp_path


class TestValidate:
    def test_valid_directory(self, skills_root):
        result = runner.invoke(main.app, ["validate", str(skills_root)])

        assert result.exit_code == 0
        assert "2 valid, 0 rejected" in result.output

    def test_invalid_package_exits_nonzero(self, tmp_path):
        write_skill(tmp_path, "good", "A good skill")
        bad = tmp_path / "bad"
        bad.mkdir()
        (bad / "SKILL.md").write_text("---\nname: bad\n---\n", encoding="utf-8")

        result = runner.invoke(main.app, ["validate", str(tmp_path)])

        assert result.exit_code == 1
        assert "1 valid, 1 rejected" in result.output


class TestCommands:
    def test_list(self, project):
        result = runner.invoke(main.app, ["list"])

        assert result.exit_code == 0
        assert "booking" in result.output
        assert "kql" in result.output

    def test_match(self, project):
        result = runner.invoke(main.app, ["match", "Find hotels in Portland for August 2-4"])

        assert result.exit_code == 0
        assert "Selected: booking" in result.output

    def test_dispatch_json(self, project):
        result = runner.invoke(main.app, ["dispatch", "write a kql query", "--json"])

        assert result.exit_code == 0
        envelope = json.loads(result.output)
        assert envelope["status"] == "completed"
        assert envelope["selected_skill"] == "kql"

    def test_dispatch_failure_exit_code(self, project):
        result = runner.invoke(main.app, ["dispatch", "x", "--skill", "nope"])

        assert result.exit_code == 1

    def test_empty_registry_exit_code(self, tmp_path, monkeypatch):
        monkeypatch.setattr(main.settings, "project_root", tmp_path)
        monkeypatch.setattr(main.settings, "skill_directories", ["skills"])

        result = runner.invoke(main.app, ["list"])

        assert result.exit_code == 2

    def test_version(self):
        from skillhost import __version__

        result = runner.invoke(main.app, ["version"])

        assert json.loads(result.output) == {"skillhost": __version__}
