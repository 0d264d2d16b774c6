"""
测试公共夹具

在 tmp_path 下生成技能包目录，构造隔离的 Settings / DispatchEngine。
"""

import asyncio
from pathlib import Path

import pytest
import yaml

from skillhost.config import Settings
from skillhost.dispatch import ExecutionResult
from skillhost.engine import DispatchEngine

BOOKING_DESCRIPTION = (
    "Find and book hotels: hotel search across chains, compare nightly rates, "
    "check availability for given dates and destinations, and apply saved "
    "traveler preferences."
)

KQL_DESCRIPTION = (
    "Query-language assistance: write, explain and optimize KQL (Kusto Query "
    "Language) queries to filter, summarize and chart logs, errors and telemetry "
    "over time ranges like the last hour or day."
)

ECHO_SCRIPT = """\
import json
import sys

payload = json.load(sys.stdin)
print(json.dumps({"request": payload.get("request"), "skill": payload.get("skill")}))
"""


def write_skill(
    root: Path,
    name: str,
    description: str,
    *,
    body: str | None = None,
    dirname: str | None = None,
    triggers: list[str] | None = None,
    prerequisites: list | None = None,
    script_source: str | None = None,
    script_name: str = "run.py",
    references: dict[str, str] | None = None,
    extra: dict | None = None,
) -> Path:
    """写入一个技能包，返回技能目录"""
    skill_dir = root / (dirname or name)
    skill_dir.mkdir(parents=True, exist_ok=True)

    front = {"name": name, "description": description}
    if triggers:
        front["triggers"] = triggers
    if prerequisites:
        front["prerequisites"] = prerequisites
    if script_source is not None:
        scripts_dir = skill_dir / "scripts"
        scripts_dir.mkdir(exist_ok=True)
        (scripts_dir / script_name).write_text(script_source, encoding="utf-8")
        front["script"] = f"scripts/{script_name}"
    if extra:
        front.update(extra)

    for ref_name, content in (references or {}).items():
        ref_dir = skill_dir / "references"
        ref_dir.mkdir(exist_ok=True)
        (ref_dir / ref_name).write_text(content, encoding="utf-8")

    body = body if body is not None else f"# {name}\n\nInstructions for {name}."
    content = f"---\n{yaml.safe_dump(front, sort_keys=False)}---\n\n{body}\n"
    (skill_dir / "SKILL.md").write_text(content, encoding="utf-8")
    return skill_dir


def write_booking(root: Path, script_source: str | None = ECHO_SCRIPT) -> Path:
    return write_skill(
        root,
        "booking",
        BOOKING_DESCRIPTION,
        body="# Hotel Booking\n\nSearch hotels and present options.",
        triggers=["find hotels", "book a hotel"],
        prerequisites=[
            {
                "name": "preferences",
                "path": "preferences.md",
                "required": False,
                "default": "No saved preferences.",
            }
        ],
        script_source=script_source,
        references={"policies.md": "# Booking Policies\n\nNever confirm without approval.\n"},
    )


def write_kql(root: Path) -> Path:
    return write_skill(
        root,
        "kql",
        KQL_DESCRIPTION,
        body="# KQL Assistant\n\nWrite Kusto queries.",
        triggers=["kusto query", "kql query"],
    )


@pytest.fixture
def skills_root(tmp_path) -> Path:
    root = tmp_path / "skills"
    root.mkdir()
    write_booking(root)
    write_kql(root)
    return root


@pytest.fixture
def settings(tmp_path, skills_root) -> Settings:
    return Settings(
        project_root=tmp_path,
        skill_directories=["skills"],
        prerequisite_directories=["data"],
        script_timeout_seconds=10,
        invocation_timeout_seconds=20,
        log_to_file=False,
    )


@pytest.fixture
def engine(settings) -> DispatchEngine:
    engine = DispatchEngine(settings)
    engine.load()
    return engine


class CountingSandbox:
    """
    不启动进程的沙箱替身

    记录调用次数，可配置延迟、退出码和超时结果。
    """

    def __init__(self, delay: float = 0.2, exit_code: int = 0, stdout: str = "ok"):
        self.delay = delay
        self.exit_code = exit_code
        self.stdout = stdout
        self.calls: list[dict] = []
        self.started = asyncio.Event()
        self.cancelled = 0
        self.active = 0
        self.max_active = 0

    async def run(self, script_path, inputs=None, timeout=None) -> ExecutionResult:
        self.calls.append({"script": script_path, "inputs": inputs, "timeout": timeout})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            if timeout is not None and self.delay > timeout:
                await asyncio.sleep(timeout)
                return ExecutionResult(
                    script=str(script_path),
                    exit_code=-1,
                    stderr="timed out",
                    elapsed_ms=int(timeout * 1000),
                    timed_out=True,
                )
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.active -= 1
        return ExecutionResult(
            script=str(script_path),
            exit_code=self.exit_code,
            stdout=self.stdout,
            stderr="" if self.exit_code == 0 else "boom",
            elapsed_ms=int(self.delay * 1000),
        )


@pytest.fixture
def counting_sandbox() -> CountingSandbox:
    return CountingSandbox()


