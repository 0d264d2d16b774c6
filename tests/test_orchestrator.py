"""调用编排测试: 场景、请求合并、取消、截止时间"""

import asyncio
import json
import time

import pytest

from conftest import CountingSandbox, write_skill
from skillhost.config import Settings
from skillhost.dispatch import InvocationState
from skillhost.engine import DispatchEngine

HOTEL_REQUEST = "Find hotels in Portland for August 2-4"
KQL_REQUEST = "write a query to filter errors in the last hour"


def _engine(settings, **kwargs) -> DispatchEngine:
    engine = DispatchEngine(settings, **kwargs)
    engine.load()
    return engine


@pytest.mark.asyncio
class TestScenarios:
    async def test_booking_without_preferences(self, engine):
        envelope = await engine.dispatch(HOTEL_REQUEST)

        assert envelope.status == "completed"
        assert envelope.selected_skill == "booking"
        assert envelope.warnings == ["preferences missing, using defaults"]
        assert envelope.error is None
        assert "No saved preferences." in envelope.instructions
        assert len(envelope.artifacts) == 1
        output = json.loads(envelope.artifacts[0].stdout)
        assert output == {"request": HOTEL_REQUEST, "skill": "booking"}

    async def test_booking_with_preferences(self, engine, tmp_path):
        data = tmp_path / "data"
        data.mkdir()
        (data / "preferences.md").write_text("Budget under $200, near downtown", encoding="utf-8")

        envelope = await engine.dispatch(HOTEL_REQUEST)

        assert envelope.status == "completed"
        assert envelope.warnings == []
        assert "Budget under $200" in envelope.instructions

    async def test_kql_without_script(self, engine):
        envelope = await engine.dispatch(KQL_REQUEST)

        assert envelope.status == "completed"
        assert envelope.selected_skill == "kql"
        assert envelope.instructions.startswith("# KQL Assistant")
        assert envelope.artifacts == []

    async def test_unrelated_request(self, engine):
        envelope = await engine.dispatch("paint my house blue")

        assert envelope.status == "no_match"
        assert envelope.selected_skill is None
        assert envelope.instructions is None
        assert envelope.error is None


@pytest.mark.asyncio
class TestExplicitSelection:
    async def test_explicit_skill_bypasses_matching(self, engine):
        envelope = await engine.dispatch("paint my house blue", skill="kql")

        assert envelope.status == "completed"
        assert envelope.selected_skill == "kql"

    async def test_unknown_skill_fails(self, engine):
        envelope = await engine.dispatch("anything", skill="nope")

        assert envelope.status == "failed"
        assert envelope.error["error_type"] == "not_found"

    async def test_disabled_skill_only_explicit(self, settings, skills_root):
        write_skill(
            skills_root,
            "deploy",
            "Deploy the production service",
            extra={"disable-model-invocation": True},
        )
        engine = _engine(settings)

        assert (await engine.dispatch("deploy the production service")).status == "no_match"
        explicit = await engine.dispatch("deploy the production service", skill="deploy")
        assert explicit.status == "completed"


@pytest.mark.asyncio
class TestFailures:
    async def test_required_prerequisite_missing(self, settings, skills_root):
        write_skill(
            skills_root,
            "itinerary",
            "Build a travel itinerary from the saved plan",
            prerequisites=[{"name": "plan", "required": True}],
            script_source="print('never')\n",
        )
        sandbox = CountingSandbox()
        engine = _engine(settings, sandbox=sandbox)

        envelope = await engine.dispatch("travel itinerary", skill="itinerary")

        assert envelope.status == "failed"
        assert envelope.error["error_type"] == "prerequisite_missing"
        assert envelope.error["details"]["prerequisite"] == "plan"
        assert sandbox.calls == []

    async def test_script_failure_returns_output(self, settings):
        engine = _engine(settings, sandbox=CountingSandbox(delay=0, exit_code=2, stdout="partial"))

        envelope = await engine.dispatch(HOTEL_REQUEST)

        assert envelope.status == "failed"
        assert envelope.selected_skill == "booking"
        assert envelope.error["error_type"] == "script_failed"
        assert envelope.error["details"]["exit_code"] == 2
        assert envelope.artifacts[0].stdout == "partial"

    async def test_failure_does_not_affect_other_invocations(self, settings):
        engine = _engine(settings, sandbox=CountingSandbox(delay=0.05, exit_code=1))

        failed, completed = await asyncio.gather(
            engine.dispatch(HOTEL_REQUEST),
            engine.dispatch(KQL_REQUEST),
        )

        assert failed.status == "failed"
        assert completed.status == "completed"
        assert engine.snapshot().version == 1

    async def test_scorer_error_returns_failed_envelope(self, settings):
        class DownScorer:
            def score(self, request, package):
                raise RuntimeError("scorer down")

        engine = _engine(settings, scorer=DownScorer())

        envelope = await engine.dispatch(HOTEL_REQUEST)

        assert envelope.status == "failed"
        assert envelope.selected_skill is None
        assert envelope.error["error_type"] == "internal"
        assert "scorer down" in envelope.error["message"]

    async def test_negative_score_returns_failed_envelope(self, settings):
        class NegativeScorer:
            def score(self, request, package):
                return -0.5

        engine = _engine(settings, scorer=NegativeScorer())

        envelope = await engine.dispatch(KQL_REQUEST)

        assert envelope.status == "failed"
        assert envelope.error["error_type"] == "internal"
        # 下一个请求不受影响
        assert (await engine.dispatch(KQL_REQUEST, skill="kql")).status == "completed"


@pytest.mark.asyncio
class TestCoalescing:
    async def test_identical_requests_share_one_execution(self, settings):
        sandbox = CountingSandbox(delay=0.3)
        engine = _engine(settings, sandbox=sandbox)

        envelopes = await asyncio.gather(*(engine.dispatch(HOTEL_REQUEST) for _ in range(5)))

        assert len(sandbox.calls) == 1
        assert all(e == envelopes[0] for e in envelopes)
        assert envelopes[0].status == "completed"
        await asyncio.sleep(0)
        assert engine.orchestrator.inflight_keys == []

    async def test_whitespace_and_case_coalesce(self, settings):
        sandbox = CountingSandbox(delay=0.3)
        engine = _engine(settings, sandbox=sandbox)

        await asyncio.gather(
            engine.dispatch(HOTEL_REQUEST),
            engine.dispatch("  find HOTELS in portland   for august 2-4 "),
        )

        assert len(sandbox.calls) == 1

    async def test_different_keys_run_concurrently(self, settings):
        sandbox = CountingSandbox(delay=0.5)
        engine = _engine(settings, sandbox=sandbox)

        start = time.monotonic()
        await asyncio.gather(
            engine.dispatch("Find hotels in Portland"),
            engine.dispatch("Find hotels in Seattle"),
        )
        elapsed = time.monotonic() - start

        assert len(sandbox.calls) == 2
        assert sandbox.max_active == 2
        assert elapsed < 0.95

    async def test_sequential_requests_execute_again(self, settings):
        sandbox = CountingSandbox(delay=0.01)
        engine = _engine(settings, sandbox=sandbox)

        await engine.dispatch(HOTEL_REQUEST)
        await engine.dispatch(HOTEL_REQUEST)

        assert len(sandbox.calls) == 2

    async def test_different_inputs_not_coalesced(self, settings):
        sandbox = CountingSandbox(delay=0.2)
        engine = _engine(settings, sandbox=sandbox)

        await asyncio.gather(
            engine.dispatch(HOTEL_REQUEST, inputs={"args": ["--limit", "3"]}),
            engine.dispatch(HOTEL_REQUEST, inputs={"args": ["--limit", "5"]}),
        )

        assert len(sandbox.calls) == 2


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancel_during_execution_kills_script(self, settings):
        sandbox = CountingSandbox(delay=5)
        engine = _engine(settings, sandbox=sandbox)

        ctx = engine.begin(HOTEL_REQUEST)
        task = asyncio.create_task(engine.run(ctx))
        await sandbox.started.wait()
        assert ctx.state == InvocationState.EXECUTING

        assert engine.cancel(ctx.invocation_id) is True
        envelope = await asyncio.wait_for(task, timeout=2)

        assert envelope.status == "cancelled"
        assert envelope.error["error_type"] == "cancelled"
        await asyncio.sleep(0.05)
        assert sandbox.cancelled == 1
        assert engine.orchestrator.inflight_keys == []
        assert engine.orchestrator.active_invocations == 0

    async def test_cancel_one_waiter_keeps_shared_execution(self, settings):
        sandbox = CountingSandbox(delay=0.4)
        engine = _engine(settings, sandbox=sandbox)

        first = engine.begin(HOTEL_REQUEST)
        second = engine.begin(HOTEL_REQUEST)
        first_task = asyncio.create_task(engine.run(first))
        second_task = asyncio.create_task(engine.run(second))
        await sandbox.started.wait()

        engine.cancel(first.invocation_id)
        cancelled, completed = await asyncio.gather(first_task, second_task)

        assert cancelled.status == "cancelled"
        assert completed.status == "completed"
        assert second.coalesced or first.coalesced
        assert len(sandbox.calls) == 1
        assert sandbox.cancelled == 0

    async def test_cancel_before_run(self, engine):
        ctx = engine.begin(KQL_REQUEST)
        ctx.cancel()

        envelope = await engine.run(ctx)

        assert envelope.status == "cancelled"
        assert ctx.state == InvocationState.CANCELLED

    async def test_cancel_unknown_invocation(self, engine):
        assert engine.cancel("missing") is False

    async def test_caller_task_cancellation_releases_key(self, settings):
        sandbox = CountingSandbox(delay=5)
        engine = _engine(settings, sandbox=sandbox)

        task = asyncio.create_task(engine.dispatch(HOTEL_REQUEST))
        await sandbox.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.05)

        assert sandbox.cancelled == 1
        assert engine.orchestrator.inflight_keys == []


@pytest.mark.asyncio
class TestDeadline:
    async def test_deadline_expiry_times_out(self, settings):
        sandbox = CountingSandbox(delay=5)
        engine = _engine(settings, sandbox=sandbox)

        start = time.monotonic()
        envelope = await engine.dispatch(HOTEL_REQUEST, timeout=0.3)
        elapsed = time.monotonic() - start

        assert envelope.status == "failed"
        assert envelope.error["error_type"] == "timeout"
        assert elapsed < 2
        assert sandbox.calls[0]["timeout"] <= 0.3

    async def test_script_timeout_caps_deadline(self, tmp_path, skills_root):
        settings = Settings(
            project_root=tmp_path,
            skill_directories=["skills"],
            script_timeout_seconds=0.2,
            invocation_timeout_seconds=30,
        )
        sandbox = CountingSandbox(delay=5)
        engine = _engine(settings, sandbox=sandbox)

        envelope = await engine.dispatch(HOTEL_REQUEST)

        assert envelope.error["error_type"] == "timeout"
        assert sandbox.calls[0]["timeout"] == pytest.approx(0.2)

    @pytest.mark.slow
    async def test_real_script_killed_on_deadline(self, settings, skills_root):
        write_skill(
            skills_root,
            "sleeper",
            "Sleep for a very long time",
            script_source="import time\ntime.sleep(30)\n",
        )
        engine = _engine(settings)

        start = time.monotonic()
        envelope = await engine.dispatch("sleep", skill="sleeper", timeout=0.5)

        assert envelope.status == "failed"
        assert envelope.error["error_type"] == "timeout"
        assert time.monotonic() - start < 3


@pytest.mark.asyncio
class TestAmbiguityPolicy:
    @pytest.fixture
    def tied_root(self, skills_root):
        write_skill(skills_root, "pdf-merge", "Merge and split PDF documents")
        write_skill(skills_root, "pdf-tools", "Merge and split PDF documents")
        return skills_root

    async def test_ask_returns_candidates(self, settings, tied_root):
        engine = _engine(settings)

        envelope = await engine.dispatch("merge PDF documents")

        assert envelope.status == "ambiguous"
        assert envelope.selected_skill is None
        assert [c.skill_name for c in envelope.candidates] == ["pdf-merge", "pdf-tools"]

    async def test_auto_selects_top_ranked(self, tmp_path, tied_root):
        settings = Settings(
            project_root=tmp_path,
            skill_directories=["skills"],
            ambiguity_policy="auto",
        )
        engine = _engine(settings)

        envelope = await engine.dispatch("merge PDF documents")

        assert envelope.status == "completed"
        assert envelope.selected_skill == "pdf-merge"
        assert any("Ambiguous" in w for w in envelope.warnings)
