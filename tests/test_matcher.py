"""相关性匹配测试"""

import pydantic
import pytest

from conftest import write_booking, write_kql, write_skill
from skillhost.config import Settings
from skillhost.dispatch import (
    AmbiguousMatch,
    KeywordOverlapScorer,
    LexicalScorer,
    NoMatch,
    RelevanceMatcher,
    Selected,
    tokenize,
)
from skillhost.skills import SkillIndex, SkillLoader


def _snapshot(*roots):
    report = SkillLoader().load(roots)
    index = SkillIndex()
    return index.publish_packages(report.packages)


@pytest.fixture
def snapshot(skills_root):
    return _snapshot(skills_root)


@pytest.fixture
def matcher():
    return RelevanceMatcher(selection_threshold=0.3, ambiguity_margin=0.05)


class TestTokenize:
    def test_stopwords_digits_and_plurals(self):
        assert tokenize("Find hotels in Portland for August 2-4") == [
            "find",
            "hotel",
            "portland",
            "august",
        ]

    def test_ies_plural(self):
        assert tokenize("queries") == ["query"]

    def test_empty(self):
        assert tokenize("") == []
        assert tokenize("   the a of  ") == []


class TestScenarios:
    def test_hotel_request_selects_booking(self, matcher, snapshot):
        outcome = matcher.select("Find hotels in Portland for August 2-4", snapshot)

        assert isinstance(outcome, Selected)
        assert outcome.skill_name == "booking"

    def test_query_request_selects_kql(self, matcher, snapshot):
        outcome = matcher.select("write a query to filter errors in the last hour", snapshot)

        assert isinstance(outcome, Selected)
        assert outcome.skill_name == "kql"

    def test_unrelated_request_no_match(self, matcher, snapshot):
        outcome = matcher.select("paint my house blue", snapshot)

        assert isinstance(outcome, NoMatch)
        assert outcome.ranked == ()

    def test_empty_request_no_match(self, matcher, snapshot):
        assert isinstance(matcher.select("   ", snapshot), NoMatch)


class TestRanking:
    def test_deterministic(self, matcher, snapshot):
        text = "find a hotel and query the booking logs"
        first = matcher.match(text, snapshot)
        for _ in range(20):
            assert matcher.match(text, snapshot) == first

    def test_sorted_by_score_then_name(self, tmp_path, matcher):
        write_skill(tmp_path, "zeta", "Convert currency amounts")
        write_skill(tmp_path, "alpha", "Convert currency amounts")
        write_skill(tmp_path, "mid", "Convert units")
        snapshot = _snapshot(tmp_path)

        ranked = matcher.match("convert currency", snapshot)

        assert [r.skill_name for r in ranked] == ["alpha", "zeta", "mid"]
        assert ranked[0].score == ranked[1].score > ranked[2].score

    def test_scores_bounded(self, matcher, snapshot):
        for result in matcher.match("kql kusto query find hotels book a hotel", snapshot):
            assert 0.0 < result.score <= 1.0

    def test_below_threshold_is_no_match_regardless_of_index_size(self, tmp_path):
        for i in range(30):
            write_skill(tmp_path, f"skill-{i}", f"Handles widgets number {i} and gadgets")
        snapshot = _snapshot(tmp_path)
        matcher = RelevanceMatcher(selection_threshold=0.9)

        outcome = matcher.select("widgets sprockets cogs flanges", snapshot)

        assert isinstance(outcome, NoMatch)
        assert len(outcome.ranked) == 30

    def test_disable_model_invocation_excluded(self, tmp_path, matcher):
        write_skill(
            tmp_path,
            "deploy",
            "Deploy the production service",
            extra={"disable-model-invocation": True},
        )
        snapshot = _snapshot(tmp_path)

        assert matcher.match("deploy the production service", snapshot) == []


class TestAmbiguity:
    def test_tied_candidates_ambiguous(self, tmp_path, matcher):
        write_skill(tmp_path, "pdf-merge", "Merge and split PDF documents")
        write_skill(tmp_path, "pdf-tools", "Merge and split PDF documents")
        snapshot = _snapshot(tmp_path)

        outcome = matcher.select("merge PDF documents", snapshot)

        assert isinstance(outcome, AmbiguousMatch)
        assert [c.skill_name for c in outcome.candidates] == ["pdf-merge", "pdf-tools"]

    def test_margin_zero_still_ambiguous_on_exact_tie(self, tmp_path):
        write_skill(tmp_path, "one", "Resize images")
        write_skill(tmp_path, "two", "Resize images")
        matcher = RelevanceMatcher(ambiguity_margin=0.0)

        outcome = matcher.select("resize images", _snapshot(tmp_path))

        assert isinstance(outcome, AmbiguousMatch)

    def test_clear_winner_not_ambiguous(self, tmp_path, matcher):
        write_booking(tmp_path, script_source=None)
        write_kql(tmp_path)

        outcome = matcher.select("find hotels", _snapshot(tmp_path))

        assert isinstance(outcome, Selected)


class TestScorers:
    def test_keyword_overlap_fraction(self, snapshot):
        scorer = KeywordOverlapScorer()
        booking = snapshot.get("booking")

        assert scorer.score("hotel portland", booking) == pytest.approx(0.5)
        assert scorer.score("", booking) == 0.0

    def test_lexical_name_mention_boost(self, snapshot):
        scorer = LexicalScorer()
        kql = snapshot.get("kql")

        plain = KeywordOverlapScorer().score("help with kql please", kql)
        assert scorer.score("help with kql please", kql) > plain

    def test_custom_scorer_plugs_in(self, snapshot):
        class FixedScorer:
            def score(self, request, package):
                return 1.0 if package.name == "kql" else 0.1

        matcher = RelevanceMatcher(scorer=FixedScorer())
        outcome = matcher.select("anything at all", snapshot)

        assert isinstance(outcome, Selected)
        assert outcome.skill_name == "kql"

    def test_negative_score_rejected(self, snapshot):
        class BrokenScorer:
            def score(self, request, package):
                return -1.0

        with pytest.raises(ValueError):
            RelevanceMatcher(scorer=BrokenScorer()).match("anything", snapshot)


class TestThresholds:
    @pytest.mark.parametrize("threshold", [0, -0.1])
    def test_threshold_must_be_positive(self, threshold):
        with pytest.raises(ValueError):
            RelevanceMatcher(selection_threshold=threshold)

    def test_settings_reject_zero_threshold(self, tmp_path):
        with pytest.raises(pydantic.ValidationError):
            Settings(project_root=tmp_path, selection_threshold=0)
