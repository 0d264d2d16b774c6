"""
相关性匹配

把请求文本与索引快照中每个技能的描述/触发短语打分，产生排序后的候选列表，
再按阈值和并列区间给出选择结果:

- Selected: 最高分 >= selection_threshold 且没有并列（阈值必须大于 0，零分候选不参与匹配）
- AmbiguousMatch: 有两个及以上候选在 ambiguity_margin 内并列（均达到阈值）
- NoMatch: 最高分低于阈值

打分策略可插拔（RelevanceScorer），匹配器只约定:
分数非负、可比较，相同 (请求, 快照) 的结果确定。
排序按分数降序，同分按技能名升序。
"""

import logging
import re
from dataclasses import dataclass
from typing import Protocol, Union

from ..skills.index import SkillSnapshot
from ..skills.parser import SkillPackage

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")

# 英文停用词：不参与关键词重叠计算
STOPWORDS = frozenset(
    """
    a an and are as at be but by can could do does for from have how i if in into is it
    its me my of on or our please should so some that the their them then there these
    this to up us use using want was we what when where which while who why will with
    would you your
    """.split()
)


def normalize_text(text: str) -> str:
    """小写并折叠空白"""
    return " ".join((text or "").lower().split())


def _stem(token: str) -> str:
    # 足以让 hotels/hotel、queries/query 对齐；两侧使用相同规则即可
    if len(token) > 4 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def tokenize(text: str) -> list[str]:
    """
    提取关键词

    小写、去停用词、去纯数字和单字符，做简单的词形归一。
    """
    tokens = []
    for raw in _TOKEN_RE.findall((text or "").lower()):
        if len(raw) < 2 or raw.isdigit() or raw in STOPWORDS:
            continue
        tokens.append(_stem(raw))
    return tokens


@dataclass(frozen=True)
class MatchResult:
    """(技能名, 分数)"""

    skill_name: str
    score: float

    def to_dict(self) -> dict:
        return {"skill": self.skill_name, "score": round(self.score, 4)}


@dataclass(frozen=True)
class Selected:
    """唯一选中的技能"""

    candidate: MatchResult
    ranked: tuple[MatchResult, ...] = ()

    @property
    def skill_name(self) -> str:
        return self.candidate.skill_name


@dataclass(frozen=True)
class AmbiguousMatch:
    """多个技能并列，candidates 已按排序规则排列"""

    candidates: tuple[MatchResult, ...]
    ranked: tuple[MatchResult, ...] = ()


@dataclass(frozen=True)
class NoMatch:
    """没有技能达到阈值（正常结果，不是错误）"""

    ranked: tuple[MatchResult, ...] = ()


MatchOutcome = Union[Selected, AmbiguousMatch, NoMatch]


class RelevanceScorer(Protocol):
    """打分策略: 返回非负分数，输入相同则输出相同"""

    def score(self, request: str, package: SkillPackage) -> float: ...


class KeywordOverlapScorer:
    """
    关键词重叠

    分数 = 请求关键词中出现在技能词表（名称 + 描述 + 触发短语）里的比例，范围 0..1。
    """

    def vocabulary(self, package: SkillPackage) -> set[str]:
        parts = [package.name.replace("-", " "), package.description, *package.manifest.triggers]
        return set(tokenize(" ".join(parts)))

    def score(self, request: str, package: SkillPackage) -> float:
        keywords = set(tokenize(request))
        if not keywords:
            return 0.0
        hits = keywords & self.vocabulary(package)
        return len(hits) / len(keywords)


class LexicalScorer:
    """
    词法打分（默认策略）

    在关键词重叠的基础上叠加强信号:
    - 请求中直接提到技能名: +name_weight
    - 触发短语的关键词全部出现在请求中: 每条 +trigger_weight（最多 max_trigger_hits 条）
    结果截断到 0..1。
    """

    def __init__(
        self,
        name_weight: float = 0.3,
        trigger_weight: float = 0.25,
        max_trigger_hits: int = 2,
    ):
        self.name_weight = name_weight
        self.trigger_weight = trigger_weight
        self.max_trigger_hits = max_trigger_hits
        self._overlap = KeywordOverlapScorer()

    def score(self, request: str, package: SkillPackage) -> float:
        keywords = set(tokenize(request))
        if not keywords:
            return 0.0

        score = self._overlap.score(request, package)

        normalized = normalize_text(request)
        name = package.name
        if name in keywords or re.search(rf"\b{re.escape(name)}\b", normalized):
            score += self.name_weight

        hits = 0
        for trigger in package.manifest.triggers:
            trigger_tokens = set(tokenize(trigger))
            if trigger_tokens and trigger_tokens <= keywords:
                hits += 1
                score += self.trigger_weight
            if hits >= self.max_trigger_hits:
                break

        return max(0.0, min(1.0, score))


class RelevanceMatcher:
    """
    相关性匹配器

    只读访问传入的快照，可在任意并发下调用。
    """

    def __init__(
        self,
        scorer: RelevanceScorer | None = None,
        selection_threshold: float = 0.3,
        ambiguity_margin: float = 0.05,
    ):
        if selection_threshold <= 0:
            raise ValueError("selection_threshold must be positive")
        if ambiguity_margin < 0:
            raise ValueError("ambiguity_margin must be non-negative")
        self.scorer = scorer or LexicalScorer()
        self.selection_threshold = selection_threshold
        self.ambiguity_margin = ambiguity_margin

    def match(self, request: str, snapshot: SkillSnapshot) -> list[MatchResult]:
        """
        对快照中所有可自动调用的技能打分

        Returns:
            分数 > 0 的候选，按分数降序、技能名升序
        """
        if not normalize_text(request):
            return []

        results = []
        for package in snapshot:
            # 禁用自动调用的技能只能显式指定
            if package.manifest.disable_model_invocation:
                continue
            score = float(self.scorer.score(request, package))
            if score < 0:
                raise ValueError(f"Scorer returned negative score for {package.name}: {score}")
            if score > 0:
                results.append(MatchResult(skill_name=package.name, score=score))

        results.sort(key=lambda r: (-r.score, r.skill_name))
        return results

    def select(self, request: str, snapshot: SkillSnapshot) -> MatchOutcome:
        """
        应用阈值与并列区间

        Returns:
            Selected / AmbiguousMatch / NoMatch
        """
        ranked = tuple(self.match(request, snapshot))
        if not ranked or ranked[0].score < self.selection_threshold:
            logger.debug(f"No skill above threshold {self.selection_threshold}")
            return NoMatch(ranked=ranked)

        top = ranked[0]
        tied = tuple(
            r
            for r in ranked
            if r.score >= self.selection_threshold
            and top.score - r.score <= self.ambiguity_margin + 1e-9
        )
        if len(tied) > 1:
            logger.debug(f"Ambiguous match: {[r.skill_name for r in tied]}")
            return AmbiguousMatch(candidates=tied, ranked=ranked)

        return Selected(candidate=top, ranked=ranked)
