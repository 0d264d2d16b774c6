"""
技能分发

请求 -> 相关性匹配（当前索引快照）-> 选择 -> 前置资源 -> 沙箱执行 -> 结果汇总
"""

from .aggregator import ResponseEnvelope, assemble, render_instructions
from .matcher import (
    AmbiguousMatch,
    KeywordOverlapScorer,
    LexicalScorer,
    MatchOutcome,
    MatchResult,
    NoMatch,
    RelevanceMatcher,
    RelevanceScorer,
    Selected,
    tokenize,
)
from .orchestrator import AmbiguityPolicy, InvocationOrchestrator
from .prerequisites import FilePrerequisiteResolver, PrerequisiteResolver, resolve_prerequisites
from .sandbox import ExecutionResult, ScriptSandbox, build_command
from .state import InvocationContext, InvocationState, request_fingerprint

__all__ = [
    # Matcher
    "RelevanceMatcher",
    "RelevanceScorer",
    "LexicalScorer",
    "KeywordOverlapScorer",
    "MatchResult",
    "MatchOutcome",
    "Selected",
    "AmbiguousMatch",
    "NoMatch",
    "tokenize",
    # State
    "InvocationContext",
    "InvocationState",
    "request_fingerprint",
    # Prerequisites
    "PrerequisiteResolver",
    "FilePrerequisiteResolver",
    "resolve_prerequisites",
    # Sandbox
    "ScriptSandbox",
    "ExecutionResult",
    "build_command",
    # Aggregator
    "ResponseEnvelope",
    "assemble",
    "render_instructions",
    # Orchestrator
    "InvocationOrchestrator",
    "AmbiguityPolicy",
]
