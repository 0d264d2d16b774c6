"""
Dispatch routes: POST /api/match, POST /api/dispatch
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from ...dispatch import AmbiguousMatch, NoMatch, ResponseEnvelope
from ..schemas import DispatchRequest, MatchCandidate, MatchRequest, MatchResponse

router = APIRouter()


@router.post("/api/match", response_model=MatchResponse)
async def match(request: Request, body: MatchRequest):
    """Rank skills against the request without invoking anything."""
    engine = request.app.state.engine
    snapshot = engine.snapshot()
    outcome = engine.matcher.select(body.text, snapshot)
    top_k = body.top_k or engine.settings.match_top_k

    if isinstance(outcome, NoMatch):
        kind, selected = "no_match", None
    elif isinstance(outcome, AmbiguousMatch):
        kind, selected = "ambiguous", None
    else:
        kind, selected = "selected", outcome.skill_name

    return MatchResponse(
        outcome=kind,
        selected_skill=selected,
        candidates=[
            MatchCandidate(skill=r.skill_name, score=round(r.score, 4))
            for r in outcome.ranked[:top_k]
        ],
        snapshot_version=snapshot.version,
    )


@router.post("/api/dispatch", response_model=ResponseEnvelope)
async def dispatch(request: Request, body: DispatchRequest):
    """Dispatch a request; per-invocation failures are reported inside the envelope."""
    engine = request.app.state.engine
    return await engine.dispatch(
        body.text,
        skill=body.skill,
        timeout=body.timeout,
        inputs=body.inputs,
    )
