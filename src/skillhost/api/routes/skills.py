"""
Skills routes: GET /api/skills, GET /api/skills/catalog, GET /api/skills/{name},
GET /api/skills/{name}/references/{ref}, POST /api/skills/reload

技能列表、目录、详情、参考文档与重新加载。
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from ..schemas import ReloadResponse, SkillDetail, SkillSummary

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/skills")
async def list_skills(request: Request):
    """List the skills in the live snapshot, plus packages excluded at load time."""
    snapshot = request.app.state.engine.snapshot()
    return {
        "version": snapshot.version,
        "skills": [SkillSummary.from_package(p).model_dump() for p in snapshot],
        "errors": [e.to_dict() for e in snapshot.load_errors],
    }


@router.get("/api/skills/catalog", response_class=PlainTextResponse)
async def skill_catalog(request: Request, compact: bool = False):
    """Level-1 skill listing for system prompts."""
    return request.app.state.engine.get_catalog(compact=compact)


@router.post("/api/skills/reload", response_model=ReloadResponse)
async def reload_skills(request: Request):
    """Reload all skill directories and atomically publish a new snapshot."""
    engine = request.app.state.engine
    snapshot = await engine.reload()
    report = engine.last_report
    logger.info(f"Reload requested via API, live snapshot v{snapshot.version}")
    return ReloadResponse(
        version=snapshot.version,
        skills=snapshot.names(),
        errors=[e.to_dict() for e in report.errors] if report else [],
    )


@router.get("/api/skills/{name}", response_model=SkillDetail)
async def get_skill(request: Request, name: str):
    package = request.app.state.engine.get_skill(name)
    return SkillDetail.from_package(package)


@router.get("/api/skills/{name}/references/{ref}", response_class=PlainTextResponse)
async def get_reference(request: Request, name: str, ref: str):
    """Return a reference document verbatim."""
    return request.app.state.engine.get_reference(name, ref)
