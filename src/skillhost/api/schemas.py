"""Pydantic request/response models for the HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ..skills import SkillPackage


class MatchRequest(BaseModel):
    """Match request body."""

    text: str = Field(..., description="Free-form request text")
    top_k: int | None = Field(None, ge=1, description="Max candidates (null=server default)")


class MatchCandidate(BaseModel):
    skill: str
    score: float


class MatchResponse(BaseModel):
    """Ranked candidates plus the selection outcome."""

    outcome: str  # selected | ambiguous | no_match
    selected_skill: str | None = None
    candidates: list[MatchCandidate] = Field(default_factory=list)
    snapshot_version: int = 0


class DispatchRequest(BaseModel):
    """Dispatch request body."""

    text: str = Field(..., description="Free-form request text")
    skill: str | None = Field(None, description="Explicit skill name (bypasses matching)")
    timeout: float | None = Field(None, gt=0, description="Invocation deadline in seconds")
    inputs: dict[str, Any] = Field(default_factory=dict, description="Inputs passed to the skill script")


class PrerequisiteInfo(BaseModel):
    name: str
    path: str
    required: bool = False
    description: str = ""


class SkillSummary(BaseModel):
    """Skill listing entry."""

    name: str
    description: str
    triggers: list[str] = Field(default_factory=list)
    prerequisites: list[PrerequisiteInfo] = Field(default_factory=list)
    has_script: bool = False
    disable_model_invocation: bool = False
    path: str

    @classmethod
    def from_package(cls, package: SkillPackage) -> SkillSummary:
        manifest = package.manifest
        return cls(
            name=package.name,
            description=package.description,
            triggers=list(manifest.triggers),
            prerequisites=[
                PrerequisiteInfo(
                    name=p.name,
                    path=p.resource_path,
                    required=p.required,
                    description=p.description,
                )
                for p in manifest.prerequisites
            ],
            has_script=manifest.script is not None,
            disable_model_invocation=manifest.disable_model_invocation,
            path=str(package.skill_dir),
        )


class SkillDetail(SkillSummary):
    """Full skill information including the instruction body."""

    body: str = ""
    license: str | None = None
    compatibility: str | None = None
    allowed_tools: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    scripts: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)
    assets: list[str] = Field(default_factory=list)

    @classmethod
    def from_package(cls, package: SkillPackage) -> SkillDetail:
        manifest = package.manifest
        summary = SkillSummary.from_package(package)
        return cls(
            **summary.model_dump(),
            body=package.body,
            license=manifest.license,
            compatibility=manifest.compatibility,
            allowed_tools=list(manifest.allowed_tools),
            metadata=dict(manifest.metadata),
            scripts=[p.name for p in package.scripts],
            references=[p.name for p in package.references],
            assets=[p.name for p in package.assets],
        )


class ReloadResponse(BaseModel):
    """Result of a registry reload."""

    version: int
    skills: list[str]
    errors: list[dict[str, Any]] = Field(default_factory=list)
