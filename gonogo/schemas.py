"""Pydantic request/response schemas for the Go/No-Go API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class OpportunityCreate(BaseModel):
    title: str = Field(..., max_length=255)
    description: str
    timeline: str
    submitter_name: str


class ScoreOut(BaseModel):
    criterion: str
    score: int
    explanation: str = ""


class OpportunityOut(BaseModel):
    id: int
    title: str
    description: str
    timeline: str
    status: str
    ai_decision: str | None = None
    ai_overall_score: float | None = None
    ai_confidence: int | None = None
    manager_decision: str | None = None
    submitter: str | None = None
    reviewer: str | None = None
    scored: bool = False
    created_at: str | None = None


class OpportunityDetail(OpportunityOut):
    ai_reasoning: str | None = None
    ai_strategy: str | None = None
    llm_model: str | None = None
    analyzed_at: str | None = None
    manager_comment: str | None = None
    manager_scores: dict[str, int] = {}
    manager_overall_score: float | None = None
    reviewed_at: str | None = None
    scores: list[ScoreOut] = []
    analysis_status: str | None = None
    updated_at: str | None = None


class OpportunityPage(BaseModel):
    items: list[OpportunityOut]
    total: int
    page: int
    per_page: int


class AnalyzeOut(BaseModel):
    opportunity_id: int
    queued: bool


class ReviewIn(BaseModel):
    decision: str
    comment: str = ""
    manager_name: str
    scores: dict[str, int] | None = None

    @field_validator("decision")
    @classmethod
    def decision_must_be_known(cls, v: str) -> str:
        v = v.strip().lower().replace(" ", "_").replace("-", "_")
        if v not in ("go", "no_go"):
            raise ValueError("decision must be 'go' or 'no_go'")
        return v


class OverridePreviewIn(BaseModel):
    scores: dict[str, int]
    comment: str = ""


class DecisionOut(BaseModel):
    scores: dict[str, int]
    overall_score: float
    recommendation: str
    decision: str
    comments: str = ""


class CriterionOut(BaseModel):
    id: str
    name: str
    description: str
    guidance: list[str]
    weight: float


class StatsOut(BaseModel):
    total: int
    go: int
    no_go: int
    pending: int
    unscored: int
    ai_accuracy: float
    by_status: dict[str, int]


class BucketOut(BaseModel):
    label: str
    start: str
    go: int
    no_go: int
    review: int
    pending: int
    total: int


class UserOut(BaseModel):
    id: int
    name: str
    email: str | None = None
    role: str
    created_at: str | None = None


class UserCreate(BaseModel):
    name: str
    role: str = "worker"
    email: str | None = None


class RoleUpdate(BaseModel):
    role: str


class UserStatsOut(BaseModel):
    total_users: int
    worker_count: int
    manager_count: int
    admin_count: int


class SettingOut(BaseModel):
    key: str
    value: str
    description: str = ""
    updated_at: str | None = None


class SettingUpdate(BaseModel):
    value: Any
    updated_by: str
    description: str | None = None

    @field_validator("value")
    @classmethod
    def value_as_text(cls, v: Any) -> str:
        return "" if v is None else str(v)


class PasscodeIn(BaseModel):
    passcode: str
