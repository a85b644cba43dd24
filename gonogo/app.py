from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gonogo import services
from gonogo.config import ScoringConfig
from gonogo.criteria import CRITERIA
from gonogo.db import get_session, init_db, session_scope
from gonogo.errors import NotFoundError, ValidationError
from gonogo.jobs import AnalysisRunner
from gonogo.schemas import (
    AnalyzeOut,
    BucketOut,
    CriterionOut,
    DecisionOut,
    OpportunityCreate,
    OpportunityDetail,
    OpportunityPage,
    OverridePreviewIn,
    PasscodeIn,
    ReviewIn,
    RoleUpdate,
    SettingOut,
    SettingUpdate,
    StatsOut,
    UserCreate,
    UserOut,
    UserStatsOut,
)

log = logging.getLogger(__name__)

runner = AnalysisRunner()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    with session_scope() as session:
        config = services.load_config(session)
    log.info("Scoring scheme %s, go threshold %.2f", config.scheme, config.go_threshold)
    yield
    await runner.shutdown()


app = FastAPI(
    title="Go/No-Go",
    version="0.1.0",
    description=(
        "Opportunity intake and AI-assisted Go/No-Go scoring. "
        "Submissions are analyzed in the background against seven criteria; "
        "managers record the final decision."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Opportunities", "description": "Submit, browse, and inspect opportunities."},
        {"name": "Analysis", "description": "AI scoring of opportunities. Runs in the background."},
        {"name": "Review", "description": "Manager decisions and score overrides. Requires X-Manager-Passcode."},
        {"name": "Criteria", "description": "Evaluation criteria and their weights."},
        {"name": "Stats", "description": "Dashboard counts, breakdowns, and trends."},
        {"name": "Users", "description": "Workers, managers, and admins."},
        {"name": "Settings", "description": "System settings, including scoring weights and thresholds."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def analysis_runner() -> AnalysisRunner:
    return runner


def scoring_config(session: Session = Depends(db_session)) -> ScoringConfig:
    return services.load_config(session)


def require_manager(
    x_manager_passcode: str | None = Header(None),
    session: Session = Depends(db_session),
) -> None:
    if not services.verify_manager_passcode(session, x_manager_passcode):
        raise HTTPException(403, "Manager passcode required")


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "fields": exc.fields})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(SQLAlchemyError)
async def _store_error(request: Request, exc: SQLAlchemyError):
    log.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Database error"})


# ---------------------------------------------------------------------------
# Routes: Opportunities
# ---------------------------------------------------------------------------


@app.post("/api/opportunities", response_model=OpportunityDetail, status_code=201,
          tags=["Opportunities"], summary="Submit an opportunity (analysis starts in the background)")
async def create_opportunity(
    body: OpportunityCreate,
    session: Session = Depends(db_session),
    jobs: AnalysisRunner = Depends(analysis_runner),
):
    opp = services.create_opportunity(
        session, body.title, body.description, body.timeline, body.submitter_name,
    )
    session.commit()
    jobs.launch(opp.id)
    return services.opportunity_detail(opp)


@app.get("/api/opportunities", response_model=OpportunityPage,
         tags=["Opportunities"], summary="List opportunities with filters")
async def list_opportunities(
    status: str | None = Query(None, description="Comma-separated: open, in_review, go, no_go"),
    ai_decision: str | None = Query(None, description="Comma-separated AI decisions; 'pending' for unscored"),
    manager_decision: str | None = Query(None, description="Comma-separated: go, no_go"),
    submitter_id: int | None = Query(None),
    search: str | None = Query(None, description="Search title and description"),
    period: str | None = Query(None, description="today, week, month, quarter, year, all"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    items, total = services.query_opportunities(
        session, status=status, ai_decision=ai_decision, manager_decision=manager_decision,
        submitter_id=submitter_id, search=search, period=period, page=page, per_page=per_page,
    )
    return {"items": items, "total": total, "page": page, "per_page": per_page}


@app.get("/api/opportunities/{opportunity_id}", response_model=OpportunityDetail,
         tags=["Opportunities"], summary="Get an opportunity with its criterion scores")
async def get_opportunity(opportunity_id: int, session: Session = Depends(db_session)):
    return services.opportunity_detail(services.get_opportunity(session, opportunity_id))


@app.post("/api/opportunities/{opportunity_id}/analyze", response_model=AnalyzeOut, status_code=202,
          tags=["Analysis"], summary="Queue AI analysis (force=true re-scores an analyzed opportunity)")
async def analyze_opportunity(
    opportunity_id: int,
    force: bool = Query(False),
    session: Session = Depends(db_session),
    jobs: AnalysisRunner = Depends(analysis_runner),
):
    opp = services.get_opportunity(session, opportunity_id)
    if opp.ai_decision is not None and not force:
        return {"opportunity_id": opp.id, "queued": False}
    task = jobs.launch(opp.id, force=force)
    return {"opportunity_id": opp.id, "queued": task is not None}


# ---------------------------------------------------------------------------
# Routes: Review
# ---------------------------------------------------------------------------


@app.post("/api/opportunities/{opportunity_id}/review", response_model=OpportunityDetail,
          tags=["Review"], summary="Record the manager's final decision",
          dependencies=[Depends(require_manager)])
async def review_opportunity(
    opportunity_id: int,
    body: ReviewIn,
    session: Session = Depends(db_session),
    config: ScoringConfig = Depends(scoring_config),
):
    opp = services.set_manager_decision(
        session, opportunity_id, body.decision, body.comment, body.manager_name,
        scores=body.scores, config=config,
    )
    session.commit()
    return services.opportunity_detail(opp)


@app.post("/api/opportunities/{opportunity_id}/override/preview", response_model=DecisionOut,
          tags=["Review"], summary="Recompute the decision with manager scores (not saved)")
async def preview_override(
    opportunity_id: int,
    body: OverridePreviewIn,
    session: Session = Depends(db_session),
    config: ScoringConfig = Depends(scoring_config),
):
    result = services.preview_override(session, opportunity_id, body.scores, body.comment, config)
    return {
        "scores": result.scores, "overall_score": round(result.overall_score, 3),
        "recommendation": result.recommendation.value, "decision": result.decision,
        "comments": result.comments,
    }


@app.post("/api/manager/verify", tags=["Review"], summary="Check a manager passcode")
async def verify_manager(body: PasscodeIn, session: Session = Depends(db_session)):
    return {"valid": services.verify_manager_passcode(session, body.passcode)}


# ---------------------------------------------------------------------------
# Routes: Criteria
# ---------------------------------------------------------------------------


@app.get("/api/criteria", response_model=list[CriterionOut],
         tags=["Criteria"], summary="List evaluation criteria with effective weights")
async def list_criteria(config: ScoringConfig = Depends(scoring_config)):
    return [
        {"id": c.value, "name": spec.name, "description": spec.description,
         "guidance": list(spec.guidance), "weight": config.weight_for(c.value)}
        for c, spec in CRITERIA.items()
    ]


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Dashboard counts and AI/manager agreement")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


@app.get("/api/stats/breakdown", response_model=list[BucketOut],
         tags=["Stats"], summary="Opportunity counts by AI decision over a period")
async def get_breakdown(
    period: str = Query("month", description="today, week, month, quarter, year, all"),
    session: Session = Depends(db_session),
):
    return services.opportunity_breakdown(session, period)


@app.get("/api/stats/trends", response_model=list[BucketOut],
         tags=["Stats"], summary="Monthly opportunity counts")
async def get_trends(months: int = Query(6, ge=1, le=36), session: Session = Depends(db_session)):
    return services.opportunity_trends(session, months)


# ---------------------------------------------------------------------------
# Routes: Users (fixed paths before parameterized)
# ---------------------------------------------------------------------------


@app.get("/api/users", response_model=list[UserOut], tags=["Users"], summary="List users")
async def list_users(session: Session = Depends(db_session)):
    return [services.user_summary(u) for u in services.list_users(session)]


@app.post("/api/users", response_model=UserOut, tags=["Users"], summary="Create a user (or return the existing one)")
async def create_user(body: UserCreate, session: Session = Depends(db_session)):
    user, created = services.create_user(session, body.name, body.role, body.email)
    session.commit()
    status = 201 if created else 200
    return JSONResponse(status_code=status, content=services.user_summary(user))


@app.get("/api/users/submitters", response_model=list[UserOut],
         tags=["Users"], summary="Users who have submitted opportunities")
async def list_submitters(session: Session = Depends(db_session)):
    return [services.user_summary(u) for u in services.list_submitters(session)]


@app.get("/api/users/stats", response_model=UserStatsOut, tags=["Users"], summary="User counts by role")
async def get_user_stats(session: Session = Depends(db_session)):
    return services.user_stats(session)


@app.put("/api/users/{user_id}/role", response_model=UserOut,
         tags=["Users"], summary="Change a user's role", dependencies=[Depends(require_manager)])
async def update_user_role(user_id: int, body: RoleUpdate, session: Session = Depends(db_session)):
    user = services.update_user_role(session, user_id, body.role)
    session.commit()
    return services.user_summary(user)


# ---------------------------------------------------------------------------
# Routes: Settings
# ---------------------------------------------------------------------------


@app.get("/api/settings", response_model=list[SettingOut], tags=["Settings"], summary="List system settings")
async def list_settings(session: Session = Depends(db_session)):
    return services.get_settings(session)


@app.put("/api/settings/{key}", response_model=SettingOut, tags=["Settings"],
         summary="Create or update a setting (scoring keys are validated)",
         dependencies=[Depends(require_manager)])
async def update_setting(key: str, body: SettingUpdate, session: Session = Depends(db_session)):
    setting = services.update_setting(session, key, body.value, body.updated_by, body.description)
    session.commit()
    value = "" if key in services.HIDDEN_SETTINGS else setting.value
    return {"key": setting.key, "value": value, "description": setting.description,
            "updated_at": setting.updated_at.isoformat() if setting.updated_at else None}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("gonogo.app:app", host="127.0.0.1", port=8000)


if __name__ == "__main__":
    main()
