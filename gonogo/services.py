"""Shared business logic for the Go/No-Go API, MCP server, and background analysis.

Functions that mutate take an open ``Session`` and leave committing to the
caller unless noted, so a route or job can group several writes into one
transaction.
"""
from __future__ import annotations

import json
import logging
import os
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from gonogo.config import SETTING_KEYS, WEIGHT_PREFIX, ScoringConfig
from gonogo.criteria import SCORED_CRITERIA, Criterion, lookup
from gonogo.decision import DecisionResult, compute_decision, override_decision
from gonogo.errors import NotFoundError, ValidationError
from gonogo.models import (
    MANAGER_DECISIONS,
    OPPORTUNITY_STATUSES,
    USER_ROLES,
    Opportunity,
    OpportunityScore,
    SystemSetting,
    User,
)
from gonogo.normalizer import ScoreEntry
from gonogo.scorer import AnalysisResult
from gonogo.utils import json_parse, utcnow

log = logging.getLogger(__name__)

SUBMISSION_FIELDS = ("title", "description", "timeline", "submitter_name")
MAX_TITLE = 255

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def score_entries(opp: Opportunity) -> list[dict]:
    return [
        {"criterion": s.criterion, "score": s.score, "explanation": s.explanation or ""}
        for s in opp.scores
    ]


def opportunity_summary(opp: Opportunity) -> dict:
    return {
        "id": opp.id, "title": opp.title, "description": opp.description,
        "timeline": opp.timeline, "status": opp.status,
        "ai_decision": opp.ai_decision, "ai_overall_score": opp.ai_overall_score,
        "ai_confidence": opp.ai_confidence,
        "manager_decision": opp.manager_decision,
        "submitter": opp.submitter.name if opp.submitter else None,
        "reviewer": opp.reviewer.name if opp.reviewer else None,
        "scored": bool(opp.scores),
        "created_at": _iso(opp.created_at),
    }


def opportunity_detail(opp: Opportunity) -> dict:
    base = opportunity_summary(opp)
    base.update({
        "ai_reasoning": opp.ai_reasoning,
        "ai_strategy": opp.ai_strategy or None,
        "llm_model": opp.llm_model or None,
        "analyzed_at": _iso(opp.analyzed_at),
        "manager_comment": opp.manager_comment,
        "manager_scores": json_parse(opp.manager_scores_json, {}),
        "manager_overall_score": opp.manager_overall_score,
        "reviewed_at": _iso(opp.reviewed_at),
        "scores": score_entries(opp),
        "analysis_status": opp.job.status if opp.job else None,
        "updated_at": _iso(opp.updated_at),
    })
    return base


def user_summary(user: User) -> dict:
    return {"id": user.id, "name": user.name, "email": user.email, "role": user.role,
            "created_at": _iso(user.created_at)}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _check_role(role: str) -> str:
    role = (role or "").strip().lower()
    if role not in USER_ROLES:
        raise ValidationError(f"Invalid role {role!r} (expected one of {', '.join(USER_ROLES)})", ["role"])
    return role


def find_user(session: Session, name: str) -> User | None:
    return session.execute(select(User).where(User.name == name)).scalars().first()


def find_or_create_user(session: Session, name: str, role: str = "worker") -> User:
    name = (name or "").strip()
    if not name:
        raise ValidationError("User name is required", ["name"])
    user = find_user(session, name)
    if user is None:
        user = User(name=name, role=_check_role(role))
        session.add(user)
        session.flush()
    return user


def create_user(session: Session, name: str, role: str = "worker", email: str | None = None) -> tuple[User, bool]:
    """Return ``(user, created)``; an existing user with the same name is returned unchanged."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("User name is required", ["name"])
    existing = find_user(session, name)
    if existing:
        return existing, False
    user = User(name=name, role=_check_role(role), email=(email or None))
    session.add(user)
    session.flush()
    return user, True


def update_user_role(session: Session, user_id: int, role: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    user.role = _check_role(role)
    return user


def list_users(session: Session) -> list[User]:
    return list(session.execute(select(User).order_by(User.name)).scalars().all())


def list_submitters(session: Session) -> list[User]:
    """Users who have submitted at least one opportunity."""
    q = (select(User).where(User.id.in_(select(Opportunity.submitted_by_id)))
         .order_by(User.name))
    return list(session.execute(q).scalars().all())


def user_stats(session: Session) -> dict:
    counts = Counter(u.role for u in list_users(session))
    return {
        "total_users": sum(counts.values()),
        "worker_count": counts.get("worker", 0),
        "manager_count": counts.get("manager", 0),
        "admin_count": counts.get("admin", 0),
    }


# ---------------------------------------------------------------------------
# Opportunities: store operations
# ---------------------------------------------------------------------------


def validate_submission(data: Mapping[str, Any]) -> dict[str, str]:
    """Strip fields and reject blanks before anything is written."""
    cleaned = {f: str(data.get(f) or "").strip() for f in SUBMISSION_FIELDS}
    missing = [f for f, v in cleaned.items() if not v]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing)
    if len(cleaned["title"]) > MAX_TITLE:
        raise ValidationError(f"Title must be at most {MAX_TITLE} characters", ["title"])
    return cleaned


def create_opportunity(
    session: Session, title: str, description: str, timeline: str, submitter_name: str,
) -> Opportunity:
    """Create an open, unscored opportunity (caller must commit)."""
    data = validate_submission({
        "title": title, "description": description,
        "timeline": timeline, "submitter_name": submitter_name,
    })
    submitter = find_or_create_user(session, data["submitter_name"], "worker")
    opp = Opportunity(
        title=data["title"], description=data["description"], timeline=data["timeline"],
        submitter=submitter, status="open", ai_decision=None,
    )
    session.add(opp)
    session.flush()
    log.info("Opportunity %d created by %s", opp.id, submitter.name)
    return opp


def get_opportunity(session: Session, opportunity_id: int) -> Opportunity:
    opp = session.get(Opportunity, opportunity_id)
    if opp is None:
        raise NotFoundError(f"Opportunity {opportunity_id} not found")
    return opp


def append_scores(session: Session, opportunity_id: int, entries: Iterable[ScoreEntry]) -> list[OpportunityScore]:
    opp = get_opportunity(session, opportunity_id)
    rows: list[OpportunityScore] = []
    for e in entries:
        crit = lookup(e.criterion)
        row = OpportunityScore(
            opportunity_id=opp.id,
            criterion=crit.value if crit else Criterion.OTHER.value,
            score=int(e.score),
            explanation=e.explanation,
        )
        session.add(row)
        rows.append(row)
    session.flush()
    session.refresh(opp)
    return rows


def clear_scores(session: Session, opportunity_id: int) -> None:
    session.execute(delete(OpportunityScore).where(OpportunityScore.opportunity_id == opportunity_id))
    session.flush()


def set_ai_decision(session: Session, opportunity_id: int, result: AnalysisResult) -> Opportunity:
    """Record the AI outcome; an ``open`` opportunity moves to ``in_review``."""
    opp = get_opportunity(session, opportunity_id)
    opp.ai_decision = result.decision.lower()
    opp.ai_overall_score = result.overall_score
    opp.ai_confidence = result.confidence
    opp.ai_reasoning = result.reasoning
    opp.ai_strategy = result.strategy
    opp.llm_model = result.model
    opp.analyzed_at = utcnow()
    if opp.status == "open":
        opp.status = "in_review"
    return opp


def stored_ai_result(opp: Opportunity, config: ScoringConfig) -> DecisionResult:
    """Rebuild the AI decision from persisted score entries."""
    scores = {s.criterion: s.score for s in opp.scores if s.criterion != Criterion.OTHER.value}
    return compute_decision(scores, config, comments=opp.ai_reasoning or "")


def _clean_manager_scores(scores: Mapping[str, Any], config: ScoringConfig) -> dict[str, int]:
    cleaned: dict[str, int] = {}
    for key, value in scores.items():
        crit = lookup(str(key))
        if crit is None:
            raise ValidationError(f"Unknown criterion {key!r}", ["scores"])
        try:
            score = int(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Score for {key!r} must be an integer", ["scores"]) from exc
        if not config.scale_min <= score <= config.scale_max:
            raise ValidationError(
                f"Score for {key!r} must be within {config.scale_min}-{config.scale_max}", ["scores"],
            )
        cleaned[crit.value] = score
    return cleaned


def preview_override(
    session: Session, opportunity_id: int, scores: Mapping[str, Any], comment: str,
    config: ScoringConfig,
) -> DecisionResult:
    opp = get_opportunity(session, opportunity_id)
    base = stored_ai_result(opp, config)
    return override_decision(base, _clean_manager_scores(scores, config), comment, config)


def set_manager_decision(
    session: Session,
    opportunity_id: int,
    decision: str,
    comment: str,
    manager_name: str,
    scores: Mapping[str, Any] | None = None,
    config: ScoringConfig | None = None,
) -> Opportunity:
    """Record the manager's final decision; status becomes exactly that decision."""
    decision = (decision or "").strip().lower().replace(" ", "_").replace("-", "_")
    if decision not in MANAGER_DECISIONS:
        raise ValidationError("Decision must be 'go' or 'no_go'", ["decision"])
    if not (manager_name or "").strip():
        raise ValidationError("Manager name is required", ["manager_name"])
    opp = get_opportunity(session, opportunity_id)

    override: DecisionResult | None = None
    if scores:
        config = config or load_config(session)
        override = preview_override(session, opportunity_id, scores, comment, config)

    manager = find_or_create_user(session, manager_name, "manager")
    opp.status = decision
    opp.manager_decision = decision
    opp.manager_comment = (comment or "").strip()
    opp.reviewer = manager
    opp.reviewed_at = utcnow()
    if override is not None:
        opp.manager_scores_json = json.dumps(override.scores)
        opp.manager_overall_score = round(override.overall_score, 3)
    log.info("Opportunity %d reviewed by %s: %s", opp.id, manager.name, decision)
    return opp


# ---------------------------------------------------------------------------
# Listing & filtering
# ---------------------------------------------------------------------------

PERIODS = ("today", "week", "month", "quarter", "year", "all")


def _split(value: str | None) -> list[str]:
    return [v.strip().lower() for v in (value or "").split(",") if v.strip()]


def period_start(period: str, now: datetime | None = None) -> datetime:
    now = now or utcnow()
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        return day
    if period == "week":
        return day - timedelta(days=(now.weekday() + 1) % 7)  # weeks start on Sunday
    if period == "month":
        return day.replace(day=1)
    if period == "quarter":
        return day.replace(month=((now.month - 1) // 3) * 3 + 1, day=1)
    if period == "year":
        return day.replace(month=1, day=1)
    if period == "all":
        return day.replace(year=now.year - 2, month=1, day=1)
    raise ValidationError(f"Invalid period {period!r} (expected one of {', '.join(PERIODS)})", ["period"])


def query_opportunities(
    session: Session, *, status: str | None = None, ai_decision: str | None = None,
    manager_decision: str | None = None, submitter_id: int | None = None,
    search: str | None = None, period: str | None = None,
    page: int = 1, per_page: int = 50,
) -> tuple[list[dict], int]:
    """Filtered opportunities, newest first. ``ai_decision=pending`` matches unscored rows."""
    q = select(Opportunity)
    statuses = _split(status)
    if statuses:
        bad = [s for s in statuses if s not in OPPORTUNITY_STATUSES]
        if bad:
            raise ValidationError(f"Invalid status filter: {', '.join(bad)}", ["status"])
        q = q.where(Opportunity.status.in_(statuses))
    decisions = _split(ai_decision)
    if decisions:
        conds = []
        if "pending" in decisions:
            conds.append(Opportunity.ai_decision.is_(None))
        named = [d for d in decisions if d != "pending"]
        if named:
            conds.append(Opportunity.ai_decision.in_(named))
        q = q.where(or_(*conds))
    mdecisions = _split(manager_decision)
    if mdecisions:
        q = q.where(Opportunity.manager_decision.in_(mdecisions))
    if submitter_id is not None:
        q = q.where(Opportunity.submitted_by_id == submitter_id)
    if search:
        like = f"%{search.strip()}%"
        q = q.where(or_(Opportunity.title.ilike(like), Opportunity.description.ilike(like)))
    if period and period != "all":
        q = q.where(Opportunity.created_at >= period_start(period))

    total = session.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    q = q.order_by(Opportunity.created_at.desc(), Opportunity.id.desc())
    q = q.offset((page - 1) * per_page).limit(per_page)
    items = [opportunity_summary(o) for o in session.execute(q).scalars().all()]
    return items, total


# ---------------------------------------------------------------------------
# System settings
# ---------------------------------------------------------------------------

PASSCODE_KEY = "manager_passcode"
HIDDEN_SETTINGS = {PASSCODE_KEY}


def default_settings(config: ScoringConfig | None = None) -> list[tuple[str, str, str]]:
    """``(key, value, description)`` rows seeded into an empty settings table."""
    config = config or ScoringConfig.from_env()
    rows = [
        (f"{WEIGHT_PREFIX}{c.value}", _fmt(config.weight_for(c.value)),
         f"Weight for {c.value.replace('_', ' ')} criterion")
        for c in SCORED_CRITERIA
    ]
    rows += [
        ("go_threshold", _fmt(config.go_threshold), "Minimum average score required for a Go decision"),
        ("review_threshold", "" if config.review_threshold is None else _fmt(config.review_threshold),
         "Minimum average score for a Review decision (tiered scheme only)"),
        ("scale_min", str(config.scale_min), "Lowest score on the criterion scale"),
        ("scale_max", str(config.scale_max), "Highest score on the criterion scale"),
        ("scheme", config.scheme, "Decision scheme: binary (go/no_go) or tiered (GO/REVIEW/NO_GO)"),
    ]
    passcode = os.environ.get("MANAGER_PASSCODE", "")
    if passcode:
        rows.append((PASSCODE_KEY, passcode, "Passcode for manager access"))
    return rows


def _fmt(value: float) -> str:
    return f"{value:g}"


def seed_settings(session: Session) -> int:
    if session.execute(select(func.count()).select_from(SystemSetting)).scalar_one() > 0:
        return 0
    rows = default_settings()
    for key, value, description in rows:
        session.add(SystemSetting(key=key, value=value, description=description))
    session.flush()
    return len(rows)


def get_settings(session: Session) -> list[dict]:
    rows = session.execute(select(SystemSetting).order_by(SystemSetting.key)).scalars().all()
    return [
        {"key": s.key, "value": s.value, "description": s.description,
         "updated_at": _iso(s.updated_at)}
        for s in rows if s.key not in HIDDEN_SETTINGS
    ]


def get_setting(session: Session, key: str) -> SystemSetting | None:
    return session.execute(select(SystemSetting).where(SystemSetting.key == key)).scalars().first()


def settings_dict(session: Session) -> dict[str, str]:
    rows = session.execute(select(SystemSetting)).scalars().all()
    return {s.key: s.value for s in rows}


def _is_scoring_key(key: str) -> bool:
    return key in SETTING_KEYS or key.startswith(WEIGHT_PREFIX)


def load_config(session: Session, base: ScoringConfig | None = None) -> ScoringConfig:
    """Environment config overlaid with scoring rows from ``system_settings``."""
    base = base or ScoringConfig.from_env()
    overrides = {k: v for k, v in settings_dict(session).items() if _is_scoring_key(k)}
    return base.with_settings(overrides) if overrides else base


def update_setting(
    session: Session, key: str, value: str, updater_name: str, description: str | None = None,
) -> SystemSetting:
    """Create or update a setting; scoring keys are validated before the write."""
    key = (key or "").strip()
    if not key:
        raise ValidationError("Setting key is required", ["key"])
    if _is_scoring_key(key):
        current = {k: v for k, v in settings_dict(session).items() if _is_scoring_key(k)}
        current[key] = value
        ScoringConfig.from_env().with_settings(current)
    updater = find_or_create_user(session, updater_name, "admin")
    setting = get_setting(session, key)
    if setting is None:
        setting = SystemSetting(key=key, value=value, description=description or "", updated_by_id=updater.id)
        session.add(setting)
    else:
        setting.value = value
        setting.description = description or setting.description
        setting.updated_by_id = updater.id
    session.flush()
    return setting


def verify_manager_passcode(session: Session, passcode: str | None) -> bool:
    if not passcode:
        return False
    env_code = os.environ.get("MANAGER_PASSCODE")
    if env_code and passcode == env_code:
        return True
    setting = get_setting(session, PASSCODE_KEY)
    return bool(setting and setting.value and setting.value == passcode)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def compute_stats(session: Session) -> dict:
    opportunities = session.execute(select(Opportunity)).scalars().all()
    by_status: Counter[str] = Counter(o.status for o in opportunities)
    reviewed = [o for o in opportunities if o.manager_decision and o.ai_decision]
    agreed = sum(1 for o in reviewed if o.manager_decision == o.ai_decision)
    return {
        "total": len(opportunities),
        "go": by_status.get("go", 0),
        "no_go": by_status.get("no_go", 0),
        "pending": by_status.get("open", 0) + by_status.get("in_review", 0),
        "unscored": sum(1 for o in opportunities if o.ai_decision is None),
        "ai_accuracy": agreed / len(reviewed) if reviewed else 0.0,
        "by_status": {s: by_status.get(s, 0) for s in OPPORTUNITY_STATUSES},
    }


def _add_month(dt: datetime) -> datetime:
    return dt.replace(year=dt.year + 1, month=1) if dt.month == 12 else dt.replace(month=dt.month + 1)


def _bucket_plan(period: str, now: datetime) -> tuple[datetime, str, str]:
    """``(start, granularity, label_format)`` for a breakdown period."""
    start = period_start(period, now)
    if period == "today":
        return start, "hour", "%H:00"
    if period == "week":
        return start, "day", "%a"
    if period == "month":
        return start, "day", "%b %d"
    return start, "month", "%b %Y"


def _truncate(dt: datetime, granularity: str) -> datetime:
    dt = dt.replace(minute=0, second=0, microsecond=0)
    if granularity == "hour":
        return dt
    dt = dt.replace(hour=0)
    return dt if granularity == "day" else dt.replace(day=1)


def _buckets(session: Session, start: datetime, now: datetime, granularity: str, fmt: str) -> list[dict]:
    points: list[datetime] = []
    cursor = _truncate(start, granularity)
    end = _truncate(now, granularity)
    while cursor <= end:
        points.append(cursor)
        if granularity == "hour":
            cursor += timedelta(hours=1)
        elif granularity == "day":
            cursor += timedelta(days=1)
        else:
            cursor = _add_month(cursor)

    counts: dict[datetime, Counter[str]] = {p: Counter() for p in points}
    rows = session.execute(
        select(Opportunity.created_at, Opportunity.ai_decision).where(Opportunity.created_at >= points[0])
    ).all()
    for created_at, ai_decision in rows:
        key = _truncate(created_at, granularity)
        if key in counts:
            counts[key][ai_decision or "pending"] += 1

    return [
        {
            "label": p.strftime(fmt), "start": p.isoformat(),
            "go": c.get("go", 0), "no_go": c.get("no_go", 0), "review": c.get("review", 0),
            "pending": c.get("pending", 0), "total": sum(c.values()),
        }
        for p, c in counts.items()
    ]


def opportunity_breakdown(session: Session, period: str = "month", now: datetime | None = None) -> list[dict]:
    """Counts by AI decision over the period, hourly/daily/monthly depending on its length."""
    now = now or utcnow()
    start, granularity, fmt = _bucket_plan(period, now)
    return _buckets(session, start, now, granularity, fmt)


def opportunity_trends(session: Session, months: int = 6, now: datetime | None = None) -> list[dict]:
    """Monthly counts by AI decision for the last *months* months (current month included)."""
    if months < 1:
        raise ValidationError("months must be at least 1", ["months"])
    now = now or utcnow()
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    for _ in range(months - 1):
        start = (start - timedelta(days=1)).replace(day=1)
    return _buckets(session, start, now, "month", "%b %Y")
