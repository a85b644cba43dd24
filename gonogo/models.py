from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from gonogo.utils import utcnow

USER_ROLES = ("worker", "manager", "admin")
OPPORTUNITY_STATUSES = ("open", "in_review", "go", "no_go")
MANAGER_DECISIONS = ("go", "no_go")
JOB_STATUSES = ("pending", "running", "done", "failed")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    role: Mapped[str] = mapped_column(String(20), default="worker", nullable=False)  # worker | manager | admin
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    submitted: Mapped[list[Opportunity]] = relationship(
        "Opportunity", back_populates="submitter", foreign_keys="Opportunity.submitted_by_id",
    )


class Opportunity(Base):
    __tablename__ = "opportunities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    timeline: Mapped[str] = mapped_column(Text, nullable=False)
    submitted_by_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="open", nullable=False)  # open | in_review | go | no_go

    # AI analysis (null until the background analysis completes)
    ai_decision: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ai_overall_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ai_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_strategy: Mapped[str] = mapped_column(String(30), default="")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Manager review
    manager_decision: Mapped[str | None] = mapped_column(String(50), nullable=True)
    manager_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    manager_scores_json: Mapped[str] = mapped_column(Text, default="{}")
    manager_overall_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    reviewed_by_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    submitter: Mapped[User | None] = relationship(
        "User", back_populates="submitted", foreign_keys=[submitted_by_id],
    )
    reviewer: Mapped[User | None] = relationship("User", foreign_keys=[reviewed_by_id])
    scores: Mapped[list[OpportunityScore]] = relationship(
        "OpportunityScore", back_populates="opportunity", cascade="all, delete-orphan",
        order_by="OpportunityScore.id",
    )
    job: Mapped[AnalysisJob | None] = relationship(
        "AnalysisJob", back_populates="opportunity", cascade="all, delete-orphan", uselist=False,
    )


class OpportunityScore(Base):
    __tablename__ = "opportunity_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    opportunity_id: Mapped[int] = mapped_column(Integer, ForeignKey("opportunities.id"), nullable=False)
    criterion: Mapped[str] = mapped_column(String(50), nullable=False)  # Criterion value
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    explanation: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    opportunity: Mapped[Opportunity] = relationship("Opportunity", back_populates="scores")


class SystemSetting(Base):
    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    updated_by_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class AnalysisJob(Base):
    """Claim/lease record guaranteeing at most one in-flight analysis per opportunity."""
    __tablename__ = "analysis_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    opportunity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("opportunities.id"), nullable=False, unique=True,
    )
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)  # pending | running | done | failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    opportunity: Mapped[Opportunity] = relationship("Opportunity", back_populates="job")
