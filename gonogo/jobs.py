"""Background AI analysis of submitted opportunities.

Submission never waits on the model: the API records the opportunity and
hands its id to ``AnalysisRunner.launch``.  An ``analysis_jobs`` row per
opportunity acts as a lease so that only one analysis is in flight per
opportunity, across workers sharing the same database.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import or_, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from gonogo import services
from gonogo.config import ScoringConfig
from gonogo.db import session_scope
from gonogo.errors import NotFoundError
from gonogo.llm import LLMClient
from gonogo.models import JOB_STATUSES, AnalysisJob
from gonogo.scorer import analyze_opportunity
from gonogo.utils import utcnow

log = logging.getLogger(__name__)


def claim_job(session: Session, opportunity_id: int, lease_seconds: float, now: datetime | None = None) -> bool:
    """Take the analysis lease for an opportunity; ``False`` if another run holds it.

    The claim is a single conditional UPDATE so two claimers cannot both win.
    Caller must commit.
    """
    now = now or utcnow()
    session.execute(
        sqlite_insert(AnalysisJob)
        .values(opportunity_id=opportunity_id, status="pending", attempts=0, last_error="",
                created_at=now, updated_at=now)
        .on_conflict_do_nothing(index_elements=["opportunity_id"])
    )
    result = session.execute(
        update(AnalysisJob)
        .where(
            AnalysisJob.opportunity_id == opportunity_id,
            or_(
                AnalysisJob.status != "running",
                AnalysisJob.lease_expires_at.is_(None),
                AnalysisJob.lease_expires_at < now,
            ),
        )
        .values(
            status="running",
            attempts=AnalysisJob.attempts + 1,
            lease_expires_at=now + timedelta(seconds=lease_seconds),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_job(session: Session, opportunity_id: int, status: str, error: str = "") -> None:
    """Mark the job finished (``done`` or ``failed``) and drop its lease. Caller must commit."""
    if status not in JOB_STATUSES:
        raise ValueError(f"Unknown job status: {status!r}")
    session.execute(
        update(AnalysisJob)
        .where(AnalysisJob.opportunity_id == opportunity_id)
        .values(status=status, lease_expires_at=None, last_error=error[:2000], updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


class AnalysisRunner:
    """Runs analyses as asyncio tasks, at most one per opportunity in this process."""

    def __init__(
        self,
        client_factory: Callable[[], LLMClient] = LLMClient,
        config: ScoringConfig | None = None,
        session_factory: Callable[[], AbstractContextManager[Session]] = session_scope,
    ):
        self.client_factory = client_factory
        self.config = config
        self.session_factory = session_factory
        self._tasks: dict[int, asyncio.Task] = {}

    def launch(self, opportunity_id: int, force: bool = False) -> asyncio.Task | None:
        """Schedule analysis without awaiting it; ``None`` if one is already running here."""
        current = self._tasks.get(opportunity_id)
        if current is not None and not current.done():
            log.info("Analysis for opportunity %d already in flight", opportunity_id)
            return None
        task = asyncio.get_running_loop().create_task(
            self.run(opportunity_id, force), name=f"analyze-{opportunity_id}",
        )
        self._tasks[opportunity_id] = task
        task.add_done_callback(lambda t: self._forget(opportunity_id, t))
        return task

    def _forget(self, opportunity_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(opportunity_id) is task:
            del self._tasks[opportunity_id]

    @property
    def in_flight(self) -> list[int]:
        return [oid for oid, t in self._tasks.items() if not t.done()]

    async def drain(self) -> None:
        """Wait for every launched analysis to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        self._tasks.clear()

    async def run(self, opportunity_id: int, force: bool = False) -> bool:
        """Analyze one opportunity and persist the outcome. Returns ``True`` if scores were written.

        Failures other than cancellation are logged, recorded on the job row,
        and leave the opportunity unscored; they are never raised.
        """
        claimed = False
        try:
            with self.session_factory() as session:
                try:
                    opp = services.get_opportunity(session, opportunity_id)
                except NotFoundError:
                    log.warning("Cannot analyze opportunity %d: not found", opportunity_id)
                    return False
                config = services.load_config(session, self.config)
                if not claim_job(session, opportunity_id, config.lease_seconds):
                    session.rollback()
                    log.info("Opportunity %d is being analyzed elsewhere, skipping", opportunity_id)
                    return False
                claimed = True
                if opp.ai_decision is not None and not force:
                    release_job(session, opportunity_id, "done")
                    session.commit()
                    log.info("Opportunity %d already analyzed, skipping", opportunity_id)
                    return False
                session.commit()
                title, description, timeline = opp.title, opp.description, opp.timeline
        except Exception as exc:
            log.exception("Could not start analysis of opportunity %d", opportunity_id)
            if claimed:
                self._mark_failed(opportunity_id, str(exc) or type(exc).__name__)
            return False

        try:
            client = self.client_factory()
            result = await asyncio.wait_for(
                analyze_opportunity(client, title, description, timeline, config),
                timeout=config.analysis_timeout,
            )
        except asyncio.CancelledError:
            self._mark_failed(opportunity_id, "cancelled")
            raise
        except asyncio.TimeoutError:
            log.error("Analysis of opportunity %d exceeded %.0fs", opportunity_id, config.analysis_timeout)
            self._mark_failed(opportunity_id, f"timed out after {config.analysis_timeout:.0f}s")
            return False
        except Exception as exc:
            log.exception("Analysis of opportunity %d failed", opportunity_id)
            self._mark_failed(opportunity_id, str(exc) or type(exc).__name__)
            return False

        try:
            with self.session_factory() as session:
                if force:
                    services.clear_scores(session, opportunity_id)
                services.append_scores(session, opportunity_id, result.scores)
                services.set_ai_decision(session, opportunity_id, result)
                release_job(session, opportunity_id, "done")
                session.commit()
        except Exception as exc:
            log.exception("Saving analysis for opportunity %d failed", opportunity_id)
            self._mark_failed(opportunity_id, str(exc) or type(exc).__name__)
            return False

        log.info(
            "Opportunity %d analyzed: %s (%.2f, %s)",
            opportunity_id, result.decision, result.overall_score, result.strategy,
        )
        return True

    def _mark_failed(self, opportunity_id: int, error: str) -> None:
        try:
            with self.session_factory() as session:
                release_job(session, opportunity_id, "failed", error)
                session.commit()
        except Exception:
            log.exception("Could not record failure for opportunity %d", opportunity_id)
