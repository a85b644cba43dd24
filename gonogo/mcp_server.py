from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from gonogo import services
from gonogo.criteria import CRITERIA
from gonogo.db import init_db, session_scope
from gonogo.errors import GoNoGoError, NotFoundError
from gonogo.jobs import AnalysisRunner

log = logging.getLogger(__name__)

runner = AnalysisRunner()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def gonogo_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Go/No-Go",
    instructions=(
        "Go/No-Go scores business opportunities against seven criteria and records "
        "manager decisions. Start with get_stats() for an overview, then "
        "list_opportunities() to browse and get_opportunity(id) for scores and reasoning."
    ),
    lifespan=gonogo_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("gonogo://overview")
def gonogo_overview() -> str:
    """Overview of Go/No-Go: data model, workflow, and decision vocabulary."""
    return json.dumps({
        "system": "Go/No-Go opportunity scoring",
        "data_model": {
            "opportunity": "Submitted business opportunity: title, description, timeline, submitter, status.",
            "score": "One AI score per criterion with an explanation.",
            "decision": "AI decision from the weighted average of criterion scores; manager decision is final.",
        },
        "workflow": [
            "1. submit_opportunity(...): record and analyze a new opportunity.",
            "2. list_opportunities(): browse with filters (status, ai_decision, search).",
            "3. get_opportunity(id): scores, reasoning, and review state.",
            "4. review_opportunity(id, decision, ...): record the manager's go/no_go.",
        ],
        "statuses": ["open", "in_review", "go", "no_go"],
        "criteria": [spec.name for spec in CRITERIA.values()],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Opportunities
# ---------------------------------------------------------------------------


@mcp.tool()
def list_opportunities(
    status: str | None = None, ai_decision: str | None = None,
    search: str | None = None, period: str | None = None, limit: int = 50,
) -> list[dict] | dict:
    """List and filter opportunities, newest first.

    Args:
        status: Comma-separated from: open, in_review, go, no_go.
        ai_decision: Comma-separated AI decisions (go, no_go, review) or "pending" for unscored.
        search: Free-text search across title and description.
        period: today, week, month, quarter, year, or all.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        try:
            items, _ = services.query_opportunities(
                session, status=status, ai_decision=ai_decision, search=search,
                period=period, page=1, per_page=max(1, min(limit, 500)),
            )
        except GoNoGoError as exc:
            return {"error": str(exc)}
        return items


@mcp.tool()
def get_opportunity(opportunity_id: int) -> dict:
    """Get an opportunity with its criterion scores, AI reasoning, and review state."""
    with session_scope() as session:
        try:
            return services.opportunity_detail(services.get_opportunity(session, opportunity_id))
        except NotFoundError as exc:
            return {"error": str(exc)}


@mcp.tool()
async def submit_opportunity(title: str, description: str, timeline: str, submitter_name: str) -> dict:
    """Submit an opportunity and run the AI analysis before returning.

    If the model is unreachable the opportunity is still saved, unscored.
    """
    with session_scope() as session:
        try:
            opp = services.create_opportunity(session, title, description, timeline, submitter_name)
        except GoNoGoError as exc:
            return {"error": str(exc)}
        session.commit()
        opportunity_id = opp.id

    analyzed = await runner.run(opportunity_id)
    with session_scope() as session:
        detail = services.opportunity_detail(services.get_opportunity(session, opportunity_id))
    detail["analyzed"] = analyzed
    return detail


@mcp.tool()
def review_opportunity(
    opportunity_id: int, decision: str, manager_name: str,
    passcode: str, comment: str = "", scores: dict[str, int] | None = None,
) -> dict:
    """Record the manager's final go / no_go decision.

    Args:
        decision: "go" or "no_go".
        passcode: Manager passcode.
        scores: Optional per-criterion overrides, e.g. {"lead_time_check": 4}.
    """
    with session_scope() as session:
        if not services.verify_manager_passcode(session, passcode):
            return {"error": "Invalid manager passcode"}
        try:
            opp = services.set_manager_decision(
                session, opportunity_id, decision, comment, manager_name,
                scores=scores, config=services.load_config(session),
            )
        except GoNoGoError as exc:
            return {"error": str(exc)}
        session.commit()
        return services.opportunity_detail(opp)


# ---------------------------------------------------------------------------
# Tools: Stats & Criteria
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats() -> dict:
    """Get dashboard counts: totals, go/no_go, pending, and AI/manager agreement."""
    with session_scope() as session:
        return services.compute_stats(session)


@mcp.tool()
def list_criteria() -> list[dict]:
    """List the evaluation criteria with their effective weights."""
    with session_scope() as session:
        config = services.load_config(session)
    return [
        {"id": c.value, "name": spec.name, "description": spec.description,
         "weight": config.weight_for(c.value)}
        for c, spec in CRITERIA.items()
    ]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Go/No-Go MCP server over stdio."""
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
    mcp.run()


if __name__ == "__main__":
    main()
