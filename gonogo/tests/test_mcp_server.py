from __future__ import annotations

import json

import pytest

from gonogo import mcp_server
from gonogo.criteria import CRITERIA
from gonogo.db import current_db_path, init_db, session_scope
from gonogo.errors import ProviderError
from gonogo.models import SystemSetting

PASSCODE = "2468"


def free_text(score: int) -> str:
    sections = [f"{i}. {spec.name} ({score})\nDetail." for i, spec in enumerate(CRITERIA.values(), 1)]
    return "\n".join(sections) + "\nRecommendation: Go\nConfidence: 90%"


class FakeClient:
    model = "fake-model"

    def __init__(self, reply):
        self.reply = reply

    async def complete(self, system, prompt):
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


@pytest.fixture()
def db(tmp_path, monkeypatch):
    for var in ("GONOGO_SCHEME", "GONOGO_WEIGHTS", "GONOGO_GO_THRESHOLD"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("MANAGER_PASSCODE", PASSCODE)
    init_db(tmp_path / "mcp.db")
    return tmp_path / "mcp.db"


@pytest.fixture()
def model_reply(monkeypatch):
    def set_reply(reply):
        monkeypatch.setattr(mcp_server.runner, "client_factory", lambda: FakeClient(reply))
    set_reply(free_text(4))
    return set_reply


async def _submit(title="Portal rebuild"):
    return await mcp_server.submit_opportunity(title, "Customer portal", "Q3", "alice")


class TestDatabase:
    def test_init_seeds_settings(self, db):
        assert current_db_path() == db
        with session_scope() as session:
            assert session.query(SystemSetting).count() == 13


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_runs_analysis(self, db, model_reply):
        result = await _submit()
        assert result["analyzed"] is True
        assert result["ai_decision"] == "go"
        assert result["ai_confidence"] == 90
        assert result["status"] == "in_review"
        assert len(result["scores"]) == 7

    @pytest.mark.asyncio
    async def test_provider_down_still_saved(self, db, model_reply):
        model_reply(ProviderError("down"))
        result = await _submit()
        assert result["analyzed"] is False
        assert result["ai_decision"] is None
        assert result["status"] == "open"
        assert mcp_server.get_opportunity(result["id"])["id"] == result["id"]

    @pytest.mark.asyncio
    async def test_validation_error(self, db, model_reply):
        result = await mcp_server.submit_opportunity("", "desc", "Q3", "alice")
        assert "error" in result
        assert mcp_server.list_opportunities() == []


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_and_get(self, db, model_reply):
        first = await _submit("First")
        model_reply(ProviderError("down"))
        await _submit("Second")
        assert [o["title"] for o in mcp_server.list_opportunities()] == ["Second", "First"]
        assert [o["title"] for o in mcp_server.list_opportunities(ai_decision="pending")] == ["Second"]
        assert mcp_server.get_opportunity(first["id"])["scored"] is True

    def test_get_missing(self, db):
        assert "error" in mcp_server.get_opportunity(999)

    def test_bad_filter(self, db):
        assert "error" in mcp_server.list_opportunities(status="archived")

    def test_criteria(self, db):
        items = mcp_server.list_criteria()
        assert [i["name"] for i in items] == [spec.name for spec in CRITERIA.values()]

    def test_overview(self, db):
        overview = json.loads(mcp_server.gonogo_overview())
        assert overview["statuses"] == ["open", "in_review", "go", "no_go"]
        assert len(overview["criteria"]) == 7


class TestReview:
    @pytest.mark.asyncio
    async def test_review(self, db, model_reply):
        opp = await _submit()
        assert "error" in mcp_server.review_opportunity(opp["id"], "no_go", "boss", passcode="wrong")
        result = mcp_server.review_opportunity(opp["id"], "no_go", "boss", passcode=PASSCODE, comment="too late")
        assert result["status"] == "no_go"
        assert result["manager_comment"] == "too late"

        stats = mcp_server.get_stats()
        assert stats["no_go"] == 1
        assert stats["ai_accuracy"] == 0.0

    @pytest.mark.asyncio
    async def test_invalid_decision(self, db, model_reply):
        opp = await _submit()
        result = mcp_server.review_opportunity(opp["id"], "later", "boss", passcode=PASSCODE)
        assert "error" in result

    @pytest.mark.asyncio
    async def test_review_with_score_override(self, db, model_reply):
        opp = await _submit()
        result = mcp_server.review_opportunity(
            opp["id"], "go", "boss", passcode=PASSCODE, scores={"lead_time_check": 1},
        )
        assert result["status"] == "go"
        assert result["manager_scores"]["lead_time_check"] == 1
