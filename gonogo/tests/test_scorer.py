from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from gonogo.config import ScoringConfig
from gonogo.criteria import CRITERIA, SCORED_CRITERIA
from gonogo.errors import ProviderError
from gonogo.scorer import SYSTEM_PROMPT, analyze_opportunity, build_prompt


class FakeClient:
    model = "fake-model"

    def __init__(self, reply: str):
        self.reply = reply
        self.calls: list[tuple[str, str]] = []

    async def complete(self, system: str, prompt: str) -> str:
        self.calls.append((system, prompt))
        return self.reply


def free_text(score: int, recommendation: str) -> str:
    sections = [f"{i}. {spec.name} ({score})\nReasoning here." for i, spec in enumerate(CRITERIA.values(), 1)]
    return "\n".join(sections) + f"\n\nRecommendation: {recommendation}\nConfidence: 75%"


class TestBuildPrompt:
    def test_includes_opportunity_and_criteria(self):
        prompt = build_prompt("  Portal rebuild ", "New customer portal", "Q3", ScoringConfig.binary())
        assert "Title: Portal rebuild\n" in prompt
        assert "Timeline: Q3" in prompt
        for spec in CRITERIA.values():
            assert spec.name in prompt
            assert spec.description in prompt
        assert "scale of 1-5" in prompt

    def test_scale_follows_config(self):
        prompt = build_prompt("t", "d", "q", ScoringConfig.tiered())
        assert "scale of 1-4" in prompt
        assert "1. Lead Time Check (1-4)" in prompt


class TestAnalyzeOpportunity:
    @pytest.mark.asyncio
    async def test_free_text_result(self):
        client = FakeClient(free_text(4, "Go"))
        result = await analyze_opportunity(client, "t", "d", "q", ScoringConfig.binary())
        assert client.calls[0][0] == SYSTEM_PROMPT
        assert len(result.scores) == 7
        assert result.decision == "go"
        assert result.overall_score == 4.0
        assert result.confidence == 75
        assert result.strategy == "free_text"
        assert result.model == "fake-model"

    @pytest.mark.asyncio
    async def test_decision_recomputed_from_scores(self):
        client = FakeClient(free_text(5, "No Go"))
        result = await analyze_opportunity(client, "t", "d", "q", ScoringConfig.binary())
        assert result.stated_decision == "no_go"
        assert result.decision == "go"

    @pytest.mark.asyncio
    async def test_tiered_review(self):
        payload = {"scores": {c.value: 3 for c in SCORED_CRITERIA}, "comments": "borderline"}
        payload["scores"]["commercial_viability"] = 2
        client = FakeClient(json.dumps(payload))
        result = await analyze_opportunity(client, "t", "d", "q", ScoringConfig.tiered())
        # (8+7+6+9+8+7)*3 + 10*2 = 155 over 55
        assert result.overall_score == pytest.approx(2.818, abs=1e-3)
        assert result.decision == "REVIEW"
        assert result.reasoning == "borderline"

    @pytest.mark.asyncio
    async def test_unparseable_reply_is_cautious(self):
        client = FakeClient("")
        result = await analyze_opportunity(client, "t", "d", "q", ScoringConfig.binary())
        assert result.fallback == "parse_error"
        assert result.overall_score == 3.0
        assert result.decision == "no_go"
        assert result.confidence == 50

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self):
        client = FakeClient("")
        client.complete = AsyncMock(side_effect=ProviderError("down", retryable=True))
        with pytest.raises(ProviderError, match="down"):
            await analyze_opportunity(client, "t", "d", "q", ScoringConfig.binary())
