from __future__ import annotations

import json

import pytest

from gonogo.config import ScoringConfig
from gonogo.criteria import CRITERIA, SCORED_CRITERIA
from gonogo.decision import compute_decision
from gonogo.errors import MalformedResponseError
from gonogo.normalizer import (
    DEFAULT_CONFIDENCE,
    DERIVED_EXPLANATION,
    FALLBACK_CONFIDENCE,
    PARSE_ERROR_EXPLANATION,
    FreeTextStrategy,
    NormalizedResponse,
    ResponseExtractionStrategy,
    ScoreEntry,
    StructuredJsonStrategy,
    clamp_confidence,
    find_json_block,
    normalize_response,
    parse_decision_keyword,
)

FREE_TEXT = (
    "1. Lead Time Check (5)\nGreat fit.\n"
    "2. Project Insight (2)\nUnclear scope.\n"
    "...Recommendation: Go, confidence 80%"
)


@pytest.fixture()
def binary():
    return ScoringConfig.binary()


@pytest.fixture()
def tiered():
    return ScoringConfig.tiered()


# =========================================================================
# Helpers
# =========================================================================

class TestHelpers:
    def test_find_json_block_ignores_braces_in_strings(self):
        text = 'prefix {"a": "}{", "b": {"c": 1}} suffix'
        assert json.loads(find_json_block(text)) == {"a": "}{", "b": {"c": 1}}

    def test_find_json_block_skips_unbalanced(self):
        assert find_json_block('oops { then {"a": 1}') == '{"a": 1}'
        assert find_json_block("no braces") is None

    @pytest.mark.parametrize("text,expected", [
        ("Recommendation: Go", "go"),
        ("Recommendation: No Go", "no_go"),
        ("decision NO_GO", "no_go"),
        ("no-go for now", "no_go"),
        ("good value, ongoing", None),
    ])
    def test_parse_decision_keyword(self, text, expected):
        assert parse_decision_keyword(text) == expected

    def test_clamp_confidence(self):
        assert clamp_confidence(150) == 100
        assert clamp_confidence(-5) == 0
        assert clamp_confidence("81.6") == 82
        assert clamp_confidence("high") == DEFAULT_CONFIDENCE


# =========================================================================
# StructuredJsonStrategy
# =========================================================================

class TestStructuredJson:
    def test_own_overall_and_recommendation_ignored(self, tiered):
        payload = {
            "scores": {c.value: 4 for c in SCORED_CRITERIA},
            "overallScore": 0, "recommendation": "", "comments": "x",
        }
        result = normalize_response("Here is my analysis:\n" + json.dumps(payload), tiered)
        assert result.strategy == "json"
        assert result.decision == "go"
        assert result.reasoning == "x"
        assert [e.score for e in result.scores] == [4] * 7
        assert compute_decision(result.score_map(), tiered).decision == "GO"

    def test_camel_case_keys_and_skips(self, binary):
        text = json.dumps({"scores": {"leadTimeCheck": 5, "budget": 3}, "recommendation": "Go"})
        result = StructuredJsonStrategy().extract(text, binary)
        assert result.score_map() == {"lead_time_check": 5}
        assert result.skipped_criteria == ["budget"]

    def test_scores_clamped(self, binary):
        text = json.dumps({"scores": {"lead_time_check": 9, "resources": -1}})
        result = StructuredJsonStrategy().extract(text, binary)
        assert result.score_map() == {"lead_time_check": 5, "resources": 1}

    def test_explanations_and_confidence(self, binary):
        text = json.dumps({
            "scores": {"resources": 4}, "explanations": {"resources": "team is free"},
            "confidence": 150, "reasoning": "solid",
        })
        result = StructuredJsonStrategy().extract(text, binary)
        assert result.scores == [ScoreEntry("resources", 4, "team is free")]
        assert result.confidence == 100
        assert result.reasoning == "solid"

    def test_empty_scores_derived_from_recommendation(self, binary):
        text = json.dumps({"scores": {}, "recommendation": "No Go"})
        result = StructuredJsonStrategy().extract(text, binary)
        assert result.fallback == "derived"
        assert len(result.scores) == 7
        assert {e.score for e in result.scores} == {binary.low_default}

    def test_missing_scores_object(self, binary):
        with pytest.raises(MalformedResponseError, match="scores"):
            StructuredJsonStrategy().extract('{"verdict": "go"}', binary)

    def test_invalid_json(self, binary):
        with pytest.raises(MalformedResponseError):
            StructuredJsonStrategy().extract("{scores: {lead_time_check: 4}}", binary)


# =========================================================================
# FreeTextStrategy
# =========================================================================

class TestFreeText:
    def test_headings(self, binary):
        result = normalize_response(FREE_TEXT, binary)
        assert result.strategy == "free_text"
        assert [(e.criterion, e.score) for e in result.scores] == [
            ("lead_time_check", 5), ("project_insight", 2),
        ]
        assert result.scores[0].explanation == "Great fit."
        assert result.decision == "go"
        assert result.confidence == 80
        assert result.reasoning.startswith("Recommendation: Go")

    def test_last_explanation_stops_at_recommendation(self, binary):
        result = FreeTextStrategy().extract(FREE_TEXT, binary)
        assert "Recommendation" not in result.scores[-1].explanation
        assert result.scores[-1].explanation.startswith("Unclear scope.")

    def test_last_explanation_stops_at_first_recommendation(self, binary):
        text = (
            "1. Lead Time Check (4)\nEnough runway.\n"
            "7. Resources (3)\nTight team.\n"
            "Recommendation: Go\nConfidence 80%\n"
            "Reasoning: this recommendation weighs delivery risk."
        )
        result = FreeTextStrategy().extract(text, binary)
        assert result.scores[-1].explanation == "Tight team."
        assert result.reasoning.startswith("Recommendation: Go")
        assert result.reasoning.endswith("delivery risk.")
        assert result.decision == "go"

    def test_full_layout(self, binary):
        sections = [f"{i}. {spec.name} (4)\nLooks fine." for i, spec in enumerate(CRITERIA.values(), 1)]
        text = "\n".join(sections) + "\n\nRecommendation: No Go\nConfidence level: 65%\nToo risky."
        result = FreeTextStrategy().extract(text, binary)
        assert len(result.scores) == 7
        assert result.decision == "no_go"
        assert result.confidence == 65

    def test_no_scores_synthesizes_all_seven(self, binary):
        result = normalize_response("Overall this looks strong.\nRecommendation: Go.", binary)
        assert result.fallback == "derived"
        assert [e.criterion for e in result.scores] == [c.value for c in SCORED_CRITERIA]
        assert {e.explanation for e in result.scores} == {DERIVED_EXPLANATION}
        assert {e.score for e in result.scores} == {binary.high_default}

    def test_no_scores_no_go_uses_low_default(self, tiered):
        result = normalize_response("Recommendation: No Go", tiered)
        assert {e.score for e in result.scores} == {tiered.low_default}

    def test_confidence_clamped(self, binary):
        text = "1. Resources (3)\nok\nRecommendation: Go with confidence 150%"
        assert normalize_response(text, binary).confidence == 100

    def test_four_digit_confidence_clamped(self, binary):
        text = "1. Resources (3)\nok\nRecommendation: Go, confidence 1000%"
        assert normalize_response(text, binary).confidence == 100

    def test_percent_before_word(self, binary):
        text = "1. Resources (3)\nok\nRecommendation: Go, 90% confident"
        assert normalize_response(text, binary).confidence == 90

    def test_default_confidence(self, binary):
        text = "1. Resources (3)\nok\nRecommendation: Go"
        assert normalize_response(text, binary).confidence == DEFAULT_CONFIDENCE

    def test_unknown_heading_is_reported(self, binary):
        text = "1. Budget (4)\nfine\n2. Resources (3)\nok\nRecommendation: No Go"
        result = normalize_response(text, binary)
        assert result.score_map() == {"resources": 3}
        assert result.skipped_criteria == ["Budget"]
        assert result.decision == "no_go"

    def test_score_clamped_to_scale(self, tiered):
        result = FreeTextStrategy().extract("1. Resources (5)\nRecommendation: Go", tiered)
        assert result.score_map() == {"resources": 4}

    def test_empty_text(self, binary):
        with pytest.raises(MalformedResponseError):
            FreeTextStrategy().extract("   ", binary)


# =========================================================================
# Strategy chain & fallback
# =========================================================================

class _Broken(ResponseExtractionStrategy):
    name = "broken"

    def extract(self, text, config):
        raise RuntimeError("boom")


class _Fixed(ResponseExtractionStrategy):
    name = "fixed"

    def extract(self, text, config):
        return NormalizedResponse([ScoreEntry("resources", 2)], "no_go", 55, "fixed", self.name)


class TestNormalizeResponse:
    def test_json_preferred_over_free_text(self, binary):
        text = FREE_TEXT + "\n" + json.dumps({"scores": {"resources": 1}})
        assert normalize_response(text, binary).strategy == "json"

    def test_non_scores_json_falls_through(self, binary):
        result = normalize_response('{"note": 1}\nRecommendation: Go', binary)
        assert result.strategy == "free_text"
        assert result.decision == "go"

    def test_empty_response_neutral_fallback(self, binary):
        result = normalize_response("", binary)
        assert result.fallback == "parse_error"
        assert result.decision == "no_go"
        assert result.confidence == FALLBACK_CONFIDENCE
        assert {e.score for e in result.scores} == {binary.midpoint}
        assert {e.explanation for e in result.scores} == {PARSE_ERROR_EXPLANATION}

    def test_unexpected_error_never_raises(self, binary):
        result = normalize_response(FREE_TEXT, binary, strategies=[_Broken()])
        assert result.fallback == "parse_error"
        assert len(result.scores) == 7

    def test_pluggable_strategy(self, binary):
        result = normalize_response(FREE_TEXT, binary, strategies=[_Fixed(), FreeTextStrategy()])
        assert result.strategy == "fixed"
        assert result.score_map() == {"resources": 2}
