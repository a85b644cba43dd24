"""Scoring pipeline: prompt construction, AI invocation, normalization, decision.

``analyze_opportunity`` is the single entry point.  It raises only
``ProviderError`` (the endpoint failed); anything the model says, however
malformed, is turned into a complete result by the normalizer.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from gonogo.config import ScoringConfig
from gonogo.criteria import CRITERIA
from gonogo.decision import Recommendation, compute_decision
from gonogo.llm import LLMClient
from gonogo.normalizer import ScoreEntry, normalize_response

log = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an expert business analyst who evaluates business opportunities."

PROMPT_TEMPLATE = """\
You are an expert business analyst tasked with evaluating business opportunities.
Please analyze the following opportunity and provide a detailed Go/No Go recommendation:

Title: {title}
Description: {description}
Timeline: {timeline}

Score each of the following criteria on a scale of {scale_min}-{scale_max} \
(where {scale_min} is poor and {scale_max} is excellent):

{criteria}

For each criterion, provide:
- A heading in exactly this form: "<number>. <criterion name> (<score>)"
- A detailed explanation justifying the score based on the information provided

Then, provide an overall Go/No Go recommendation with:
- A line starting with "Recommendation:" and a clear decision (Go or No Go)
- Your confidence level (percentage)
- Comprehensive reasoning that weighs the various criteria

Alternatively, reply with a single JSON object of the form
{{"scores": {{"lead_time_check": <score>, ...}}, "explanations": {{"lead_time_check": "<text>", ...}}, \
"recommendation": "Go" or "No Go", "confidence": <percentage>, "comments": "<reasoning>"}}
"""


def build_criteria_block(config: ScoringConfig) -> str:
    lines: list[str] = []
    for idx, spec in enumerate(CRITERIA.values(), start=1):
        lines.append(f"{idx}. {spec.name} ({config.scale_min}-{config.scale_max})")
        lines.append(f"   - {spec.description}")
        lines.extend(f"   - {g}" for g in spec.guidance)
        lines.append("")
    return "\n".join(lines).rstrip()


def build_prompt(title: str, description: str, timeline: str, config: ScoringConfig) -> str:
    return PROMPT_TEMPLATE.format(
        title=title.strip(),
        description=description.strip(),
        timeline=timeline.strip(),
        scale_min=config.scale_min,
        scale_max=config.scale_max,
        criteria=build_criteria_block(config),
    )


@dataclass
class AnalysisResult:
    scores: list[ScoreEntry]
    decision: str
    stated_decision: str
    overall_score: float
    confidence: int
    reasoning: str
    strategy: str
    skipped_criteria: list[str] = field(default_factory=list)
    fallback: str | None = None
    model: str = ""


async def analyze_opportunity(
    client: LLMClient,
    title: str,
    description: str,
    timeline: str,
    config: ScoringConfig,
) -> AnalysisResult:
    """Score an opportunity against every criterion and derive the AI decision."""
    prompt = build_prompt(title, description, timeline, config)
    raw = await client.complete(SYSTEM_PROMPT, prompt)
    normalized = normalize_response(raw, config)

    result = compute_decision(normalized.score_map(), config, comments=normalized.reasoning)
    decision = result.decision
    if normalized.fallback == "parse_error":
        # midpoint scores can clear the go threshold; an unparseable answer stays cautious
        decision = config.label(Recommendation.NO_GO)
    elif normalized.decision != ("go" if result.recommendation is Recommendation.GO else "no_go"):
        log.info(
            "Model stated %r but weighted scores give %r (%.2f)",
            normalized.decision, decision, result.overall_score,
        )

    return AnalysisResult(
        scores=normalized.scores,
        decision=decision,
        stated_decision=normalized.decision,
        overall_score=round(result.overall_score, 3),
        confidence=normalized.confidence,
        reasoning=normalized.reasoning,
        strategy=normalized.strategy,
        skipped_criteria=normalized.skipped_criteria,
        fallback=normalized.fallback,
        model=getattr(client, "model", ""),
    )
