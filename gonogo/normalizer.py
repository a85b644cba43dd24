"""Response normalizer: turn free-form model output into structured scores.

Architecture
------------
Extraction is delegated to ``ResponseExtractionStrategy`` implementations,
tried in order until one succeeds:

- **StructuredJsonStrategy**: the first balanced ``{...}`` block, parsed as
  ``{"scores": {...}, "overallScore": n, "recommendation": s, "comments": s}``.
  The block's own ``overallScore`` / ``recommendation`` are not trusted; the
  decision is recomputed by the decision engine.
- **FreeTextStrategy**: numbered ``N. Criterion Name (score)`` headings with
  the text in between taken as each criterion's explanation, plus a Go/No Go
  keyword and a ``confidence ... NN%`` phrase.

If a strategy extracts no scores at all, a full set is synthesized from the
stated decision.  If normalization blows up entirely, ``neutral_fallback`` is
returned.  ``normalize_response`` therefore never raises.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence

from gonogo.config import ScoringConfig
from gonogo.criteria import SCORED_CRITERIA, lookup
from gonogo.decision import Recommendation, compute_decision
from gonogo.errors import MalformedResponseError
from gonogo.utils import clamp

log = logging.getLogger(__name__)

DERIVED_EXPLANATION = "Score derived from overall decision due to parsing limitations."
PARSE_ERROR_EXPLANATION = "Default score due to parsing error."
PARSE_ERROR_REASONING = "Unable to parse AI response. Defaulting to a cautious recommendation."
DEFAULT_REASONING = "Based on the analysis of the provided information, this is the recommendation."
DEFAULT_CONFIDENCE = 70
FALLBACK_CONFIDENCE = 50


@dataclass
class ScoreEntry:
    criterion: str
    score: int
    explanation: str = ""


@dataclass
class NormalizedResponse:
    scores: list[ScoreEntry]
    decision: str  # "go" | "no_go" as stated by (or derived for) the model
    confidence: int
    reasoning: str
    strategy: str
    skipped_criteria: list[str] = field(default_factory=list)
    fallback: str | None = None  # None | "derived" | "parse_error"

    def score_map(self) -> dict[str, int]:
        return {e.criterion: e.score for e in self.scores}


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def clamp_confidence(value: Any) -> int:
    try:
        raw = round(float(value))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_CONFIDENCE
    confidence = int(clamp(raw, 0, 100))
    if confidence != raw:
        log.warning("Confidence %s outside 0-100, clamped to %d", value, confidence)
    return confidence


def scale_score(value: float, config: ScoringConfig, criterion: str) -> int:
    score = config.clamp_score(value)
    if score != round(value):
        log.warning(
            "Score %s for %s outside %d-%d, clamped to %d",
            value, criterion, config.scale_min, config.scale_max, score,
        )
    return score


def synthesize_scores(decision: str, config: ScoringConfig) -> list[ScoreEntry]:
    """One entry per known criterion, valued from the overall decision."""
    value = config.high_default if decision == "go" else config.low_default
    return [ScoreEntry(c.value, value, DERIVED_EXPLANATION) for c in SCORED_CRITERIA]


def neutral_fallback(config: ScoringConfig, reason: str = PARSE_ERROR_REASONING) -> NormalizedResponse:
    return NormalizedResponse(
        scores=[ScoreEntry(c.value, config.midpoint, PARSE_ERROR_EXPLANATION) for c in SCORED_CRITERIA],
        decision="no_go",
        confidence=FALLBACK_CONFIDENCE,
        reasoning=reason,
        strategy="fallback",
        fallback="parse_error",
    )


def find_json_block(text: str) -> str | None:
    """Return the first balanced ``{...}`` block in *text*, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # unbalanced from this brace; try the next one
        start = text.find("{", start + 1)
    return None


_DECISION_RE = re.compile(r"\b(no[\s_-]*go|go)\b", re.IGNORECASE)


def parse_decision_keyword(text: str) -> str | None:
    m = _DECISION_RE.search(text or "")
    if not m:
        return None
    return "go" if m.group(1).lower() == "go" else "no_go"


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class ResponseExtractionStrategy(ABC):
    """Converts raw model text into a ``NormalizedResponse`` or raises ``MalformedResponseError``."""

    name: str = "base"

    @abstractmethod
    def extract(self, text: str, config: ScoringConfig) -> NormalizedResponse:
        ...


class StructuredJsonStrategy(ResponseExtractionStrategy):
    name = "json"

    def extract(self, text: str, config: ScoringConfig) -> NormalizedResponse:
        block = find_json_block(text)
        if block is None:
            raise MalformedResponseError("No JSON object found in response")
        try:
            data = json.loads(block)
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"Invalid JSON block: {exc}") from exc
        if not isinstance(data, dict):
            raise MalformedResponseError("JSON block is not an object")
        raw_scores = data.get("scores")
        if not isinstance(raw_scores, dict):
            raise MalformedResponseError("JSON block has no 'scores' object")

        entries: list[ScoreEntry] = []
        skipped: list[str] = []
        explanations = data.get("explanations") if isinstance(data.get("explanations"), dict) else {}
        for key, value in raw_scores.items():
            crit = lookup(str(key))
            if crit is None:
                skipped.append(str(key))
                continue
            try:
                score = scale_score(float(value), config, crit.value)
            except (TypeError, ValueError, OverflowError):
                skipped.append(str(key))
                continue
            entries.append(ScoreEntry(crit.value, score, str(explanations.get(key, ""))))

        stated = parse_decision_keyword(str(data.get("recommendation") or "")) or "no_go"
        reasoning = str(data.get("comments") or data.get("reasoning") or "") or DEFAULT_REASONING
        confidence = clamp_confidence(data.get("confidence", DEFAULT_CONFIDENCE))

        fallback = None
        if entries:
            result = compute_decision({e.criterion: e.score for e in entries}, config)
            # REVIEW is neither go nor no_go; the stated field keeps the binary vocabulary
            decision = "go" if result.recommendation is Recommendation.GO else "no_go"
        else:
            decision = stated
            entries = synthesize_scores(decision, config)
            fallback = "derived"

        return NormalizedResponse(
            scores=entries, decision=decision, confidence=confidence,
            reasoning=reasoning, strategy=self.name,
            skipped_criteria=skipped, fallback=fallback,
        )


class FreeTextStrategy(ResponseExtractionStrategy):
    name = "free_text"

    HEADING_RE = re.compile(r"(\d+)\.\s+([A-Za-z][A-Za-z\s]*?)\s*\((\d+)\)")
    CONFIDENCE_RES = (
        re.compile(r"confidence[^\d\n]*(\d+)\s*%", re.IGNORECASE),
        re.compile(r"(\d+)\s*%\s*confiden", re.IGNORECASE),
    )
    MARKER = "recommendation"

    def extract(self, text: str, config: ScoringConfig) -> NormalizedResponse:
        if not text or not text.strip():
            raise MalformedResponseError("Empty response")

        lowered = text.lower()
        matches = list(self.HEADING_RE.finditer(text))
        # the recommendation section starts at the first marker after the last heading
        marker_at = lowered.find(self.MARKER, matches[-1].end() if matches else 0)

        entries: list[ScoreEntry] = []
        skipped: list[str] = []
        for i, m in enumerate(matches):
            name = m.group(2).strip()
            crit = lookup(name)
            if crit is None:
                skipped.append(name)
                continue
            seg_end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
            if i + 1 == len(matches) and marker_at != -1:
                seg_end = marker_at
            explanation = text[m.end():seg_end].strip()
            score = scale_score(int(m.group(3)), config, crit.value)
            entries.append(ScoreEntry(crit.value, score, explanation))

        # Prefer the keyword in the recommendation section; headings mention "go" rarely but prose may
        decision = None
        if marker_at != -1:
            decision = parse_decision_keyword(text[marker_at:])
        if decision is None:
            decision = parse_decision_keyword(text) or "no_go"

        confidence = DEFAULT_CONFIDENCE
        for pattern in self.CONFIDENCE_RES:
            cm = pattern.search(text)
            if cm:
                confidence = clamp_confidence(cm.group(1))
                break

        reasoning = text[marker_at:].strip() if marker_at != -1 else DEFAULT_REASONING

        fallback = None
        if not entries:
            entries = synthesize_scores(decision, config)
            fallback = "derived"

        return NormalizedResponse(
            scores=entries, decision=decision, confidence=confidence,
            reasoning=reasoning, strategy=self.name,
            skipped_criteria=skipped, fallback=fallback,
        )


DEFAULT_STRATEGIES: tuple[ResponseExtractionStrategy, ...] = (StructuredJsonStrategy(), FreeTextStrategy())


def normalize_response(
    text: str,
    config: ScoringConfig,
    strategies: Sequence[ResponseExtractionStrategy] = DEFAULT_STRATEGIES,
) -> NormalizedResponse:
    """Normalize raw model text. Never raises; falls back to a neutral result."""
    try:
        for strategy in strategies:
            try:
                result = strategy.extract(text, config)
            except MalformedResponseError as exc:
                log.info("Extraction strategy %s failed: %s", strategy.name, exc)
                continue
            if result.skipped_criteria:
                log.warning(
                    "Skipped %d unrecognized criteria (%s): %s",
                    len(result.skipped_criteria), strategy.name, ", ".join(result.skipped_criteria),
                )
            if result.fallback == "derived":
                log.warning("No scores extracted (%s); derived from decision %r", strategy.name, result.decision)
            return result
        log.warning("No extraction strategy could parse the response; using neutral fallback")
        return neutral_fallback(config)
    except Exception:
        log.exception("Response normalization failed; using neutral fallback")
        return neutral_fallback(config)
