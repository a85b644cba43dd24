"""Criteria registry: the seven fixed Go/No-Go evaluation dimensions.

Each criterion has a stable identifier (used as the database enum value and
JSON key), a display name (used in the numbered free-text layout the model is
asked to produce), a one-line description, scoring guidance for the prompt,
and a domain weight.  The registry is read-only at runtime and validated at
import time, so a missing criterion fails the process on startup rather than
on the first request.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class Criterion(str, Enum):
    LEAD_TIME_CHECK = "lead_time_check"
    PROJECT_INSIGHT = "project_insight"
    CLIENT_RELATIONSHIP = "client_relationship"
    EXPERTISE_ALIGNMENT = "expertise_alignment"
    COMMERCIAL_VIABILITY = "commercial_viability"
    STRATEGIC_VALUE = "strategic_value"
    RESOURCES = "resources"
    OTHER = "other"


@dataclass(frozen=True)
class CriterionSpec:
    id: Criterion
    name: str
    description: str
    guidance: tuple[str, ...]
    weight: float


CRITERIA: dict[Criterion, CriterionSpec] = {
    Criterion.LEAD_TIME_CHECK: CriterionSpec(
        Criterion.LEAD_TIME_CHECK, "Lead Time Check",
        "Evaluates if the project timeline is realistic and achievable",
        (
            "Evaluate if the timeline is realistic and feasible",
            "Consider if there's sufficient time for planning, execution, and quality assurance",
            "Assess if the deadline aligns with our current workload and capacity",
        ),
        8,
    ),
    Criterion.PROJECT_INSIGHT: CriterionSpec(
        Criterion.PROJECT_INSIGHT, "Project Insight",
        "Evaluates the clarity and completeness of the project description",
        (
            "Assess how well we understand the project requirements and scope",
            "Consider if requirements are clear, detailed, and well-documented",
            "Evaluate if there are any ambiguities or unknowns that could pose risks",
        ),
        7,
    ),
    Criterion.CLIENT_RELATIONSHIP: CriterionSpec(
        Criterion.CLIENT_RELATIONSHIP, "Client Relationship",
        "Evaluates the existing relationship with the client",
        (
            "Consider past project history, communication quality, and payment reliability",
            "Assess strategic importance of maintaining/developing this client relationship",
        ),
        6,
    ),
    Criterion.EXPERTISE_ALIGNMENT: CriterionSpec(
        Criterion.EXPERTISE_ALIGNMENT, "Expertise Alignment",
        "Evaluates how well the project aligns with our expertise",
        (
            "Assess if we have the necessary skills and expertise for this project",
            "Evaluate if we would need to acquire new skills or hire specialists",
        ),
        9,
    ),
    Criterion.COMMERCIAL_VIABILITY: CriterionSpec(
        Criterion.COMMERCIAL_VIABILITY, "Commercial Viability",
        "Evaluates the commercial potential of the project",
        (
            "Consider potential revenue, profit margins, and ROI",
            "Assess payment terms, budget constraints, and financial risks",
        ),
        10,
    ),
    Criterion.STRATEGIC_VALUE: CriterionSpec(
        Criterion.STRATEGIC_VALUE, "Strategic Value",
        "Evaluates the strategic importance of the project",
        (
            "Consider if it opens doors to new markets, technologies, or client segments",
            "Evaluate long-term benefits beyond immediate financial gains",
        ),
        8,
    ),
    Criterion.RESOURCES: CriterionSpec(
        Criterion.RESOURCES, "Resources",
        "Evaluates the availability of resources for the project",
        (
            "Consider human resources, equipment, technology, and infrastructure needs",
            "Assess if resource allocation would impact other ongoing projects",
        ),
        7,
    ),
}

SCORED_CRITERIA: tuple[Criterion, ...] = tuple(CRITERIA)

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _squash(name: str) -> str:
    return _NON_ALNUM.sub("", name.lower())


# "leadtimecheck" -> Criterion.LEAD_TIME_CHECK; covers ids, camelCase keys and display names
_ALIASES: dict[str, Criterion] = {}
for _c, _spec in CRITERIA.items():
    _ALIASES[_squash(_c.value)] = _c
    _ALIASES[_squash(_spec.name)] = _c


def lookup(name: str) -> Criterion | None:
    """Resolve a criterion id, camelCase key, or display name. ``None`` if unknown."""
    return _ALIASES.get(_squash(name or ""))


def uniform_weights() -> dict[str, float]:
    return {c.value: 1.0 for c in SCORED_CRITERIA}


def registry_weights() -> dict[str, float]:
    return {c.value: float(spec.weight) for c, spec in CRITERIA.items()}


def validate_registry() -> None:
    missing = [c.value for c in Criterion if c is not Criterion.OTHER and c not in CRITERIA]
    if missing:
        raise RuntimeError(f"Criteria registry is missing: {', '.join(missing)}")
    bad = [c.value for c, spec in CRITERIA.items() if spec.weight <= 0 or spec.id is not c]
    if bad:
        raise RuntimeError(f"Criteria registry has invalid entries: {', '.join(bad)}")


validate_registry()
