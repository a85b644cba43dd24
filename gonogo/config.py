"""Scoring configuration: weights, thresholds, scale, and decision scheme.

A ``ScoringConfig`` is built once at startup (``from_env``), optionally
overlaid with rows from the ``system_settings`` table (``with_settings``), and
passed explicitly into the scoring pipeline.  Two schemes are supported:

- **binary**: ``overall >= go_threshold`` gives ``go`` else ``no_go``
  (uniform weights, 1-5 scale).
- **tiered**: ``GO`` / ``REVIEW`` / ``NO_GO`` using a second, lower
  ``review_threshold`` (registry weights, 1-4 scale).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any

from gonogo.criteria import Criterion, lookup, registry_weights, uniform_weights
from gonogo.errors import ValidationError
from gonogo.utils import clamp, json_parse

SCHEMES = ("binary", "tiered")

# Keys in system_settings that feed into ScoringConfig
SETTING_KEYS = ("go_threshold", "review_threshold", "scale_min", "scale_max", "scheme")
WEIGHT_PREFIX = "weight_"


@dataclass(frozen=True)
class ScoringConfig:
    weights: dict[str, float] = field(default_factory=uniform_weights)
    go_threshold: float = 3.0
    review_threshold: float | None = None
    scale_min: int = 1
    scale_max: int = 5
    scheme: str = "binary"
    analysis_timeout: float = 60.0
    lease_seconds: float = 120.0

    # -- constructors -------------------------------------------------------

    @classmethod
    def binary(cls, **overrides: Any) -> ScoringConfig:
        return cls(**overrides).validate()

    @classmethod
    def tiered(cls, **overrides: Any) -> ScoringConfig:
        base: dict[str, Any] = {
            "weights": registry_weights(), "go_threshold": 3.0, "review_threshold": 2.5,
            "scale_min": 1, "scale_max": 4, "scheme": "tiered",
        }
        base.update(overrides)
        return cls(**base).validate()

    @classmethod
    def from_env(cls) -> ScoringConfig:
        scheme = os.environ.get("GONOGO_SCHEME", "binary").strip().lower()
        cfg = cls.tiered() if scheme == "tiered" else cls.binary()
        changes: dict[str, Any] = {}
        if os.environ.get("GONOGO_GO_THRESHOLD"):
            changes["go_threshold"] = float(os.environ["GONOGO_GO_THRESHOLD"])
        if os.environ.get("GONOGO_REVIEW_THRESHOLD"):
            changes["review_threshold"] = float(os.environ["GONOGO_REVIEW_THRESHOLD"])
        if os.environ.get("GONOGO_SCALE_MIN"):
            changes["scale_min"] = int(os.environ["GONOGO_SCALE_MIN"])
        if os.environ.get("GONOGO_SCALE_MAX"):
            changes["scale_max"] = int(os.environ["GONOGO_SCALE_MAX"])
        if os.environ.get("GONOGO_WEIGHTS"):
            raw = json_parse(os.environ["GONOGO_WEIGHTS"], None)
            if not isinstance(raw, dict):
                raise ValidationError("GONOGO_WEIGHTS must be a JSON object", ["weights"])
            changes["weights"] = {**cfg.weights, **_normalize_weights(raw)}
        if os.environ.get("GONOGO_ANALYSIS_TIMEOUT"):
            changes["analysis_timeout"] = float(os.environ["GONOGO_ANALYSIS_TIMEOUT"])
        if os.environ.get("GONOGO_LEASE_SECONDS"):
            changes["lease_seconds"] = float(os.environ["GONOGO_LEASE_SECONDS"])
        return replace(cfg, **changes).validate() if changes else cfg

    def with_settings(self, settings: dict[str, str]) -> ScoringConfig:
        """Overlay ``system_settings`` key/value rows onto this config."""
        changes: dict[str, Any] = {}
        weights = dict(self.weights)
        try:
            for key, value in settings.items():
                if value is None or str(value).strip() == "":
                    if key == "review_threshold":
                        changes["review_threshold"] = None
                    continue
                if key.startswith(WEIGHT_PREFIX):
                    weights.update(_normalize_weights({key[len(WEIGHT_PREFIX):]: value}))
                elif key in ("go_threshold", "review_threshold"):
                    changes[key] = float(value)
                elif key in ("scale_min", "scale_max"):
                    changes[key] = int(float(value))
                elif key == "scheme":
                    changes["scheme"] = str(value).strip().lower()
        except ValueError as exc:
            raise ValidationError(f"Invalid scoring setting: {exc}") from exc
        changes["weights"] = weights
        return replace(self, **changes).validate()

    # -- validation ---------------------------------------------------------

    def validate(self) -> ScoringConfig:
        if self.scheme not in SCHEMES:
            raise ValidationError(f"Unknown decision scheme {self.scheme!r}", ["scheme"])
        if self.scale_min >= self.scale_max:
            raise ValidationError("scale_min must be lower than scale_max", ["scale_min", "scale_max"])
        for key, weight in self.weights.items():
            if lookup(key) is None and key != Criterion.OTHER.value:
                raise ValidationError(f"Unknown criterion in weights: {key!r}", ["weights"])
            if weight <= 0:
                raise ValidationError(f"Weight for {key!r} must be positive", ["weights"])
        if self.scheme == "tiered" and self.review_threshold is None:
            raise ValidationError("Tiered scheme requires review_threshold", ["review_threshold"])
        if self.review_threshold is not None and self.review_threshold > self.go_threshold:
            raise ValidationError(
                "review_threshold must not exceed go_threshold", ["review_threshold", "go_threshold"],
            )
        if self.analysis_timeout <= 0 or self.lease_seconds <= 0:
            raise ValidationError("Timeouts must be positive", ["analysis_timeout", "lease_seconds"])
        return self

    # -- scale helpers ------------------------------------------------------

    @property
    def midpoint(self) -> int:
        return (self.scale_min + self.scale_max) // 2

    @property
    def high_default(self) -> int:
        return max(self.scale_min, self.scale_max - 1)

    @property
    def low_default(self) -> int:
        return min(self.scale_max, self.scale_min + 1)

    def clamp_score(self, value: float) -> int:
        return int(clamp(round(value), self.scale_min, self.scale_max))

    def weight_for(self, criterion: str) -> float:
        return self.weights.get(criterion, 1.0)

    def label(self, recommendation: str) -> str:
        """Render a recommendation (``GO``/``NO_GO``/``REVIEW``) in this scheme's vocabulary."""
        value = str(getattr(recommendation, "value", recommendation)).upper()
        return value if self.scheme == "tiered" else value.lower()


def _normalize_weights(raw: dict[str, Any]) -> dict[str, float]:
    out: dict[str, float] = {}
    for key, value in raw.items():
        crit = lookup(key)
        name = crit.value if crit else str(key)
        out[name] = float(value)
    return out
