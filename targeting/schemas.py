"""
Pydantic models validating the inputs that cross the core's boundary.

Validation failures surface as `InvalidCriteria` so callers see one error
kind for malformed targeting configuration or policy.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from targeting.errors import InvalidCriteria
from targeting.models import TargetingCriteria, Tier

WEIGHT_TOLERANCE = 1e-6


class ScoringWeights(BaseModel):
    relevance: float = 0.5
    visibility: float = 0.3
    freshness: float = 0.2

    @model_validator(mode="after")
    def _sum_to_one(self) -> "ScoringWeights":
        for name in ("relevance", "visibility", "freshness"):
            if getattr(self, name) < 0:
                raise ValueError(f"weight '{name}' must not be negative")
        total = self.relevance + self.visibility + self.freshness
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ValueError(f"scoring weights must sum to 1 (got {total:.4f})")
        return self


class CriteriaPayload(BaseModel):
    keywords: List[str] = []
    topics: List[str] = []
    outlet_tiers: List[Tier] = []
    regions: List[str] = []
    min_relevance: float = 0.1
    freshness_window_hours: float = 48.0
    min_tier_a_matches: int = 1

    @field_validator("keywords", "topics", "regions", mode="before")
    @classmethod
    def _clean_terms(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        cleaned: List[str] = []
        for term in value:
            term = str(term).strip()
            if term and term.lower() not in {t.lower() for t in cleaned}:
                cleaned.append(term)
        return cleaned

    @field_validator("min_relevance")
    @classmethod
    def _relevance_range(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("min_relevance must be within [0, 1]")
        return value

    @field_validator("freshness_window_hours")
    @classmethod
    def _positive_window(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("freshness_window_hours must be positive")
        return value

    @field_validator("min_tier_a_matches")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("min_tier_a_matches must not be negative")
        return value

    def to_criteria(self) -> TargetingCriteria:
        return TargetingCriteria(
            keywords=list(self.keywords),
            topics=list(self.topics),
            outlet_tiers=list(self.outlet_tiers),
            regions=list(self.regions),
            min_relevance=self.min_relevance,
            freshness_window=timedelta(hours=self.freshness_window_hours),
            min_tier_a_matches=self.min_tier_a_matches,
        )


class AutoApprovalPolicy(BaseModel):
    min_score: float = 0.7
    min_tier: Tier = Tier.B
    max_count: Optional[int] = None
    dry_run: bool = False

    @field_validator("min_score")
    @classmethod
    def _score_range(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("min_score must be within [0, 1]")
        return value

    @field_validator("max_count")
    @classmethod
    def _positive_count(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 0:
            raise ValueError("max_count must not be negative")
        return value


def build_weights(relevance: float, visibility: float, freshness: float) -> ScoringWeights:
    try:
        return ScoringWeights(relevance=relevance, visibility=visibility, freshness=freshness)
    except ValidationError as exc:
        raise InvalidCriteria(_first_error(exc)) from exc


def parse_criteria(raw: Union[TargetingCriteria, Mapping[str, Any]]) -> TargetingCriteria:
    """Validate a criteria payload (dict or dataclass) into `TargetingCriteria`."""
    if isinstance(raw, TargetingCriteria):
        raw = {
            "keywords": raw.keywords,
            "topics": raw.topics,
            "outlet_tiers": raw.outlet_tiers,
            "regions": raw.regions,
            "min_relevance": raw.min_relevance,
            "freshness_window_hours": raw.freshness_window.total_seconds() / 3600.0,
            "min_tier_a_matches": raw.min_tier_a_matches,
        }
    try:
        return CriteriaPayload.model_validate(dict(raw)).to_criteria()
    except ValidationError as exc:
        raise InvalidCriteria(_first_error(exc)) from exc
    except (TypeError, ValueError) as exc:
        raise InvalidCriteria(f"criteria payload is not a mapping: {exc}") from exc


def parse_policy(raw: Union[AutoApprovalPolicy, Mapping[str, Any], None]) -> AutoApprovalPolicy:
    if isinstance(raw, AutoApprovalPolicy):
        return raw
    try:
        return AutoApprovalPolicy.model_validate(dict(raw or {}))
    except ValidationError as exc:
        raise InvalidCriteria(_first_error(exc)) from exc


def _first_error(exc: ValidationError) -> str:
    errors: List[Dict[str, Any]] = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message
