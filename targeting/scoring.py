"""
Opportunity scoring for (news item, targeting criteria) pairs.

Every sub-score lives in [0, 1]; the composite is a fixed weighted sum so a
rescan of the same inputs always lands on the same value.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Pattern, Tuple

from targeting.clock import Clock, SystemClock, ensure_utc
from targeting.dedupe import opportunity_id
from targeting.errors import InvalidCriteria
from targeting.models import (
    MediaOpportunity,
    NewsItem,
    OpportunityScore,
    OpportunityStatus,
    TargetingCriteria,
    Tier,
)
from targeting.outlets import OutletDirectory
from targeting.schemas import ScoringWeights

TITLE_CREDIT = 1.0
BODY_CREDIT = 0.6
PRECISION = 4


class OpportunityScorer:
    def __init__(
        self,
        outlets: Optional[OutletDirectory] = None,
        weights: Optional[ScoringWeights] = None,
        notable_threshold: float = 0.5,
        clock: Optional[Clock] = None,
    ) -> None:
        self.outlets = outlets or OutletDirectory()
        self.weights = weights or ScoringWeights()
        self.notable_threshold = notable_threshold
        self.clock = clock or SystemClock()
        self._patterns: Dict[str, Pattern[str]] = {}

    def score(self, item: NewsItem, criteria: TargetingCriteria, now: Optional[datetime] = None) -> OpportunityScore:
        terms = self._terms(criteria)
        if not terms:
            raise InvalidCriteria("criteria need at least one keyword or topic")
        window_seconds = criteria.freshness_window.total_seconds()
        if window_seconds <= 0:
            raise InvalidCriteria("freshness window must be positive")

        now = ensure_utc(now) if now else self.clock.now()
        relevance, title_hits, body_hits = self._relevance(item, terms)
        tier = self.outlets.tier_for(item.source, item.url)
        visibility = self.outlets.visibility_for(tier)
        freshness, age_hours = self._freshness(item.published_at, now, window_seconds)

        composite = (
            self.weights.relevance * relevance
            + self.weights.visibility * visibility
            + self.weights.freshness * freshness
        )
        result = OpportunityScore(
            relevance=round(relevance, PRECISION),
            visibility=round(visibility, PRECISION),
            freshness=round(freshness, PRECISION),
            opportunity_score=round(max(0.0, min(1.0, composite)), PRECISION),
            tier=tier,
            matched_terms=title_hits + body_hits,
        )
        if relevance > 0:
            result.match_reasons = self._reasons(item, result, title_hits, body_hits, age_hours, window_seconds)
        return result

    def is_match(self, item: NewsItem, score: OpportunityScore, criteria: TargetingCriteria) -> bool:
        if score.relevance <= 0 or score.relevance < criteria.min_relevance:
            return False
        if criteria.outlet_tiers and score.tier not in criteria.outlet_tiers:
            return False
        if criteria.regions and item.region:
            allowed = {region.lower() for region in criteria.regions}
            if item.region.lower() not in allowed:
                return False
        return True

    def _terms(self, criteria: TargetingCriteria) -> List[str]:
        terms: List[str] = []
        seen = set()
        for term in list(criteria.keywords) + list(criteria.topics):
            cleaned = str(term).strip()
            if cleaned and cleaned.lower() not in seen:
                seen.add(cleaned.lower())
                terms.append(cleaned)
        return terms

    def _pattern(self, term: str) -> Pattern[str]:
        key = term.lower()
        pattern = self._patterns.get(key)
        if pattern is None:
            pattern = re.compile(r"(?<!\w)" + re.escape(key) + r"(?!\w)")
            self._patterns[key] = pattern
        return pattern

    def _relevance(self, item: NewsItem, terms: List[str]) -> Tuple[float, List[str], List[str]]:
        title = (item.title or "").lower()
        body = " ".join(part for part in (item.description or "", item.category or "") if part).lower()
        item_keywords = {str(k).strip().lower() for k in (item.keywords or ())}

        credits = 0.0
        title_hits: List[str] = []
        body_hits: List[str] = []
        for term in terms:
            pattern = self._pattern(term)
            if title and pattern.search(title):
                credits += TITLE_CREDIT
                title_hits.append(term)
            elif (body and pattern.search(body)) or term.lower() in item_keywords:
                credits += BODY_CREDIT
                body_hits.append(term)
        relevance = credits / len(terms)
        return max(0.0, min(1.0, relevance)), title_hits, body_hits

    @staticmethod
    def _freshness(published_at: Optional[datetime], now: datetime, window_seconds: float) -> Tuple[float, Optional[float]]:
        if not published_at:
            return 0.0, None
        age_seconds = (now - ensure_utc(published_at)).total_seconds()
        freshness = 1.0 - max(0.0, age_seconds) / window_seconds
        return max(0.0, min(1.0, freshness)), age_seconds / 3600.0

    def _reasons(
        self,
        item: NewsItem,
        score: OpportunityScore,
        title_hits: List[str],
        body_hits: List[str],
        age_hours: Optional[float],
        window_seconds: float,
    ) -> List[str]:
        mentions = []
        if title_hits:
            mentions.append(f"headline mentions {', '.join(title_hits)}")
        if body_hits:
            mentions.append(f"coverage mentions {', '.join(body_hits)}")
        outlet = item.source or "unknown source"
        if score.tier is Tier.UNRATED:
            visibility_reason = f"Unrated outlet: {outlet}"
        else:
            visibility_reason = f"Tier {score.tier.value} outlet: {outlet}"
        freshness_reason = (
            f"Fresh coverage: published {max(age_hours, 0.0):.0f}h ago" if age_hours is not None else "Fresh coverage"
        )

        candidates = [
            (self.weights.relevance * score.relevance, score.relevance, "Relevant: " + "; ".join(mentions)),
            (self.weights.visibility * score.visibility, score.visibility, visibility_reason),
            (self.weights.freshness * score.freshness, score.freshness, freshness_reason),
        ]
        ranked = sorted(candidates, key=lambda entry: entry[0], reverse=True)
        reasons = [text for _, value, text in ranked if value >= self.notable_threshold]
        if not reasons:
            reasons.append(ranked[0][2])
        if score.freshness == 0:
            window_hours = window_seconds / 3600.0
            if age_hours is None:
                reasons.append("Stale: publication time unknown")
            else:
                reasons.append(f"Stale: published outside the {window_hours:.0f}h freshness window")
        return reasons


def build_opportunity(
    item: NewsItem,
    score: OpportunityScore,
    criteria: TargetingCriteria,
    *,
    campaign_id: str,
    organization_id: str,
    now: Optional[datetime] = None,
) -> MediaOpportunity:
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    item_keywords = {str(k).strip().lower() for k in (item.keywords or ())}
    keywords = [kw for kw in criteria.keywords if kw.lower() in item_keywords]
    return MediaOpportunity(
        id=opportunity_id(organization_id, campaign_id, item.id),
        organization_id=organization_id,
        campaign_id=campaign_id,
        news_item_id=item.id,
        title=item.title or "",
        source=item.source or "",
        url=item.url or "",
        published_at=ensure_utc(item.published_at) if item.published_at else None,
        relevance=score.relevance,
        visibility=score.visibility,
        freshness=score.freshness,
        opportunity_score=score.opportunity_score,
        tier=score.tier,
        match_reasons=list(score.match_reasons),
        keywords=keywords,
        status=OpportunityStatus.NEW,
        created_at=now,
        updated_at=now,
    )
