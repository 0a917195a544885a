"""
Core data structures shared by the targeting core.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from targeting.errors import PartialBatchFailure


class Tier(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    UNRATED = "UNRATED"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def at_least(self, floor: "Tier") -> bool:
        return self.rank >= floor.rank


_TIER_RANK: Dict[Tier, int] = {Tier.A: 3, Tier.B: 2, Tier.C: 1, Tier.UNRATED: 0}


class OpportunityStatus(str, Enum):
    NEW = "NEW"
    REVIEWED = "REVIEWED"
    ADDED_TO_CAMPAIGN = "ADDED_TO_CAMPAIGN"
    DISMISSED = "DISMISSED"

    @property
    def is_terminal(self) -> bool:
        return self in (OpportunityStatus.ADDED_TO_CAMPAIGN, OpportunityStatus.DISMISSED)


class TransitionAction(str, Enum):
    REVIEW = "review"
    ADD = "add"
    DISMISS = "dismiss"


class CampaignStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXECUTING = "EXECUTING"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class ReadinessStatus(str, Enum):
    READY = "READY"
    EXECUTING = "EXECUTING"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    INSUFFICIENT_MATCHES = "INSUFFICIENT_MATCHES"
    NOT_READY = "NOT_READY"
    BLOCKED = "BLOCKED"

    @property
    def severity(self) -> int:
        return _READINESS_SEVERITY[self]


_READINESS_SEVERITY: Dict[ReadinessStatus, int] = {
    ReadinessStatus.READY: 0,
    ReadinessStatus.EXECUTING: 0,
    ReadinessStatus.NEEDS_REVIEW: 1,
    ReadinessStatus.INSUFFICIENT_MATCHES: 2,
    ReadinessStatus.NOT_READY: 3,
    ReadinessStatus.BLOCKED: 4,
}


@dataclass(frozen=True)
class NewsItem:
    """
    Normalized article handed over by the feed collaborator. Never mutated here.
    """

    id: str
    title: str = ""
    description: str = ""
    url: str = ""
    source: str = ""
    published_at: Optional[datetime] = None
    category: str = ""
    keywords: FrozenSet[str] = frozenset()
    region: Optional[str] = None


@dataclass
class TargetingCriteria:
    keywords: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)
    outlet_tiers: List[Tier] = field(default_factory=list)
    regions: List[str] = field(default_factory=list)
    min_relevance: float = 0.1
    freshness_window: timedelta = timedelta(hours=48)
    min_tier_a_matches: int = 1
    generation: int = 0

    @property
    def is_complete(self) -> bool:
        return bool(self.keywords)


@dataclass
class Campaign:
    id: str
    organization_id: str
    name: str = ""
    status: CampaignStatus = CampaignStatus.ACTIVE
    min_matches_required: int = 3
    readiness_status: Optional[ReadinessStatus] = None
    readiness_score: Optional[float] = None


@dataclass
class OpportunityScore:
    relevance: float
    visibility: float
    freshness: float
    opportunity_score: float
    tier: Tier
    match_reasons: List[str] = field(default_factory=list)
    matched_terms: List[str] = field(default_factory=list)


@dataclass
class MediaOpportunity:
    id: str
    organization_id: str
    campaign_id: str
    news_item_id: str
    title: str
    source: str
    url: str
    published_at: Optional[datetime]
    relevance: float
    visibility: float
    freshness: float
    opportunity_score: float
    tier: Tier
    match_reasons: List[str]
    keywords: List[str]
    status: OpportunityStatus
    created_at: datetime
    updated_at: datetime

    def same_scores(self, other: "MediaOpportunity") -> bool:
        return (
            self.relevance == other.relevance
            and self.visibility == other.visibility
            and self.freshness == other.freshness
            and self.opportunity_score == other.opportunity_score
        )


@dataclass
class CampaignSnapshot:
    """One consistent read of everything readiness/approval rules look at."""

    campaign: Campaign
    criteria: Optional[TargetingCriteria]
    opportunities: List[MediaOpportunity]


@dataclass
class Recommendations:
    critical: List[str] = field(default_factory=list)
    important: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


@dataclass
class CampaignReadinessResult:
    campaign_id: str
    organization_id: str
    readiness_status: ReadinessStatus
    readiness_score: float
    total_matches: int
    approved_matches: int
    pending_matches: int
    dismissed_matches: int
    tier_counts: Dict[Tier, int]
    approved_tier_a: int
    avg_match_score: float
    blockers: List[str]
    warnings: List[str]
    recommendations: Recommendations
    calculated_at: datetime


@dataclass
class ExecutionCheck:
    can_execute: bool
    blockers: List[str]
    warnings: List[str]


@dataclass
class CampaignTargetingSummary:
    campaign_id: str
    campaign_name: str
    campaign_status: CampaignStatus
    criteria: Optional[TargetingCriteria]
    total_matches: int
    status_counts: Dict[OpportunityStatus, int]
    tier_counts: Dict[Tier, int]
    avg_match_score: float
    top_match_score: float
    low_match_score: float
    readiness_status: Optional[ReadinessStatus]
    last_matched_at: Optional[datetime]
    last_approved_at: Optional[datetime]


@dataclass
class AutoApprovalResult:
    approved: int
    skipped: int
    match_ids: List[str]
    dry_run: bool = False


@dataclass
class CampaignFailure:
    campaign_id: str
    error: str
    error_type: str
    news_item_id: Optional[str] = None


@dataclass
class MonitorReport:
    organization_id: str
    results: List[CampaignReadinessResult]
    failures: List[CampaignFailure]

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialBatchFailure(list(self.failures))


@dataclass
class ScanReport:
    """Stored matches of one scan plus the items and campaigns that failed."""

    organization_id: str
    opportunities: List[MediaOpportunity]
    failures: List[CampaignFailure]
    scanned: int = 0

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialBatchFailure(list(self.failures))
