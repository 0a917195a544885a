"""
Repository contract consulted by the engines, plus a thread-safe in-memory
implementation used for embedding and tests.

Every read is scoped by organization id. Writes that must be race-safe
(`compare_and_set_status`, generation-guarded `upsert_opportunity`) are atomic
with respect to each other.
"""
from __future__ import annotations

import threading
from copy import deepcopy
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from targeting.clock import ensure_utc
from targeting.dedupe import merge_rescored
from targeting.errors import NotFound, StaleGeneration
from targeting.models import (
    Campaign,
    CampaignSnapshot,
    CampaignStatus,
    MediaOpportunity,
    NewsItem,
    OpportunityStatus,
    ReadinessStatus,
    TargetingCriteria,
)

UpsertResult = Tuple[MediaOpportunity, bool, bool]


class Repository(Protocol):
    def get_campaign(self, organization_id: str, campaign_id: str) -> Campaign:
        ...

    def list_campaigns(
        self,
        organization_id: str,
        statuses: Optional[Iterable[CampaignStatus]] = None,
        readiness: Optional[Iterable[ReadinessStatus]] = None,
    ) -> List[Campaign]:
        ...

    def get_criteria(self, organization_id: str, campaign_id: str) -> Optional[TargetingCriteria]:
        ...

    def update_criteria(self, organization_id: str, campaign_id: str, criteria: TargetingCriteria) -> int:
        """Replace the criteria and return the new generation."""
        ...

    def criteria_generation(self, organization_id: str, campaign_id: str) -> int:
        ...

    def save_news_item(self, organization_id: str, item: NewsItem) -> None:
        ...

    def list_news_items(self, organization_id: str, since: Optional[datetime] = None) -> List[NewsItem]:
        ...

    def get_opportunity(self, organization_id: str, opportunity_id: str) -> MediaOpportunity:
        ...

    def list_opportunities(self, organization_id: str, campaign_id: str) -> List[MediaOpportunity]:
        ...

    def upsert_opportunity(self, opportunity: MediaOpportunity, *, generation: Optional[int] = None) -> UpsertResult:
        """Insert or rescore in place; returns (stored, created, changed)."""
        ...

    def compare_and_set_status(self, updated: MediaOpportunity, expected: OpportunityStatus) -> bool:
        ...

    def load_snapshot(self, organization_id: str, campaign_id: str) -> CampaignSnapshot:
        ...

    def swap_readiness(
        self, organization_id: str, campaign_id: str, status: ReadinessStatus, score: float
    ) -> Optional[ReadinessStatus]:
        """Store the latest readiness verdict and return the previous one."""
        ...


class MemoryRepository:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._campaigns: Dict[Tuple[str, str], Campaign] = {}
        self._criteria: Dict[Tuple[str, str], TargetingCriteria] = {}
        self._generations: Dict[Tuple[str, str], int] = {}
        self._news: Dict[Tuple[str, str], NewsItem] = {}
        self._opportunities: Dict[Tuple[str, str], MediaOpportunity] = {}

    def add_campaign(self, campaign: Campaign, criteria: Optional[TargetingCriteria] = None) -> Campaign:
        key = (campaign.organization_id, campaign.id)
        with self._lock:
            self._campaigns[key] = deepcopy(campaign)
            if criteria is not None:
                generation = self._generations.get(key, 0) + 1
                self._generations[key] = generation
                stored = deepcopy(criteria)
                stored.generation = generation
                self._criteria[key] = stored
        return deepcopy(campaign)

    def get_campaign(self, organization_id: str, campaign_id: str) -> Campaign:
        with self._lock:
            return deepcopy(self._require_campaign(organization_id, campaign_id))

    def list_campaigns(
        self,
        organization_id: str,
        statuses: Optional[Iterable[CampaignStatus]] = None,
        readiness: Optional[Iterable[ReadinessStatus]] = None,
    ) -> List[Campaign]:
        status_filter = set(statuses) if statuses else None
        readiness_filter = set(readiness) if readiness else None
        with self._lock:
            campaigns = [c for (org, _), c in self._campaigns.items() if org == organization_id]
            if status_filter is not None:
                campaigns = [c for c in campaigns if c.status in status_filter]
            if readiness_filter is not None:
                campaigns = [c for c in campaigns if c.readiness_status in readiness_filter]
            return deepcopy(sorted(campaigns, key=lambda c: c.id))

    def get_criteria(self, organization_id: str, campaign_id: str) -> Optional[TargetingCriteria]:
        with self._lock:
            self._require_campaign(organization_id, campaign_id)
            return deepcopy(self._criteria.get((organization_id, campaign_id)))

    def update_criteria(self, organization_id: str, campaign_id: str, criteria: TargetingCriteria) -> int:
        key = (organization_id, campaign_id)
        with self._lock:
            self._require_campaign(organization_id, campaign_id)
            generation = self._generations.get(key, 0) + 1
            stored = deepcopy(criteria)
            stored.generation = generation
            self._criteria[key] = stored
            self._generations[key] = generation
            return generation

    def criteria_generation(self, organization_id: str, campaign_id: str) -> int:
        with self._lock:
            return self._generations.get((organization_id, campaign_id), 0)

    def save_news_item(self, organization_id: str, item: NewsItem) -> None:
        with self._lock:
            self._news[(organization_id, item.id)] = item

    def list_news_items(self, organization_id: str, since: Optional[datetime] = None) -> List[NewsItem]:
        cutoff = ensure_utc(since) if since else None
        with self._lock:
            items = [item for (org, _), item in self._news.items() if org == organization_id]
        if cutoff is not None:
            items = [item for item in items if item.published_at and ensure_utc(item.published_at) >= cutoff]
        return sorted(items, key=lambda item: item.id)

    def get_opportunity(self, organization_id: str, opportunity_id: str) -> MediaOpportunity:
        with self._lock:
            record = self._opportunities.get((organization_id, opportunity_id))
            if record is None:
                raise NotFound(f"Opportunity {opportunity_id} not found")
            return deepcopy(record)

    def list_opportunities(self, organization_id: str, campaign_id: str) -> List[MediaOpportunity]:
        with self._lock:
            return deepcopy(self._campaign_opportunities(organization_id, campaign_id))

    def upsert_opportunity(self, opportunity: MediaOpportunity, *, generation: Optional[int] = None) -> UpsertResult:
        key = (opportunity.organization_id, opportunity.id)
        with self._lock:
            self._require_campaign(opportunity.organization_id, opportunity.campaign_id)
            if generation is not None:
                current = self._generations.get((opportunity.organization_id, opportunity.campaign_id), 0)
                if current != generation:
                    raise StaleGeneration(opportunity.campaign_id, generation, current)
            existing = self._opportunities.get(key)
            if existing is None:
                self._opportunities[key] = deepcopy(opportunity)
                return deepcopy(opportunity), True, False
            merged = merge_rescored(existing, opportunity, opportunity.updated_at)
            if merged is None:
                return deepcopy(existing), False, False
            self._opportunities[key] = merged
            return deepcopy(merged), False, True

    def compare_and_set_status(self, updated: MediaOpportunity, expected: OpportunityStatus) -> bool:
        key = (updated.organization_id, updated.id)
        with self._lock:
            current = self._opportunities.get(key)
            if current is None:
                raise NotFound(f"Opportunity {updated.id} not found")
            if current.status != expected:
                return False
            current.status = updated.status
            current.updated_at = updated.updated_at
            return True

    def load_snapshot(self, organization_id: str, campaign_id: str) -> CampaignSnapshot:
        with self._lock:
            campaign = self._require_campaign(organization_id, campaign_id)
            return CampaignSnapshot(
                campaign=deepcopy(campaign),
                criteria=deepcopy(self._criteria.get((organization_id, campaign_id))),
                opportunities=deepcopy(self._campaign_opportunities(organization_id, campaign_id)),
            )

    def swap_readiness(
        self, organization_id: str, campaign_id: str, status: ReadinessStatus, score: float
    ) -> Optional[ReadinessStatus]:
        with self._lock:
            campaign = self._require_campaign(organization_id, campaign_id)
            previous = campaign.readiness_status
            campaign.readiness_status = status
            campaign.readiness_score = score
            return previous

    def _require_campaign(self, organization_id: str, campaign_id: str) -> Campaign:
        campaign = self._campaigns.get((organization_id, campaign_id))
        if campaign is None:
            raise NotFound(f"Campaign {campaign_id} not found for organization {organization_id}")
        return campaign

    def _campaign_opportunities(self, organization_id: str, campaign_id: str) -> List[MediaOpportunity]:
        records = [
            record
            for (org, _), record in self._opportunities.items()
            if org == organization_id and record.campaign_id == campaign_id
        ]
        return sorted(records, key=lambda record: record.id)
