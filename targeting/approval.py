"""
Auto-approval of high-scoring opportunities.

Selection is shared verbatim between dry and real runs. Real runs persist each
approval through the repository's compare-and-set, so concurrent approvers of
the same opportunity resolve to a single winner.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from targeting.clock import Clock, SystemClock, ensure_utc
from targeting.errors import InvalidTransition, NotFound
from targeting.events import EventSink, EventType, NullSink, make_event
from targeting.lifecycle import add_to_campaign
from targeting.models import AutoApprovalResult, MediaOpportunity, OpportunityStatus
from targeting.repository import Repository
from targeting.retry import ReadRetry
from targeting.schemas import AutoApprovalPolicy

logger = logging.getLogger(__name__)

_ELIGIBLE = (OpportunityStatus.NEW, OpportunityStatus.REVIEWED)
_NO_DATE = datetime.max


def _selection_key(record: MediaOpportunity):
    published = ensure_utc(record.published_at).replace(tzinfo=None) if record.published_at else _NO_DATE
    return -record.opportunity_score, published, record.id


def select_candidates(opportunities: List[MediaOpportunity], policy: AutoApprovalPolicy) -> List[MediaOpportunity]:
    candidates = [
        record
        for record in opportunities
        if record.status in _ELIGIBLE
        and record.opportunity_score >= policy.min_score
        and record.tier.at_least(policy.min_tier)
    ]
    candidates.sort(key=_selection_key)
    if policy.max_count is not None:
        candidates = candidates[: policy.max_count]
    return candidates


class AutoApprovalEngine:
    def __init__(
        self,
        repository: Repository,
        sink: Optional[EventSink] = None,
        clock: Optional[Clock] = None,
        retry: Optional[ReadRetry] = None,
    ) -> None:
        self.repository = repository
        self.sink = sink or NullSink()
        self.clock = clock or SystemClock()
        self.retry = retry or ReadRetry()

    def auto_approve_matches(
        self, campaign_id: str, organization_id: str, policy: Optional[AutoApprovalPolicy] = None
    ) -> AutoApprovalResult:
        policy = policy or AutoApprovalPolicy()
        snapshot = self.retry(
            lambda: self.repository.load_snapshot(organization_id, campaign_id), label=f"snapshot {campaign_id}"
        )
        selected = select_candidates(snapshot.opportunities, policy)

        if policy.dry_run:
            logger.info("Dry run for campaign %s would approve %s opportunities", campaign_id, len(selected))
            return AutoApprovalResult(
                approved=len(selected), skipped=0, match_ids=[record.id for record in selected], dry_run=True
            )

        approved_ids: List[str] = []
        skipped = 0
        for record in selected:
            now = self.clock.now()
            try:
                updated = add_to_campaign(record, now)
                won = self.repository.compare_and_set_status(updated, expected=record.status)
            except (InvalidTransition, NotFound) as exc:
                logger.debug("Skipping opportunity %s: %s", record.id, exc)
                skipped += 1
                continue
            if not won:
                logger.debug("Opportunity %s changed concurrently; skipped", record.id)
                skipped += 1
                continue
            approved_ids.append(record.id)
            self.sink.emit(
                make_event(
                    EventType.OPPORTUNITY_TRANSITIONED,
                    campaign_id=campaign_id,
                    organization_id=organization_id,
                    payload={
                        "opportunity_id": record.id,
                        "from_status": record.status.value,
                        "to_status": updated.status.value,
                        "opportunity_score": record.opportunity_score,
                        "source": "auto-approval",
                    },
                    at=now,
                )
            )

        result = AutoApprovalResult(approved=len(approved_ids), skipped=skipped, match_ids=approved_ids)
        logger.info(
            "Auto-approval for campaign %s: %s approved, %s skipped", campaign_id, result.approved, result.skipped
        )
        self.sink.emit(
            make_event(
                EventType.AUTO_APPROVAL_COMPLETED,
                campaign_id=campaign_id,
                organization_id=organization_id,
                payload={
                    "approved": result.approved,
                    "skipped": result.skipped,
                    "match_ids": list(result.match_ids),
                    "min_score": policy.min_score,
                    "min_tier": policy.min_tier.value,
                    "max_count": policy.max_count,
                },
                at=self.clock.now(),
            )
        )
        return result
