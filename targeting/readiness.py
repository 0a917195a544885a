"""
Campaign readiness: one snapshot read, one rule evaluation per call.

Blockers are checked first and the most severe one decides the status;
warnings and recommendations are accumulated regardless.
"""
from __future__ import annotations

import logging
import math
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from targeting.clock import Clock, SystemClock
from targeting.events import EventSink, EventType, NullSink, make_event
from targeting.models import (
    CampaignFailure,
    CampaignReadinessResult,
    CampaignSnapshot,
    CampaignStatus,
    CampaignTargetingSummary,
    ExecutionCheck,
    MonitorReport,
    OpportunityStatus,
    ReadinessStatus,
    Recommendations,
    Tier,
)
from targeting.repository import Repository
from targeting.retry import ReadRetry

logger = logging.getLogger(__name__)

READY_SCORE = 0.7
LOW_AVG_SCORE = 0.3
WEAK_AVG_SCORE = 0.5
FEW_MATCHES = 5
MONITOR_POLL_SECONDS = 0.05
TIER_MIX_WEIGHTS: Dict[Tier, float] = {Tier.A: 0.5, Tier.B: 0.3, Tier.C: 0.2, Tier.UNRATED: 0.0}
MONITORED_CAMPAIGNS = (CampaignStatus.ACTIVE, CampaignStatus.EXECUTING)

BLOCKER_CRITERIA_INCOMPLETE = "targeting criteria incomplete"
BLOCKER_NO_APPROVED = "no approved matches"

_PENDING = (OpportunityStatus.NEW, OpportunityStatus.REVIEWED)


def readiness_score(approved: int, required: int, tier_counts: Dict[Tier, int], avg_score: float) -> float:
    """0.4 coverage of the approval target, 0.3 outlet tier mix, 0.3 average match score."""
    if required > 0:
        coverage = min(approved / required, 1.0)
    else:
        coverage = 1.0 if approved else 0.0
    counted = sum(tier_counts.values())
    mix = 0.0
    if counted:
        mix = sum(TIER_MIX_WEIGHTS[tier] * count for tier, count in tier_counts.items()) / counted
    return round(0.4 * coverage + 0.3 * mix + 0.3 * avg_score, 4)


def evaluate_snapshot(
    snapshot: CampaignSnapshot, now: datetime, default_min_matches: int = 3
) -> CampaignReadinessResult:
    campaign = snapshot.campaign
    criteria = snapshot.criteria
    opportunities = snapshot.opportunities

    approved = [o for o in opportunities if o.status is OpportunityStatus.ADDED_TO_CAMPAIGN]
    pending = [o for o in opportunities if o.status in _PENDING]
    dismissed = [o for o in opportunities if o.status is OpportunityStatus.DISMISSED]
    active = approved + pending

    tier_counts: Dict[Tier, int] = {tier: 0 for tier in Tier}
    for record in active:
        tier_counts[record.tier] += 1
    approved_tier_a = sum(1 for o in approved if o.tier is Tier.A)
    avg_score = round(sum(o.opportunity_score for o in active) / len(active), 4) if active else 0.0
    required = campaign.min_matches_required or default_min_matches
    score = readiness_score(len(approved), required, tier_counts, avg_score)

    blockers: List[Tuple[ReadinessStatus, str]] = []
    if campaign.status in (CampaignStatus.PAUSED, CampaignStatus.ARCHIVED):
        blockers.append((ReadinessStatus.BLOCKED, f"campaign is {campaign.status.value.lower()}"))
    if criteria is None or not criteria.is_complete:
        blockers.append((ReadinessStatus.NOT_READY, BLOCKER_CRITERIA_INCOMPLETE))
    if not approved:
        blockers.append((ReadinessStatus.NOT_READY, BLOCKER_NO_APPROVED))
    elif len(approved) < required:
        blockers.append(
            (ReadinessStatus.INSUFFICIENT_MATCHES, f"only {len(approved)} approved matches (need {required})")
        )

    warnings: List[str] = []
    min_tier_a = criteria.min_tier_a_matches if criteria is not None else 1
    if approved_tier_a < min_tier_a:
        warnings.append(f"only {approved_tier_a} approved Tier A matches (want {min_tier_a})")
    if avg_score < LOW_AVG_SCORE:
        warnings.append(f"low average match score: {avg_score:.2f}")
    if pending:
        warnings.append(f"{len(pending)} matches pending review")
    if score < READY_SCORE:
        warnings.append(f"readiness score {score:.2f} below {READY_SCORE:.2f}")

    if blockers:
        status = max((entry[0] for entry in blockers), key=lambda s: s.severity)
    elif campaign.status is CampaignStatus.EXECUTING:
        status = ReadinessStatus.EXECUTING
    elif warnings:
        status = ReadinessStatus.NEEDS_REVIEW
    else:
        status = ReadinessStatus.READY

    result = CampaignReadinessResult(
        campaign_id=campaign.id,
        organization_id=campaign.organization_id,
        readiness_status=status,
        readiness_score=score,
        total_matches=len(opportunities),
        approved_matches=len(approved),
        pending_matches=len(pending),
        dismissed_matches=len(dismissed),
        tier_counts=tier_counts,
        approved_tier_a=approved_tier_a,
        avg_match_score=avg_score,
        blockers=[text for _, text in blockers],
        warnings=warnings,
        recommendations=Recommendations(),
        calculated_at=now,
    )
    result.recommendations = build_recommendations(result, criteria_complete=bool(criteria and criteria.is_complete))
    return result


def build_recommendations(result: CampaignReadinessResult, criteria_complete: bool = True) -> Recommendations:
    recs = Recommendations()
    active = result.approved_matches + result.pending_matches
    tier_a = result.tier_counts.get(Tier.A, 0)
    tier_c = result.tier_counts.get(Tier.C, 0)

    if not criteria_complete:
        recs.critical.append("Targeting criteria incomplete - add at least one keyword")
    if active == 0:
        recs.critical.append("No opportunities matched - campaign cannot be executed")
        recs.critical.append("Run matching with appropriate targeting criteria")
    elif active < FEW_MATCHES:
        recs.important.append(f"Only {active} opportunities matched - consider broadening criteria")
        recs.suggestions.append("Lower the minimum relevance or expand topic coverage")

    if result.approved_matches == 0 and active > 0:
        recs.important.append("No matches approved yet - review and approve matches")
        recs.suggestions.append("Review top-scoring matches first for quick approval")

    if tier_a == 0 and active > 0:
        recs.important.append("No Tier A coverage - campaign may have lower reach")
        recs.suggestions.append("Consider tracking more Tier A outlets or adjusting expectations")

    if active > 0 and result.avg_match_score < WEAK_AVG_SCORE:
        recs.important.append(
            f"Low average match score ({result.avg_match_score:.2f}) - matches may not be optimal"
        )
        recs.suggestions.append("Refine targeting criteria to improve match quality")

    rated = sum(count for tier, count in result.tier_counts.items() if tier is not Tier.UNRATED)
    if rated:
        if tier_a / rated < 0.2:
            recs.suggestions.append("Consider adding more Tier A coverage for higher visibility")
        if tier_c / rated > 0.6:
            recs.suggestions.append("High proportion of Tier C outlets - reach may be limited")

    status = result.readiness_status
    if status is ReadinessStatus.READY:
        recs.suggestions.append("Campaign is ready for execution")
    elif status is ReadinessStatus.NEEDS_REVIEW:
        recs.important.append("Human review recommended before execution")
    elif status is ReadinessStatus.INSUFFICIENT_MATCHES:
        recs.critical.append("Not enough approved matches to execute campaign effectively")
    elif status is ReadinessStatus.NOT_READY:
        recs.critical.append("Campaign has critical issues preventing execution")
    elif status is ReadinessStatus.BLOCKED:
        recs.critical.append("Campaign is paused or archived - reactivate it before execution")
    return recs


class ReadinessEngine:
    def __init__(
        self,
        repository: Repository,
        sink: Optional[EventSink] = None,
        clock: Optional[Clock] = None,
        retry: Optional[ReadRetry] = None,
        min_approved_matches: int = 3,
        monitor_concurrency: int = 4,
        monitor_timeout_seconds: float = 30.0,
    ) -> None:
        self.repository = repository
        self.sink = sink or NullSink()
        self.clock = clock or SystemClock()
        self.retry = retry or ReadRetry()
        self.min_approved_matches = min_approved_matches
        self.monitor_concurrency = max(1, monitor_concurrency)
        self.monitor_timeout_seconds = monitor_timeout_seconds

    def evaluate(self, campaign_id: str, organization_id: str) -> CampaignReadinessResult:
        """Read one snapshot and run the rules on it, without recording anything."""
        snapshot = self.retry(
            lambda: self.repository.load_snapshot(organization_id, campaign_id), label=f"snapshot {campaign_id}"
        )
        return evaluate_snapshot(snapshot, self.clock.now(), self.min_approved_matches)

    def calculate_readiness(self, campaign_id: str, organization_id: str) -> CampaignReadinessResult:
        return self.record(self.evaluate(campaign_id, organization_id))

    def record(self, result: CampaignReadinessResult) -> CampaignReadinessResult:
        """Store an evaluated status and emit `readiness-changed` when it differs from the last one."""
        campaign_id = result.campaign_id
        organization_id = result.organization_id
        previous = self.repository.swap_readiness(
            organization_id, campaign_id, result.readiness_status, result.readiness_score
        )
        if previous is not result.readiness_status:
            logger.info(
                "Campaign %s readiness changed: %s -> %s",
                campaign_id,
                previous.value if previous else None,
                result.readiness_status.value,
            )
            self.sink.emit(
                make_event(
                    EventType.READINESS_CHANGED,
                    campaign_id=campaign_id,
                    organization_id=organization_id,
                    payload={
                        "status": result.readiness_status.value,
                        "previous_status": previous.value if previous else None,
                        "readiness_score": result.readiness_score,
                        "blockers": list(result.blockers),
                    },
                    at=result.calculated_at,
                )
            )
        return result

    def can_execute_campaign(self, campaign_id: str, organization_id: str) -> ExecutionCheck:
        result = self.evaluate(campaign_id, organization_id)
        return ExecutionCheck(
            can_execute=result.readiness_status is ReadinessStatus.READY,
            blockers=list(result.blockers),
            warnings=list(result.warnings),
        )

    def get_recommendations(self, campaign_id: str, organization_id: str) -> Recommendations:
        return self.evaluate(campaign_id, organization_id).recommendations

    def get_targeting_summary(self, campaign_id: str, organization_id: str) -> CampaignTargetingSummary:
        snapshot = self.retry(
            lambda: self.repository.load_snapshot(organization_id, campaign_id), label=f"summary {campaign_id}"
        )
        opportunities = snapshot.opportunities
        status_counts = {status: 0 for status in OpportunityStatus}
        tier_counts = {tier: 0 for tier in Tier}
        for record in opportunities:
            status_counts[record.status] += 1
            tier_counts[record.tier] += 1
        scores = [o.opportunity_score for o in opportunities]
        approved_at = [o.updated_at for o in opportunities if o.status is OpportunityStatus.ADDED_TO_CAMPAIGN]
        return CampaignTargetingSummary(
            campaign_id=snapshot.campaign.id,
            campaign_name=snapshot.campaign.name,
            campaign_status=snapshot.campaign.status,
            criteria=snapshot.criteria,
            total_matches=len(opportunities),
            status_counts=status_counts,
            tier_counts=tier_counts,
            avg_match_score=round(sum(scores) / len(scores), 4) if scores else 0.0,
            top_match_score=max(scores) if scores else 0.0,
            low_match_score=min(scores) if scores else 0.0,
            readiness_status=snapshot.campaign.readiness_status,
            last_matched_at=max((o.created_at for o in opportunities), default=None),
            last_approved_at=max(approved_at, default=None),
        )

    def monitor_campaigns_readiness(
        self, organization_id: str, statuses: Optional[Iterable[ReadinessStatus]] = None
    ) -> MonitorReport:
        """
        Recompute readiness for every active campaign of an organization.

        Workers only evaluate; statuses are recorded here, and only for
        campaigns whose evaluation finished within its own deadline. A
        campaign that overran is reported as a `TimeoutError` failure and its
        stored status is left untouched.
        """
        readiness_filter = list(statuses) if statuses else None
        campaigns = self.retry(
            lambda: self.repository.list_campaigns(
                organization_id, statuses=MONITORED_CAMPAIGNS, readiness=readiness_filter
            ),
            label=f"campaign list {organization_id}",
        )
        report = MonitorReport(organization_id=organization_id, results=[], failures=[])
        if not campaigns:
            logger.info("No campaigns to monitor for organization %s", organization_id)
            return report

        max_workers = min(self.monitor_concurrency, len(campaigns))
        logger.info("Monitoring readiness of %s campaigns (%s workers)", len(campaigns), max_workers)
        timeout = self.monitor_timeout_seconds
        # Hard stop for campaigns that never got a worker because others hung.
        batch_deadline = time.monotonic() + timeout * math.ceil(len(campaigns) / max_workers)
        started: Dict[str, float] = {}

        def timed_evaluate(campaign_id: str) -> Tuple[CampaignReadinessResult, float]:
            started[campaign_id] = time.monotonic()
            result = self.evaluate(campaign_id, organization_id)
            return result, time.monotonic() - started[campaign_id]

        executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="readiness")
        try:
            future_map = {
                executor.submit(timed_evaluate, campaign.id): campaign.id for campaign in campaigns
            }
            pending = set(future_map)
            while pending:
                wait_for = self._next_wait(pending, future_map, started, batch_deadline)
                done, _ = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)
                for future in done:
                    pending.discard(future)
                    self._collect(future, future_map[future], report)
                now = time.monotonic()
                for future in list(pending):
                    if future.done():
                        continue
                    campaign_id = future_map[future]
                    begun = started.get(campaign_id)
                    overran = begun is not None and now - begun >= timeout
                    if overran or (begun is None and now >= batch_deadline):
                        pending.discard(future)
                        future.cancel()
                        self._timed_out(campaign_id, report)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        report.results.sort(key=lambda result: result.campaign_id)
        report.failures.sort(key=lambda failure: failure.campaign_id)
        if report.failures:
            logger.warning(
                "Readiness monitor for %s finished with %s failures out of %s campaigns",
                organization_id,
                len(report.failures),
                len(campaigns),
            )
        return report

    def _next_wait(
        self, pending: Set[Future], future_map: Dict[Future, str], started: Dict[str, float], batch_deadline: float
    ) -> float:
        now = time.monotonic()
        remaining = []
        for future in pending:
            begun = started.get(future_map[future])
            if begun is not None:
                remaining.append(begun + self.monitor_timeout_seconds - now)
            else:
                remaining.append(min(MONITOR_POLL_SECONDS, batch_deadline - now))
        return max(0.0, min(remaining))

    def _collect(self, future: Future, campaign_id: str, report: MonitorReport) -> None:
        try:
            result, elapsed = future.result()
            if elapsed > self.monitor_timeout_seconds:
                self._timed_out(campaign_id, report)
                return
            report.results.append(self.record(result))
        except Exception as exc:
            logger.warning("Readiness failed for campaign %s: %s", campaign_id, exc)
            report.failures.append(
                CampaignFailure(campaign_id=campaign_id, error=str(exc), error_type=type(exc).__name__)
            )

    def _timed_out(self, campaign_id: str, report: MonitorReport) -> None:
        logger.warning("Readiness timed out for campaign %s", campaign_id)
        report.failures.append(
            CampaignFailure(
                campaign_id=campaign_id,
                error=f"timed out after {self.monitor_timeout_seconds:g}s",
                error_type="TimeoutError",
            )
        )
