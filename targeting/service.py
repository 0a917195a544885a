"""
High-level entry points for the targeting core.

`TargetingService` wires the scorer, lifecycle, readiness, auto-approval and
rematch components around one repository, one clock and one event sink.
"""
from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor, as_completed
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from targeting.approval import AutoApprovalEngine
from targeting.clock import Clock, SystemClock
from targeting.dedupe import unique_by
from targeting.errors import InvalidCriteria, InvalidTransition, TargetingError
from targeting.events import EventSink, EventType, NullSink, make_event
from targeting.lifecycle import apply_action
from targeting.models import (
    AutoApprovalResult,
    CampaignFailure,
    CampaignReadinessResult,
    CampaignTargetingSummary,
    ExecutionCheck,
    MediaOpportunity,
    MonitorReport,
    NewsItem,
    ReadinessStatus,
    Recommendations,
    ScanReport,
    TargetingCriteria,
    TransitionAction,
)
from targeting.outlets import OutletDirectory
from targeting.readiness import MONITORED_CAMPAIGNS, ReadinessEngine
from targeting.rematch import RematchCoordinator
from targeting.repository import Repository
from targeting.retry import ReadRetry
from targeting.schemas import AutoApprovalPolicy, parse_criteria, parse_policy
from targeting.scoring import OpportunityScorer, build_opportunity
from targeting.settings import TargetingSettings, load_settings
from targeting.store import SqlRepository

logger = logging.getLogger(__name__)


class TargetingService:
    def __init__(
        self,
        repository: Repository,
        settings: Optional[TargetingSettings] = None,
        sink: Optional[EventSink] = None,
        clock: Optional[Clock] = None,
        scorer: Optional[OpportunityScorer] = None,
        rematch_executor: Optional[Executor] = None,
        retry: Optional[ReadRetry] = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.repository = repository
        self.sink = sink or NullSink()
        self.clock = clock or SystemClock()
        self.retry = retry or ReadRetry(self.settings.read_retries, self.settings.read_backoff_seconds)
        self.scorer = scorer or OpportunityScorer(
            outlets=OutletDirectory.from_config(self.settings.outlets_path),
            weights=self.settings.weights,
            notable_threshold=self.settings.notable_threshold,
            clock=self.clock,
        )
        self.readiness = ReadinessEngine(
            repository,
            sink=self.sink,
            clock=self.clock,
            retry=self.retry,
            min_approved_matches=self.settings.min_approved_matches,
            monitor_concurrency=self.settings.monitor_concurrency,
            monitor_timeout_seconds=self.settings.monitor_timeout_seconds,
        )
        self.approvals = AutoApprovalEngine(repository, sink=self.sink, clock=self.clock, retry=self.retry)
        self.rematch = RematchCoordinator(
            repository,
            self.scorer,
            sink=self.sink,
            clock=self.clock,
            executor=rematch_executor,
            lookback_hours=self.settings.rematch_lookback_hours,
            retry=self.retry,
        )

    # -- scoring -----------------------------------------------------------

    def score_and_upsert_opportunity(
        self, news_item: NewsItem, campaign_id: str, organization_id: str
    ) -> Optional[MediaOpportunity]:
        """Score one item for one campaign; returns the stored record, or None when it does not match."""
        criteria = self.retry(
            lambda: self.repository.get_criteria(organization_id, campaign_id), label=f"criteria {campaign_id}"
        )
        if criteria is None:
            raise InvalidCriteria(f"Campaign {campaign_id} has no targeting criteria")
        self.repository.save_news_item(organization_id, news_item)
        return self._match_and_upsert(news_item, campaign_id, organization_id, criteria, self.clock.now())

    def scan_news_items(self, news_items: Iterable[NewsItem], organization_id: str) -> ScanReport:
        """
        Score a batch of items against every active campaign of the organization.

        Failures are isolated per item and per campaign: a bad item is recorded
        and the rest of the batch still runs, and records stored before a
        failure stay in the report.
        """
        items = unique_by(news_items, lambda item: item.id)
        report = ScanReport(organization_id=organization_id, opportunities=[], failures=[], scanned=len(items))
        if not items:
            return report
        campaigns = self.retry(
            lambda: self.repository.list_campaigns(organization_id, statuses=MONITORED_CAMPAIGNS),
            label=f"campaign list {organization_id}",
        )
        for item in items:
            self.repository.save_news_item(organization_id, item)
        if not campaigns:
            logger.info("No active campaigns for organization %s; stored %s items", organization_id, len(items))
            return report

        now = self.clock.now()
        max_workers = min(self.settings.monitor_concurrency, len(campaigns))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="scan") as executor:
            future_map = {
                executor.submit(self._scan_campaign, items, campaign.id, organization_id, now): campaign
                for campaign in campaigns
            }
            for future in as_completed(future_map):
                campaign = future_map[future]
                try:
                    stored, failures = future.result()
                except Exception as exc:
                    logger.warning("Scan failed for campaign %s: %s", campaign.id, exc)
                    report.failures.append(
                        CampaignFailure(campaign_id=campaign.id, error=str(exc), error_type=type(exc).__name__)
                    )
                    continue
                report.opportunities.extend(stored)
                report.failures.extend(failures)
        report.opportunities.sort(key=lambda record: (record.campaign_id, -record.opportunity_score, record.id))
        report.failures.sort(key=lambda failure: (failure.campaign_id, failure.news_item_id or ""))
        logger.info(
            "Scanned %s items against %s campaigns: %s matches, %s failures",
            len(items),
            len(campaigns),
            len(report.opportunities),
            len(report.failures),
        )
        return report

    def _scan_campaign(
        self, items: List[NewsItem], campaign_id: str, organization_id: str, now: datetime
    ) -> Tuple[List[MediaOpportunity], List[CampaignFailure]]:
        criteria = self.retry(
            lambda: self.repository.get_criteria(organization_id, campaign_id), label=f"criteria {campaign_id}"
        )
        if criteria is None or not (criteria.keywords or criteria.topics):
            logger.debug("Campaign %s has no usable criteria; skipping scan", campaign_id)
            return [], []
        matches: List[MediaOpportunity] = []
        failures: List[CampaignFailure] = []
        for item in items:
            try:
                record = self._match_and_upsert(item, campaign_id, organization_id, criteria, now)
            except Exception as exc:
                logger.warning("Scan of item %s failed for campaign %s: %s", item.id, campaign_id, exc)
                failures.append(
                    CampaignFailure(
                        campaign_id=campaign_id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                        news_item_id=item.id,
                    )
                )
                continue
            if record is not None:
                matches.append(record)
        return matches, failures

    def _match_and_upsert(
        self,
        item: NewsItem,
        campaign_id: str,
        organization_id: str,
        criteria: TargetingCriteria,
        now: datetime,
    ) -> Optional[MediaOpportunity]:
        score = self.scorer.score(item, criteria, now)
        if not self.scorer.is_match(item, score, criteria):
            logger.debug("Item %s does not match campaign %s", item.id, campaign_id)
            return None
        opportunity = build_opportunity(
            item, score, criteria, campaign_id=campaign_id, organization_id=organization_id, now=now
        )
        stored, created, _ = self.repository.upsert_opportunity(opportunity)
        if created:
            self.sink.emit(
                make_event(
                    EventType.OPPORTUNITY_CREATED,
                    campaign_id=campaign_id,
                    organization_id=organization_id,
                    payload={
                        "opportunity_id": stored.id,
                        "news_item_id": stored.news_item_id,
                        "opportunity_score": stored.opportunity_score,
                        "tier": stored.tier.value,
                        "status": stored.status.value,
                    },
                    at=now,
                )
            )
        return stored

    # -- lifecycle ---------------------------------------------------------

    def transition_opportunity(
        self, opportunity_id: str, organization_id: str, action: Union[TransitionAction, str]
    ) -> MediaOpportunity:
        record = self.retry(
            lambda: self.repository.get_opportunity(organization_id, opportunity_id),
            label=f"opportunity {opportunity_id}",
        )
        now = self.clock.now()
        updated = apply_action(record, action, now)
        if not self.repository.compare_and_set_status(updated, expected=record.status):
            current = self.repository.get_opportunity(organization_id, opportunity_id)
            raise InvalidTransition(
                f"Opportunity {opportunity_id} changed concurrently (now {current.status.value})",
                opportunity_id=opportunity_id,
                current_status=current.status.value,
            )
        logger.info("Opportunity %s: %s -> %s", opportunity_id, record.status.value, updated.status.value)
        self.sink.emit(
            make_event(
                EventType.OPPORTUNITY_TRANSITIONED,
                campaign_id=record.campaign_id,
                organization_id=organization_id,
                payload={
                    "opportunity_id": opportunity_id,
                    "from_status": record.status.value,
                    "to_status": updated.status.value,
                    "opportunity_score": record.opportunity_score,
                    "source": "manual",
                },
                at=now,
            )
        )
        if updated.status.is_terminal:
            self._refresh_readiness(record.campaign_id, organization_id)
        return updated

    # -- readiness ---------------------------------------------------------

    def calculate_readiness(self, campaign_id: str, organization_id: str) -> CampaignReadinessResult:
        return self.readiness.calculate_readiness(campaign_id, organization_id)

    def get_targeting_summary(self, campaign_id: str, organization_id: str) -> CampaignTargetingSummary:
        return self.readiness.get_targeting_summary(campaign_id, organization_id)

    def monitor_campaigns_readiness(
        self, organization_id: str, statuses: Optional[Iterable[ReadinessStatus]] = None
    ) -> MonitorReport:
        return self.readiness.monitor_campaigns_readiness(organization_id, statuses)

    def get_recommendations(self, campaign_id: str, organization_id: str) -> Recommendations:
        return self.readiness.get_recommendations(campaign_id, organization_id)

    def can_execute_campaign(self, campaign_id: str, organization_id: str) -> ExecutionCheck:
        return self.readiness.can_execute_campaign(campaign_id, organization_id)

    def _refresh_readiness(self, campaign_id: str, organization_id: str) -> None:
        try:
            self.readiness.calculate_readiness(campaign_id, organization_id)
        except TargetingError as exc:
            logger.warning("Readiness refresh failed for campaign %s: %s", campaign_id, exc)

    # -- approval / criteria -----------------------------------------------

    def auto_approve_matches(
        self,
        campaign_id: str,
        organization_id: str,
        policy: Union[AutoApprovalPolicy, Mapping[str, Any], None] = None,
    ) -> AutoApprovalResult:
        resolved = parse_policy(policy)
        result = self.approvals.auto_approve_matches(campaign_id, organization_id, resolved)
        if result.approved and not result.dry_run:
            self._refresh_readiness(campaign_id, organization_id)
        return result

    def update_targeting_criteria(
        self,
        campaign_id: str,
        organization_id: str,
        criteria: Union[TargetingCriteria, Mapping[str, Any]],
        trigger_rematch: bool = False,
    ) -> None:
        parsed = parse_criteria(criteria)
        generation = self.repository.update_criteria(organization_id, campaign_id, parsed)
        parsed = replace(parsed, generation=generation)
        logger.info("Criteria for campaign %s updated to generation %s", campaign_id, generation)
        self.sink.emit(
            make_event(
                EventType.CRITERIA_UPDATED,
                campaign_id=campaign_id,
                organization_id=organization_id,
                payload={
                    "generation": generation,
                    "keywords": list(parsed.keywords),
                    "topics": list(parsed.topics),
                    "trigger_rematch": trigger_rematch,
                },
                at=self.clock.now(),
            )
        )
        if trigger_rematch:
            if parsed.keywords or parsed.topics:
                self.rematch.schedule(organization_id, campaign_id, parsed, generation)
            else:
                logger.warning("Criteria for campaign %s have no terms; rematch not scheduled", campaign_id)
        self._refresh_readiness(campaign_id, organization_id)

    def close(self) -> None:
        self.rematch.shutdown(wait=True)


def create_service(
    settings: Optional[TargetingSettings] = None, sink: Optional[EventSink] = None
) -> TargetingService:
    """Build a service over the SQLite store configured in settings."""
    settings = settings or load_settings()
    repository = SqlRepository(settings.db_path)
    return TargetingService(repository, settings=settings, sink=sink)


def readiness_statuses(values: Iterable[str]) -> List[ReadinessStatus]:
    try:
        return [ReadinessStatus(value.upper()) for value in values]
    except ValueError as exc:
        raise InvalidCriteria(str(exc)) from exc


def status_counts(report: MonitorReport) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for result in report.results:
        counts[result.readiness_status.value] = counts.get(result.readiness_status.value, 0) + 1
    return counts
