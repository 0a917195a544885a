"""
Background re-scoring of recent news items after a criteria update.

Each sweep carries the criteria generation it was started for. The repository
rejects any upsert whose generation is no longer current, so a sweep that has
been superseded by a newer update stops without writing stale opportunities.
"""
from __future__ import annotations

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Optional

from targeting.clock import Clock, SystemClock
from targeting.errors import StaleGeneration
from targeting.events import EventSink, EventType, NullSink, make_event
from targeting.models import TargetingCriteria
from targeting.repository import Repository
from targeting.retry import ReadRetry
from targeting.scoring import OpportunityScorer, build_opportunity

logger = logging.getLogger(__name__)


@dataclass
class RematchOutcome:
    campaign_id: str
    generation: int
    scanned: int = 0
    created: int = 0
    updated: int = 0
    superseded: bool = False


class RematchCoordinator:
    def __init__(
        self,
        repository: Repository,
        scorer: OpportunityScorer,
        sink: Optional[EventSink] = None,
        clock: Optional[Clock] = None,
        executor: Optional[Executor] = None,
        lookback_hours: int = 72,
        retry: Optional[ReadRetry] = None,
    ) -> None:
        self.repository = repository
        self.scorer = scorer
        self.sink = sink or NullSink()
        self.clock = clock or SystemClock()
        self.lookback = timedelta(hours=lookback_hours)
        self.retry = retry or ReadRetry()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="rematch")

    def schedule(
        self, organization_id: str, campaign_id: str, criteria: TargetingCriteria, generation: int
    ) -> "Future[RematchOutcome]":
        """Submit a sweep and return immediately; completion is signalled by a `rematch-completed` event."""
        future = self.executor.submit(self.run, organization_id, campaign_id, criteria, generation)
        future.add_done_callback(self._log_failure)
        return future

    def run(
        self, organization_id: str, campaign_id: str, criteria: TargetingCriteria, generation: int
    ) -> RematchOutcome:
        outcome = RematchOutcome(campaign_id=campaign_id, generation=generation)
        now = self.clock.now()
        items = self.retry(
            lambda: self.repository.list_news_items(organization_id, since=now - self.lookback),
            label=f"news window {organization_id}",
        )
        logger.info(
            "Rematch of campaign %s (generation %s) over %s news items", campaign_id, generation, len(items)
        )

        for item in items:
            outcome.scanned += 1
            score = self.scorer.score(item, criteria, now)
            if not self.scorer.is_match(item, score, criteria):
                continue
            opportunity = build_opportunity(
                item, score, criteria, campaign_id=campaign_id, organization_id=organization_id, now=now
            )
            try:
                stored, created, changed = self.repository.upsert_opportunity(opportunity, generation=generation)
            except StaleGeneration as exc:
                logger.warning("Rematch of campaign %s superseded: %s", campaign_id, exc)
                outcome.superseded = True
                break
            if created:
                outcome.created += 1
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
            elif changed:
                outcome.updated += 1

        logger.info(
            "Rematch of campaign %s finished: %s created, %s updated%s",
            campaign_id,
            outcome.created,
            outcome.updated,
            " (superseded)" if outcome.superseded else "",
        )
        self.sink.emit(
            make_event(
                EventType.REMATCH_COMPLETED,
                campaign_id=campaign_id,
                organization_id=organization_id,
                payload=asdict(outcome),
                at=self.clock.now(),
            )
        )
        return outcome

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=wait)

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Rematch sweep failed: %s", exc)
