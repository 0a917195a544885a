import unittest
from datetime import datetime, timedelta, timezone

from targeting.clock import FixedClock
from targeting.errors import InvalidCriteria, InvalidTransition, NotFound, PartialBatchFailure, RepositoryUnavailable
from targeting.events import EventType, RecordingSink
from targeting.models import (
    Campaign,
    CampaignStatus,
    NewsItem,
    OpportunityStatus,
    ReadinessStatus,
    TargetingCriteria,
    Tier,
)
from targeting.outlets import OutletDirectory
from targeting.repository import MemoryRepository
from targeting.scoring import OpportunityScorer
from targeting.service import TargetingService
from targeting.settings import load_settings

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
ORG = "org-1"


def _item(item_id, title, source="Reuters", hours_ago=2, **extra) -> NewsItem:
    return NewsItem(
        id=item_id,
        title=title,
        url=f"https://example.com/{item_id}",
        source=source,
        published_at=NOW - timedelta(hours=hours_ago),
        **extra,
    )


class BrokenItemRepository(MemoryRepository):
    """Fails every write for one news item."""

    def __init__(self, broken_item):
        super().__init__()
        self.broken_item = broken_item

    def upsert_opportunity(self, opportunity, *, generation=None):
        if opportunity.news_item_id == self.broken_item:
            raise RepositoryUnavailable("disk I/O error")
        return super().upsert_opportunity(opportunity, generation=generation)


class TargetingServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FixedClock(NOW)
        self.repo = MemoryRepository()
        self.sink = RecordingSink()
        outlets = OutletDirectory(tiers={"Reuters": Tier.A, "The Verge": Tier.B, "Medium": Tier.C})
        self.service = TargetingService(
            self.repo,
            settings=load_settings(),
            sink=self.sink,
            clock=self.clock,
            scorer=OpportunityScorer(outlets=outlets, clock=self.clock),
        )
        self.repo.add_campaign(
            Campaign(id="camp-ai", organization_id=ORG, name="AI launch", min_matches_required=2),
            TargetingCriteria(keywords=["AI", "funding"]),
        )

    def tearDown(self) -> None:
        self.service.close()

    def test_score_and_upsert_creates_once(self):
        item = _item("n1", "Startup raises AI funding round")

        record = self.service.score_and_upsert_opportunity(item, "camp-ai", ORG)
        again = self.service.score_and_upsert_opportunity(item, "camp-ai", ORG)

        self.assertEqual(record.status, OpportunityStatus.NEW)
        self.assertGreaterEqual(record.opportunity_score, 0.8)
        self.assertEqual(again.id, record.id)
        self.assertEqual(len(self.repo.list_opportunities(ORG, "camp-ai")), 1)
        self.assertEqual(len(self.sink.of_type(EventType.OPPORTUNITY_CREATED)), 1)
        self.assertEqual(self.repo.list_news_items(ORG), [item])

    def test_non_matching_item_returns_none(self):
        self.assertIsNone(self.service.score_and_upsert_opportunity(_item("n2", "Sports roundup"), "camp-ai", ORG))
        self.assertEqual(self.repo.list_opportunities(ORG, "camp-ai"), [])

    def test_campaign_without_criteria_is_rejected(self):
        self.repo.add_campaign(Campaign(id="camp-empty", organization_id=ORG))
        with self.assertRaises(InvalidCriteria):
            self.service.score_and_upsert_opportunity(_item("n3", "AI news"), "camp-empty", ORG)
        with self.assertRaises(NotFound):
            self.service.score_and_upsert_opportunity(_item("n3", "AI news"), "camp-missing", ORG)

    def test_transition_opportunity(self):
        record = self.service.score_and_upsert_opportunity(_item("n1", "AI funding surges"), "camp-ai", ORG)

        reviewed = self.service.transition_opportunity(record.id, ORG, "review")
        self.assertEqual(reviewed.status, OpportunityStatus.REVIEWED)
        added = self.service.transition_opportunity(record.id, ORG, "add")
        self.assertEqual(added.status, OpportunityStatus.ADDED_TO_CAMPAIGN)
        with self.assertRaises(InvalidTransition):
            self.service.transition_opportunity(record.id, ORG, "dismiss")

        events = self.sink.of_type(EventType.OPPORTUNITY_TRANSITIONED)
        self.assertEqual([e.payload["to_status"] for e in events], ["REVIEWED", "ADDED_TO_CAMPAIGN"])
        # Reaching a terminal state refreshes the recorded readiness.
        self.assertEqual(
            self.repo.get_campaign(ORG, "camp-ai").readiness_status, ReadinessStatus.INSUFFICIENT_MATCHES
        )
        with self.assertRaises(NotFound):
            self.service.transition_opportunity("missing", ORG, "review")

    def test_scan_scores_against_every_active_campaign(self):
        self.repo.add_campaign(
            Campaign(id="camp-climate", organization_id=ORG), TargetingCriteria(keywords=["climate"])
        )
        self.repo.add_campaign(
            Campaign(id="camp-paused", organization_id=ORG, status=CampaignStatus.PAUSED),
            TargetingCriteria(keywords=["AI"]),
        )
        self.repo.add_campaign(Campaign(id="camp-blank", organization_id=ORG))
        items = [
            _item("n1", "Startup raises AI funding round"),
            _item("n2", "Climate policy shifts energy markets", source="The Verge"),
            _item("n1", "Startup raises AI funding round"),
            _item("n3", "Local sports roundup"),
        ]

        report = self.service.scan_news_items(items, ORG)

        self.assertEqual(report.scanned, 3)
        self.assertFalse(report.partial)
        self.assertEqual(
            [(m.campaign_id, m.news_item_id) for m in report.opportunities],
            [("camp-ai", "n1"), ("camp-climate", "n2")],
        )
        self.assertEqual(self.repo.list_opportunities(ORG, "camp-paused"), [])
        self.assertEqual(len(self.repo.list_news_items(ORG)), 3)

    def test_scan_isolates_a_failing_item(self):
        repo = BrokenItemRepository(broken_item="bad")
        service = TargetingService(
            repo,
            settings=load_settings(),
            clock=self.clock,
            scorer=OpportunityScorer(outlets=OutletDirectory(tiers={"Reuters": Tier.A}), clock=self.clock),
        )
        self.addCleanup(service.close)
        repo.add_campaign(Campaign(id="camp-ai", organization_id=ORG), TargetingCriteria(keywords=["AI"]))
        items = [_item("a", "AI chip launch"), _item("bad", "AI lab layoffs"), _item("z", "AI policy draft")]

        with self.assertLogs("targeting.service", level="WARNING"):
            report = service.scan_news_items(items, ORG)

        self.assertEqual([m.news_item_id for m in report.opportunities], ["a", "z"])
        self.assertEqual(
            sorted(r.news_item_id for r in repo.list_opportunities(ORG, "camp-ai")), ["a", "z"]
        )
        self.assertEqual(len(report.failures), 1)
        failure = report.failures[0]
        self.assertEqual((failure.campaign_id, failure.news_item_id), ("camp-ai", "bad"))
        self.assertEqual(failure.error_type, "RepositoryUnavailable")
        self.assertTrue(report.partial)
        with self.assertRaises(PartialBatchFailure):
            report.raise_for_failures()

    def test_auto_approve_accepts_dict_policy_and_refreshes_readiness(self):
        for idx, title in enumerate(["AI funding soars", "AI startup funding", "Funding for AI labs"]):
            self.service.score_and_upsert_opportunity(_item(f"n{idx}", title, hours_ago=idx + 1), "camp-ai", ORG)

        dry = self.service.auto_approve_matches("camp-ai", ORG, {"min_score": 0.7, "max_count": 2, "dry_run": True})
        real = self.service.auto_approve_matches("camp-ai", ORG, {"min_score": 0.7, "max_count": 2})

        self.assertEqual(dry.match_ids, real.match_ids)
        self.assertEqual(real.approved, 2)
        readiness = self.repo.get_campaign(ORG, "camp-ai").readiness_status
        self.assertEqual(readiness, ReadinessStatus.NEEDS_REVIEW)
        with self.assertRaises(InvalidCriteria):
            self.service.auto_approve_matches("camp-ai", ORG, {"min_tier": "Z"})

    def test_invalid_criteria_are_never_applied(self):
        with self.assertRaises(InvalidCriteria):
            self.service.update_targeting_criteria("camp-ai", ORG, {"keywords": ["AI"], "min_relevance": 3})
        self.assertEqual(self.repo.criteria_generation(ORG, "camp-ai"), 1)
        self.assertEqual(self.sink.of_type(EventType.CRITERIA_UPDATED), [])

    def test_readiness_operations_agree(self):
        record = self.service.score_and_upsert_opportunity(_item("n1", "AI funding surges"), "camp-ai", ORG)
        self.service.transition_opportunity(record.id, ORG, "add")
        second = self.service.score_and_upsert_opportunity(_item("n2", "New AI funding fund"), "camp-ai", ORG)
        self.service.transition_opportunity(second.id, ORG, "add")

        result = self.service.calculate_readiness("camp-ai", ORG)
        check = self.service.can_execute_campaign("camp-ai", ORG)
        recommendations = self.service.get_recommendations("camp-ai", ORG)
        summary = self.service.get_targeting_summary("camp-ai", ORG)

        self.assertEqual(result.readiness_status, ReadinessStatus.READY)
        self.assertTrue(check.can_execute)
        self.assertIn("Campaign is ready for execution", recommendations.suggestions)
        self.assertEqual(summary.status_counts[OpportunityStatus.ADDED_TO_CAMPAIGN], 2)
        self.assertEqual(summary.readiness_status, ReadinessStatus.READY)

        report = self.service.monitor_campaigns_readiness(ORG)
        self.assertEqual([r.campaign_id for r in report.results], ["camp-ai"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
