import tempfile
import threading
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

from targeting.errors import NotFound, StaleGeneration
from targeting.models import (
    Campaign,
    CampaignStatus,
    MediaOpportunity,
    NewsItem,
    OpportunityStatus,
    ReadinessStatus,
    TargetingCriteria,
    Tier,
)
from targeting.store import SqlRepository

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
ORG = "org-1"


def _opportunity(opp_id="opp-1", score=0.8, status=OpportunityStatus.NEW, campaign_id="camp-1"):
    return MediaOpportunity(
        id=opp_id,
        organization_id=ORG,
        campaign_id=campaign_id,
        news_item_id=f"news-{opp_id}",
        title="Startup raises AI funding round",
        source="Reuters",
        url="https://reuters.com/a",
        published_at=NOW - timedelta(hours=2),
        relevance=1.0,
        visibility=1.0,
        freshness=0.9583,
        opportunity_score=score,
        tier=Tier.A,
        match_reasons=["Relevant: headline mentions AI"],
        keywords=["AI"],
        status=status,
        created_at=NOW,
        updated_at=NOW,
    )


class InterleavingRepository(SqlRepository):
    """Runs `hook` once, between the campaign and criteria reads of a snapshot."""

    hook = None

    def _read_criteria(self, conn, organization_id, campaign_id):
        hook, self.hook = self.hook, None
        if hook is not None:
            hook()
        return super()._read_criteria(conn, organization_id, campaign_id)


class SqlRepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.repo = SqlRepository(Path(self._tmp.name) / "targeting.db")
        self.criteria = TargetingCriteria(
            keywords=["AI", "funding"],
            topics=["startups"],
            outlet_tiers=[Tier.A, Tier.B],
            regions=["US"],
            min_relevance=0.2,
            freshness_window=timedelta(hours=24),
            min_tier_a_matches=2,
        )
        self.repo.add_campaign(Campaign(id="camp-1", organization_id=ORG, name="Launch"), self.criteria)

    def tearDown(self) -> None:
        self.repo.engine.dispose()
        self._tmp.cleanup()

    def test_criteria_round_trip_and_generation(self):
        stored = self.repo.get_criteria(ORG, "camp-1")
        self.assertEqual(stored.keywords, ["AI", "funding"])
        self.assertEqual(stored.outlet_tiers, [Tier.A, Tier.B])
        self.assertEqual(stored.freshness_window, timedelta(hours=24))
        self.assertEqual(stored.min_tier_a_matches, 2)
        self.assertEqual(stored.generation, 1)

        generation = self.repo.update_criteria(ORG, "camp-1", TargetingCriteria(keywords=["climate"]))
        self.assertEqual(generation, 2)
        self.assertEqual(self.repo.criteria_generation(ORG, "camp-1"), 2)
        self.assertEqual(self.repo.get_criteria(ORG, "camp-1").keywords, ["climate"])

    def test_unknown_campaign_raises_not_found(self):
        with self.assertRaises(NotFound):
            self.repo.get_campaign(ORG, "missing")
        with self.assertRaises(NotFound):
            self.repo.update_criteria(ORG, "missing", self.criteria)
        with self.assertRaises(NotFound):
            self.repo.get_campaign("org-2", "camp-1")

    def test_upsert_is_idempotent_and_rescored_in_place(self):
        stored, created, changed = self.repo.upsert_opportunity(_opportunity())
        self.assertEqual((created, changed), (True, False))
        self.assertEqual(stored.published_at, NOW - timedelta(hours=2))

        _, created, changed = self.repo.upsert_opportunity(_opportunity())
        self.assertEqual((created, changed), (False, False))

        later = NOW + timedelta(hours=1)
        rescored = replace(_opportunity(score=0.7), freshness=0.9, created_at=later, updated_at=later)
        stored, created, changed = self.repo.upsert_opportunity(rescored)
        self.assertEqual((created, changed), (False, True))

        record = self.repo.get_opportunity(ORG, "opp-1")
        self.assertEqual(record.opportunity_score, 0.7)
        self.assertEqual(record.created_at, NOW)
        self.assertEqual(record.updated_at, later)
        self.assertEqual(record.match_reasons, ["Relevant: headline mentions AI"])
        self.assertEqual(len(self.repo.list_opportunities(ORG, "camp-1")), 1)

    def test_generation_guard_rejects_stale_writes(self):
        self.repo.update_criteria(ORG, "camp-1", TargetingCriteria(keywords=["climate"]))
        with self.assertRaises(StaleGeneration) as ctx:
            self.repo.upsert_opportunity(_opportunity(), generation=1)
        self.assertEqual((ctx.exception.expected, ctx.exception.current), (1, 2))
        self.assertEqual(self.repo.list_opportunities(ORG, "camp-1"), [])

        _, created, _ = self.repo.upsert_opportunity(_opportunity(), generation=2)
        self.assertTrue(created)

    def test_compare_and_set_has_one_winner(self):
        self.repo.upsert_opportunity(_opportunity())
        approved = replace(_opportunity(), status=OpportunityStatus.ADDED_TO_CAMPAIGN, updated_at=NOW + timedelta(1))
        dismissed = replace(_opportunity(), status=OpportunityStatus.DISMISSED)

        self.assertTrue(self.repo.compare_and_set_status(approved, expected=OpportunityStatus.NEW))
        self.assertFalse(self.repo.compare_and_set_status(dismissed, expected=OpportunityStatus.NEW))
        record = self.repo.get_opportunity(ORG, "opp-1")
        self.assertEqual(record.status, OpportunityStatus.ADDED_TO_CAMPAIGN)
        self.assertEqual(record.updated_at, NOW + timedelta(1))

        with self.assertRaises(NotFound):
            self.repo.compare_and_set_status(_opportunity("ghost"), expected=OpportunityStatus.NEW)

    def test_terminal_records_are_not_rescored(self):
        self.repo.upsert_opportunity(_opportunity(status=OpportunityStatus.DISMISSED))
        _, created, changed = self.repo.upsert_opportunity(_opportunity(score=0.2))
        self.assertEqual((created, changed), (False, False))
        self.assertEqual(self.repo.get_opportunity(ORG, "opp-1").opportunity_score, 0.8)

    def test_swap_readiness_returns_previous(self):
        self.assertIsNone(self.repo.swap_readiness(ORG, "camp-1", ReadinessStatus.NOT_READY, 0.1))
        previous = self.repo.swap_readiness(ORG, "camp-1", ReadinessStatus.READY, 0.82)
        self.assertEqual(previous, ReadinessStatus.NOT_READY)
        campaign = self.repo.get_campaign(ORG, "camp-1")
        self.assertEqual(campaign.readiness_status, ReadinessStatus.READY)
        self.assertAlmostEqual(campaign.readiness_score, 0.82)
        with self.assertRaises(NotFound):
            self.repo.swap_readiness(ORG, "missing", ReadinessStatus.READY, 1.0)

    def test_list_campaigns_filters(self):
        self.repo.add_campaign(Campaign(id="camp-2", organization_id=ORG, status=CampaignStatus.PAUSED))
        self.repo.add_campaign(Campaign(id="camp-3", organization_id="org-2"))
        self.repo.swap_readiness(ORG, "camp-1", ReadinessStatus.READY, 0.9)

        self.assertEqual([c.id for c in self.repo.list_campaigns(ORG)], ["camp-1", "camp-2"])
        self.assertEqual(
            [c.id for c in self.repo.list_campaigns(ORG, statuses=[CampaignStatus.ACTIVE])], ["camp-1"]
        )
        self.assertEqual(
            [c.id for c in self.repo.list_campaigns(ORG, readiness=[ReadinessStatus.NOT_READY])], []
        )

    def test_news_items_window(self):
        recent = NewsItem(
            id="recent",
            title="AI",
            published_at=NOW - timedelta(hours=1),
            keywords=frozenset({"ai"}),
            region="US",
        )
        old = NewsItem(id="old", title="AI", published_at=NOW - timedelta(days=5))
        self.repo.save_news_item(ORG, recent)
        self.repo.save_news_item(ORG, old)
        self.repo.save_news_item(ORG, recent)

        window = self.repo.list_news_items(ORG, since=NOW - timedelta(hours=72))
        self.assertEqual([item.id for item in window], ["recent"])
        self.assertEqual(window[0], recent)
        self.assertEqual(len(self.repo.list_news_items(ORG)), 2)
        self.assertEqual(self.repo.list_news_items("org-2"), [])

    def test_snapshot_reads_everything_at_once(self):
        self.repo.upsert_opportunity(_opportunity("opp-1"))
        self.repo.upsert_opportunity(_opportunity("opp-2", score=0.6))
        snapshot = self.repo.load_snapshot(ORG, "camp-1")
        self.assertEqual(snapshot.campaign.name, "Launch")
        self.assertEqual(snapshot.criteria.generation, 1)
        self.assertEqual([r.id for r in snapshot.opportunities], ["opp-1", "opp-2"])


    def test_concurrent_first_upserts_create_once(self):
        for round_no in range(20):
            opportunity = _opportunity(f"race-{round_no}")
            barrier = threading.Barrier(2)
            created, errors = [], []

            def upsert():
                barrier.wait()
                try:
                    created.append(self.repo.upsert_opportunity(opportunity)[1])
                except Exception as exc:
                    errors.append(exc)

            threads = [threading.Thread(target=upsert) for _ in range(2)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(10)

            self.assertEqual(errors, [])
            self.assertEqual(sorted(created), [False, True])
        self.assertEqual(len(self.repo.list_opportunities(ORG, "camp-1")), 20)

    def test_snapshot_ignores_writes_committed_while_reading(self):
        self.repo.engine.dispose()
        self.repo = InterleavingRepository(Path(self._tmp.name) / "targeting.db")
        self.repo.upsert_opportunity(_opportunity())
        approved = replace(_opportunity(), status=OpportunityStatus.ADDED_TO_CAMPAIGN)
        outcome = []
        writer = threading.Thread(
            target=lambda: outcome.append(self.repo.compare_and_set_status(approved, OpportunityStatus.NEW))
        )

        def write_mid_snapshot():
            writer.start()
            writer.join(0.3)

        self.repo.hook = write_mid_snapshot
        snapshot = self.repo.load_snapshot(ORG, "camp-1")
        writer.join(10)

        self.assertEqual([r.status for r in snapshot.opportunities], [OpportunityStatus.NEW])
        self.assertEqual(outcome, [True])
        self.assertEqual(self.repo.get_opportunity(ORG, "opp-1").status, OpportunityStatus.ADDED_TO_CAMPAIGN)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
