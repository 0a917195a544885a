import unittest
from datetime import datetime, timedelta, timezone

from targeting.errors import InvalidTransition
from targeting.lifecycle import (
    VALID_TRANSITIONS,
    add_to_campaign,
    apply_action,
    can_transition,
    dismiss,
    mark_reviewed,
    transition,
)
from targeting.models import MediaOpportunity, OpportunityStatus, Tier, TransitionAction

CREATED = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
LATER = CREATED + timedelta(hours=3)

ALLOWED = {
    (OpportunityStatus.NEW, OpportunityStatus.REVIEWED),
    (OpportunityStatus.NEW, OpportunityStatus.ADDED_TO_CAMPAIGN),
    (OpportunityStatus.NEW, OpportunityStatus.DISMISSED),
    (OpportunityStatus.REVIEWED, OpportunityStatus.ADDED_TO_CAMPAIGN),
    (OpportunityStatus.REVIEWED, OpportunityStatus.DISMISSED),
}


def _record(status: OpportunityStatus = OpportunityStatus.NEW) -> MediaOpportunity:
    return MediaOpportunity(
        id="opp-1",
        organization_id="org-1",
        campaign_id="camp-1",
        news_item_id="news-1",
        title="Startup raises AI funding round",
        source="Reuters",
        url="https://reuters.com/a",
        published_at=CREATED,
        relevance=1.0,
        visibility=1.0,
        freshness=0.9,
        opportunity_score=0.98,
        tier=Tier.A,
        match_reasons=["Relevant: headline mentions AI"],
        keywords=["AI"],
        status=status,
        created_at=CREATED,
        updated_at=CREATED,
    )


class TransitionTableTests(unittest.TestCase):
    def test_table_matches_allowed_pairs(self):
        for current in OpportunityStatus:
            for target in OpportunityStatus:
                with self.subTest(current=current.value, target=target.value):
                    self.assertEqual(can_transition(current, target), (current, target) in ALLOWED)
                    record = _record(current)
                    if (current, target) in ALLOWED:
                        moved = transition(record, target, LATER)
                        self.assertEqual(moved.status, target)
                        self.assertEqual(moved.updated_at, LATER)
                    else:
                        with self.assertRaises(InvalidTransition):
                            transition(record, target, LATER)

    def test_terminal_states_are_absorbing(self):
        for terminal in (OpportunityStatus.ADDED_TO_CAMPAIGN, OpportunityStatus.DISMISSED):
            self.assertTrue(terminal.is_terminal)
            self.assertEqual(VALID_TRANSITIONS[terminal], frozenset())
            for op in (mark_reviewed, add_to_campaign, dismiss):
                with self.assertRaises(InvalidTransition) as ctx:
                    op(_record(terminal), LATER)
                self.assertEqual(ctx.exception.current_status, terminal.value)


class TransitionOperationTests(unittest.TestCase):
    def test_transition_leaves_input_untouched(self):
        record = _record()
        moved = mark_reviewed(record, LATER)
        self.assertEqual(record.status, OpportunityStatus.NEW)
        self.assertEqual(record.updated_at, CREATED)
        self.assertEqual(moved.status, OpportunityStatus.REVIEWED)
        self.assertEqual(moved.created_at, CREATED)

    def test_failed_transition_leaves_record_unchanged(self):
        record = _record(OpportunityStatus.DISMISSED)
        with self.assertRaises(InvalidTransition):
            add_to_campaign(record, LATER)
        self.assertEqual(record.status, OpportunityStatus.DISMISSED)
        self.assertEqual(record.updated_at, CREATED)

    def test_reviewed_can_be_added_directly(self):
        moved = add_to_campaign(_record(OpportunityStatus.REVIEWED), LATER)
        self.assertEqual(moved.status, OpportunityStatus.ADDED_TO_CAMPAIGN)

    def test_apply_action_accepts_names_and_enums(self):
        self.assertEqual(apply_action(_record(), "review", LATER).status, OpportunityStatus.REVIEWED)
        self.assertEqual(apply_action(_record(), "ADD", LATER).status, OpportunityStatus.ADDED_TO_CAMPAIGN)
        self.assertEqual(
            apply_action(_record(), TransitionAction.DISMISS, LATER).status, OpportunityStatus.DISMISSED
        )

    def test_apply_action_rejects_unknown_action(self):
        with self.assertRaises(InvalidTransition):
            apply_action(_record(), "archive", LATER)

    def test_naive_timestamps_are_treated_as_utc(self):
        moved = dismiss(_record(), datetime(2024, 5, 1, 12, 0))
        self.assertEqual(moved.updated_at.tzinfo, timezone.utc)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
