"""
Opportunity review lifecycle: a status enum plus one explicit transition table.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional

from targeting.clock import ensure_utc
from targeting.errors import InvalidTransition
from targeting.models import MediaOpportunity, OpportunityStatus, TransitionAction

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: Dict[OpportunityStatus, FrozenSet[OpportunityStatus]] = {
    OpportunityStatus.NEW: frozenset(
        {OpportunityStatus.REVIEWED, OpportunityStatus.ADDED_TO_CAMPAIGN, OpportunityStatus.DISMISSED}
    ),
    OpportunityStatus.REVIEWED: frozenset({OpportunityStatus.ADDED_TO_CAMPAIGN, OpportunityStatus.DISMISSED}),
    OpportunityStatus.ADDED_TO_CAMPAIGN: frozenset(),
    OpportunityStatus.DISMISSED: frozenset(),
}

ACTION_TARGETS: Dict[TransitionAction, OpportunityStatus] = {
    TransitionAction.REVIEW: OpportunityStatus.REVIEWED,
    TransitionAction.ADD: OpportunityStatus.ADDED_TO_CAMPAIGN,
    TransitionAction.DISMISS: OpportunityStatus.DISMISSED,
}


def can_transition(current: OpportunityStatus, target: OpportunityStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def transition(
    opportunity: MediaOpportunity, target: OpportunityStatus, now: Optional[datetime] = None
) -> MediaOpportunity:
    """Return a copy moved to `target`; the input record is never modified."""
    if not can_transition(opportunity.status, target):
        logger.debug(
            "Rejected transition for opportunity %s: %s -> %s", opportunity.id, opportunity.status.value, target.value
        )
        raise InvalidTransition(
            f"Cannot move opportunity {opportunity.id} from {opportunity.status.value} to {target.value}",
            opportunity_id=opportunity.id,
            current_status=opportunity.status.value,
        )
    stamp = ensure_utc(now) if now else datetime.now(timezone.utc)
    return replace(opportunity, status=target, updated_at=stamp)


def mark_reviewed(opportunity: MediaOpportunity, now: Optional[datetime] = None) -> MediaOpportunity:
    return transition(opportunity, OpportunityStatus.REVIEWED, now)


def add_to_campaign(opportunity: MediaOpportunity, now: Optional[datetime] = None) -> MediaOpportunity:
    return transition(opportunity, OpportunityStatus.ADDED_TO_CAMPAIGN, now)


def dismiss(opportunity: MediaOpportunity, now: Optional[datetime] = None) -> MediaOpportunity:
    return transition(opportunity, OpportunityStatus.DISMISSED, now)


def apply_action(
    opportunity: MediaOpportunity, action: TransitionAction | str, now: Optional[datetime] = None
) -> MediaOpportunity:
    try:
        resolved = action if isinstance(action, TransitionAction) else TransitionAction(str(action).lower())
    except ValueError as exc:
        raise InvalidTransition(
            f"Unknown action '{action}'", opportunity_id=opportunity.id, current_status=opportunity.status.value
        ) from exc
    return transition(opportunity, ACTION_TARGETS[resolved], now)
