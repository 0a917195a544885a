"""
Public API for the campaign targeting core.
"""
from __future__ import annotations

from targeting.clock import FixedClock, SystemClock
from targeting.errors import (
    InvalidCriteria,
    InvalidTransition,
    NotFound,
    PartialBatchFailure,
    RepositoryUnavailable,
    StaleGeneration,
    TargetingError,
)
from targeting.events import DedupingListener, Event, EventBus, EventType, RecordingSink
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
from targeting.repository import MemoryRepository
from targeting.schemas import AutoApprovalPolicy
from targeting.service import TargetingService, create_service
from targeting.settings import TargetingSettings, load_settings
from targeting.store import SqlRepository

__all__ = [
    "AutoApprovalPolicy",
    "Campaign",
    "CampaignStatus",
    "DedupingListener",
    "Event",
    "EventBus",
    "EventType",
    "FixedClock",
    "InvalidCriteria",
    "InvalidTransition",
    "MediaOpportunity",
    "MemoryRepository",
    "NewsItem",
    "NotFound",
    "OpportunityStatus",
    "PartialBatchFailure",
    "ReadinessStatus",
    "RecordingSink",
    "RepositoryUnavailable",
    "SqlRepository",
    "StaleGeneration",
    "SystemClock",
    "TargetingCriteria",
    "TargetingError",
    "TargetingService",
    "TargetingSettings",
    "Tier",
    "create_service",
    "load_settings",
]
