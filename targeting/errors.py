"""
Typed errors raised by the targeting core.
"""
from __future__ import annotations

from typing import List, Optional


class TargetingError(Exception):
    """Base typed exception for targeting domain/service errors."""


class InvalidCriteria(TargetingError):
    pass


class InvalidTransition(TargetingError):
    def __init__(self, message: str, *, opportunity_id: Optional[str] = None, current_status: Optional[str] = None):
        super().__init__(message)
        self.opportunity_id = opportunity_id
        self.current_status = current_status


class NotFound(TargetingError):
    pass


class RepositoryUnavailable(TargetingError):
    pass


class StaleGeneration(TargetingError):
    """A write carried a criteria generation that has since been superseded."""

    def __init__(self, campaign_id: str, expected: int, current: int):
        super().__init__(f"Campaign {campaign_id} criteria generation {expected} superseded by {current}")
        self.campaign_id = campaign_id
        self.expected = expected
        self.current = current


class PartialBatchFailure(TargetingError):
    def __init__(self, failures: List[object]):
        super().__init__(f"{len(failures)} item(s) failed in batch")
        self.failures = failures
