"""
Deduplication helpers for opportunities and incoming news batches.
"""
from __future__ import annotations

import hashlib
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Hashable, Iterable, List, Optional, TypeVar

from targeting.models import MediaOpportunity

T = TypeVar("T")


def opportunity_id(organization_id: str, campaign_id: str, news_item_id: str) -> str:
    # Stable per (organization, campaign, news item) so rescans hit the same row.
    key = "\x1f".join((organization_id, campaign_id, news_item_id or ""))
    return hashlib.blake2b(key.encode("utf-8"), digest_size=12).hexdigest()


def unique_by(items: Iterable[T], key: Callable[[T], Hashable]) -> List[T]:
    """First occurrence of each key wins; input order is kept."""
    first: Dict[Hashable, T] = {}
    for item in items:
        first.setdefault(key(item), item)
    return list(first.values())


def merge_rescored(existing: MediaOpportunity, fresh: MediaOpportunity, now: datetime) -> Optional[MediaOpportunity]:
    """
    Fold a fresh scoring of the same news item into the stored record.

    Returns None when nothing should be written: terminal records are never
    rescored and identical scores leave the record (and `updated_at`) untouched. Status, id and
    `created_at` always come from the stored record.
    """
    if existing.status.is_terminal:
        return None
    if existing.same_scores(fresh):
        return None
    return replace(
        existing,
        title=fresh.title,
        source=fresh.source,
        url=fresh.url,
        published_at=fresh.published_at,
        relevance=fresh.relevance,
        visibility=fresh.visibility,
        freshness=fresh.freshness,
        opportunity_score=fresh.opportunity_score,
        tier=fresh.tier,
        match_reasons=list(fresh.match_reasons),
        keywords=list(fresh.keywords),
        updated_at=now,
    )
