"""
Plain-dict views of core results for the CLI and event consumers.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from targeting.clock import ensure_utc
from targeting.events import Event
from targeting.models import (
    AutoApprovalResult,
    CampaignFailure,
    CampaignReadinessResult,
    CampaignTargetingSummary,
    ExecutionCheck,
    MediaOpportunity,
    MonitorReport,
    NewsItem,
    Recommendations,
    ScanReport,
    TargetingCriteria,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def opportunity_to_dict(record: MediaOpportunity) -> Dict[str, Any]:
    return {
        "id": record.id,
        "organization_id": record.organization_id,
        "campaign_id": record.campaign_id,
        "news_item_id": record.news_item_id,
        "title": record.title,
        "source": record.source,
        "url": record.url,
        "published_at": _iso(record.published_at),
        "relevance": record.relevance,
        "visibility": record.visibility,
        "freshness": record.freshness,
        "opportunity_score": record.opportunity_score,
        "tier": record.tier.value,
        "match_reasons": list(record.match_reasons),
        "keywords": list(record.keywords),
        "status": record.status.value,
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }


def criteria_to_dict(criteria: Optional[TargetingCriteria]) -> Optional[Dict[str, Any]]:
    if criteria is None:
        return None
    return {
        "keywords": list(criteria.keywords),
        "topics": list(criteria.topics),
        "outlet_tiers": [tier.value for tier in criteria.outlet_tiers],
        "regions": list(criteria.regions),
        "min_relevance": criteria.min_relevance,
        "freshness_window_hours": criteria.freshness_window.total_seconds() / 3600.0,
        "min_tier_a_matches": criteria.min_tier_a_matches,
        "generation": criteria.generation,
    }


def recommendations_to_dict(recs: Recommendations) -> Dict[str, Any]:
    return {
        "critical": list(recs.critical),
        "important": list(recs.important),
        "suggestions": list(recs.suggestions),
    }


def readiness_to_dict(result: CampaignReadinessResult) -> Dict[str, Any]:
    return {
        "campaign_id": result.campaign_id,
        "organization_id": result.organization_id,
        "readiness_status": result.readiness_status.value,
        "readiness_score": result.readiness_score,
        "total_matches": result.total_matches,
        "approved_matches": result.approved_matches,
        "pending_matches": result.pending_matches,
        "dismissed_matches": result.dismissed_matches,
        "tier_counts": {tier.value: count for tier, count in result.tier_counts.items()},
        "approved_tier_a": result.approved_tier_a,
        "avg_match_score": result.avg_match_score,
        "blockers": list(result.blockers),
        "warnings": list(result.warnings),
        "recommendations": recommendations_to_dict(result.recommendations),
        "calculated_at": _iso(result.calculated_at),
    }


def summary_to_dict(summary: CampaignTargetingSummary) -> Dict[str, Any]:
    return {
        "campaign_id": summary.campaign_id,
        "campaign_name": summary.campaign_name,
        "campaign_status": summary.campaign_status.value,
        "criteria": criteria_to_dict(summary.criteria),
        "total_matches": summary.total_matches,
        "status_counts": {status.value: count for status, count in summary.status_counts.items()},
        "tier_counts": {tier.value: count for tier, count in summary.tier_counts.items()},
        "avg_match_score": summary.avg_match_score,
        "top_match_score": summary.top_match_score,
        "low_match_score": summary.low_match_score,
        "readiness_status": summary.readiness_status.value if summary.readiness_status else None,
        "last_matched_at": _iso(summary.last_matched_at),
        "last_approved_at": _iso(summary.last_approved_at),
    }


def check_to_dict(check: ExecutionCheck) -> Dict[str, Any]:
    return {"can_execute": check.can_execute, "blockers": list(check.blockers), "warnings": list(check.warnings)}


def approval_to_dict(result: AutoApprovalResult) -> Dict[str, Any]:
    return {
        "approved": result.approved,
        "skipped": result.skipped,
        "match_ids": list(result.match_ids),
        "dry_run": result.dry_run,
    }


def failure_to_dict(failure: CampaignFailure) -> Dict[str, Any]:
    data = {"campaign_id": failure.campaign_id, "error": failure.error, "error_type": failure.error_type}
    if failure.news_item_id is not None:
        data["news_item_id"] = failure.news_item_id
    return data


def report_to_dict(report: MonitorReport) -> Dict[str, Any]:
    return {
        "organization_id": report.organization_id,
        "partial": report.partial,
        "results": [readiness_to_dict(result) for result in report.results],
        "failures": [failure_to_dict(f) for f in report.failures],
    }


def scan_report_to_dict(report: ScanReport) -> Dict[str, Any]:
    return {
        "organization_id": report.organization_id,
        "scanned": report.scanned,
        "partial": report.partial,
        "opportunities": [opportunity_to_dict(record) for record in report.opportunities],
        "failures": [failure_to_dict(f) for f in report.failures],
    }


def event_to_dict(event: Event) -> Dict[str, Any]:
    return {
        "type": event.type.value,
        "campaign_id": event.campaign_id,
        "organization_id": event.organization_id,
        "payload": dict(event.payload),
        "timestamp": event.timestamp,
        "event_id": event.event_id,
    }


def news_item_from_dict(data: Mapping[str, Any]) -> NewsItem:
    """Build a NewsItem from a feed record; missing fields degrade to empty values."""
    published_at = data.get("published_at") or data.get("publishedAt")
    dt = None
    if isinstance(published_at, datetime):
        dt = ensure_utc(published_at)
    elif isinstance(published_at, str) and published_at.strip():
        dt = ensure_utc(datetime.fromisoformat(published_at.strip().replace("Z", "+00:00")))
    keywords = data.get("keywords") or []
    if isinstance(keywords, str):
        keywords = [keywords]
    return NewsItem(
        id=str(data.get("id") or data.get("url") or ""),
        title=str(data.get("title") or ""),
        description=str(data.get("description") or ""),
        url=str(data.get("url") or ""),
        source=str(data.get("source") or ""),
        published_at=dt,
        category=str(data.get("category") or ""),
        keywords=frozenset(str(k) for k in keywords),
        region=data.get("region"),
    )
