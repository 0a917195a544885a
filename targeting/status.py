"""
Status payload for the targeting core, for dashboards and the `status` command.

Kept light-weight: configuration and recent bus activity only, no campaign data.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from targeting.events import EventBus
from targeting.payloads import event_to_dict
from targeting.service import TargetingService


def build_status(service: TargetingService, recent_limit: int = 10) -> Dict[str, Any]:
    settings = service.settings
    weights = settings.weights
    recent = service.sink.recent(recent_limit) if isinstance(service.sink, EventBus) else []
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "repository": type(service.repository).__name__,
        "scoring": {
            "weights": {
                "relevance": weights.relevance,
                "visibility": weights.visibility,
                "freshness": weights.freshness,
            },
            "notable_threshold": settings.notable_threshold,
            "known_outlets": len(service.scorer.outlets),
        },
        "monitor": {
            "concurrency": settings.monitor_concurrency,
            "timeout_seconds": settings.monitor_timeout_seconds,
            "interval_minutes": settings.monitor_interval_minutes,
        },
        "config": {
            "db_path": str(settings.db_path),
            "outlets_path": str(settings.outlets_path),
            "min_approved_matches": settings.min_approved_matches,
            "rematch_lookback_hours": settings.rematch_lookback_hours,
            "read_retries": settings.read_retries,
        },
        "recent_events": [event_to_dict(event) for event in recent],
    }
