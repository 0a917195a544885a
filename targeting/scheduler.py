"""
APScheduler entry point for periodic readiness monitoring.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from apscheduler.schedulers.blocking import BlockingScheduler

from targeting.models import MonitorReport
from targeting.service import TargetingService

logger = logging.getLogger(__name__)


def make_monitor_job(
    service: TargetingService,
    organization_ids: Iterable[str],
    on_report: Optional[Callable[[MonitorReport], None]] = None,
) -> Callable[[], None]:
    organizations = list(organization_ids)

    def job_monitor() -> None:
        # One organization failing must not stop the others from being checked.
        for organization_id in organizations:
            try:
                report = service.monitor_campaigns_readiness(organization_id)
            except Exception as exc:
                logger.error("Readiness monitor failed for organization %s: %s", organization_id, exc)
                continue
            if on_report is not None:
                on_report(report)

    return job_monitor


def run_scheduler(
    service: TargetingService,
    organization_ids: Iterable[str],
    interval_minutes: Optional[int] = None,
    on_report: Optional[Callable[[MonitorReport], None]] = None,
) -> None:
    minutes = interval_minutes or service.settings.monitor_interval_minutes
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        make_monitor_job(service, organization_ids, on_report),
        "interval",
        minutes=minutes,
        id="readiness_monitor",
        max_instances=1,
        coalesce=True,
    )
    logger.info("Readiness monitor scheduled every %s minutes", minutes)
    scheduler.start()
