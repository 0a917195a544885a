"""
Operator CLI over the SQLite-backed targeting core.
"""
from __future__ import annotations

import functools
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

import click
from dotenv import load_dotenv

from targeting.errors import TargetingError
from targeting.events import EventBus
from targeting.models import Campaign, CampaignStatus, Tier, TransitionAction
from targeting.payloads import (
    approval_to_dict,
    check_to_dict,
    news_item_from_dict,
    opportunity_to_dict,
    readiness_to_dict,
    recommendations_to_dict,
    report_to_dict,
    scan_report_to_dict,
    summary_to_dict,
)
from targeting.service import TargetingService, create_service, readiness_statuses, status_counts
from targeting.settings import load_settings
from targeting.status import build_status

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def handle_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TargetingError as exc:
            raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc

    return wrapper


def _service(ctx: click.Context) -> TargetingService:
    return ctx.obj["service"]


@click.group()
@click.option("--db-path", type=click.Path(dir_okay=False, path_type=Path), default=None, help="SQLite file.")
@click.pass_context
def cli(ctx: click.Context, db_path: Optional[Path]):
    load_dotenv(os.getenv("TARGETING_DOTENV", ".env"))
    settings = load_settings()
    if db_path is not None:
        settings.db_path = db_path
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    service = create_service(settings, sink=EventBus())
    ctx.obj = {"service": service}
    ctx.call_on_close(service.close)


@cli.command("add-campaign")
@click.argument("campaign_id")
@click.option("--org", "organization_id", required=True)
@click.option("--name", default="")
@click.option("--min-matches", type=int, default=None, help="Approved matches needed to execute.")
@click.option("--status", type=click.Choice([s.value for s in CampaignStatus], case_sensitive=False), default="ACTIVE")
@click.pass_context
@handle_errors
def add_campaign(ctx, campaign_id: str, organization_id: str, name: str, min_matches: Optional[int], status: str):
    service = _service(ctx)
    campaign = Campaign(
        id=campaign_id,
        organization_id=organization_id,
        name=name or campaign_id,
        status=CampaignStatus(status.upper()),
        min_matches_required=min_matches or service.settings.min_approved_matches,
    )
    service.repository.add_campaign(campaign)
    _echo({"campaign_id": campaign.id, "organization_id": organization_id, "status": campaign.status.value})


@cli.command("set-criteria")
@click.argument("campaign_id")
@click.option("--org", "organization_id", required=True)
@click.option("--keyword", "keywords", multiple=True)
@click.option("--topic", "topics", multiple=True)
@click.option("--tier", "tiers", multiple=True, type=click.Choice([t.value for t in Tier], case_sensitive=False))
@click.option("--region", "regions", multiple=True)
@click.option("--min-relevance", type=float, default=0.1)
@click.option("--window-hours", type=float, default=48.0)
@click.option("--min-tier-a", type=int, default=1)
@click.option("--rematch/--no-rematch", default=False)
@click.pass_context
@handle_errors
def set_criteria(ctx, campaign_id, organization_id, keywords, topics, tiers, regions, min_relevance, window_hours, min_tier_a, rematch):
    _service(ctx).update_targeting_criteria(
        campaign_id,
        organization_id,
        {
            "keywords": list(keywords),
            "topics": list(topics),
            "outlet_tiers": [tier.upper() for tier in tiers],
            "regions": list(regions),
            "min_relevance": min_relevance,
            "freshness_window_hours": window_hours,
            "min_tier_a_matches": min_tier_a,
        },
        trigger_rematch=rematch,
    )
    _echo({"campaign_id": campaign_id, "updated": True, "rematch": rematch})


@cli.command()
@click.argument("items_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--org", "organization_id", required=True)
@click.option("--strict", is_flag=True, help="Exit non-zero when any item or campaign failed.")
@click.pass_context
@handle_errors
def scan(ctx, items_file: Path, organization_id: str, strict: bool):
    """Score a JSON list of news items against every active campaign."""
    raw = json.loads(items_file.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("items") or []
    items = [news_item_from_dict(entry) for entry in raw if isinstance(entry, dict)]
    report = _service(ctx).scan_news_items(items, organization_id)
    _echo(scan_report_to_dict(report))
    if strict:
        report.raise_for_failures()


@cli.command()
@click.argument("campaign_id")
@click.option("--org", "organization_id", required=True)
@click.pass_context
@handle_errors
def readiness(ctx, campaign_id: str, organization_id: str):
    _echo(readiness_to_dict(_service(ctx).calculate_readiness(campaign_id, organization_id)))


@cli.command()
@click.argument("campaign_id")
@click.option("--org", "organization_id", required=True)
@click.pass_context
@handle_errors
def summary(ctx, campaign_id: str, organization_id: str):
    _echo(summary_to_dict(_service(ctx).get_targeting_summary(campaign_id, organization_id)))


@cli.command()
@click.argument("campaign_id")
@click.option("--org", "organization_id", required=True)
@click.pass_context
@handle_errors
def recommendations(ctx, campaign_id: str, organization_id: str):
    _echo(recommendations_to_dict(_service(ctx).get_recommendations(campaign_id, organization_id)))


@cli.command("can-execute")
@click.argument("campaign_id")
@click.option("--org", "organization_id", required=True)
@click.pass_context
@handle_errors
def can_execute(ctx, campaign_id: str, organization_id: str):
    check = _service(ctx).can_execute_campaign(campaign_id, organization_id)
    _echo(check_to_dict(check))
    if not check.can_execute:
        ctx.exit(2)


@cli.command()
@click.option("--org", "organization_id", required=True)
@click.option("--status", "statuses", multiple=True, help="Only campaigns whose last readiness is one of these.")
@click.option("--strict", is_flag=True, help="Exit non-zero when any campaign failed.")
@click.pass_context
@handle_errors
def monitor(ctx, organization_id: str, statuses, strict: bool):
    report = _service(ctx).monitor_campaigns_readiness(organization_id, readiness_statuses(statuses) or None)
    payload = report_to_dict(report)
    payload["status_counts"] = status_counts(report)
    _echo(payload)
    if strict:
        report.raise_for_failures()


@cli.command("auto-approve")
@click.argument("campaign_id")
@click.option("--org", "organization_id", required=True)
@click.option("--min-score", type=float, default=0.7)
@click.option("--min-tier", type=click.Choice([t.value for t in Tier], case_sensitive=False), default="B")
@click.option("--max-count", type=int, default=None)
@click.option("--dry-run", is_flag=True)
@click.pass_context
@handle_errors
def auto_approve(ctx, campaign_id, organization_id, min_score, min_tier, max_count, dry_run):
    result = _service(ctx).auto_approve_matches(
        campaign_id,
        organization_id,
        {"min_score": min_score, "min_tier": min_tier.upper(), "max_count": max_count, "dry_run": dry_run},
    )
    _echo(approval_to_dict(result))


@cli.command()
@click.argument("opportunity_id")
@click.argument("action", type=click.Choice([a.value for a in TransitionAction], case_sensitive=False))
@click.option("--org", "organization_id", required=True)
@click.pass_context
@handle_errors
def transition(ctx, opportunity_id: str, action: str, organization_id: str):
    _echo(opportunity_to_dict(_service(ctx).transition_opportunity(opportunity_id, organization_id, action)))


@cli.command()
@click.pass_context
def status(ctx):
    _echo(build_status(_service(ctx)))


@cli.command()
@click.option("--org", "organization_ids", multiple=True, required=True)
@click.option("--interval", "interval_minutes", type=int, default=None, help="Minutes between runs.")
@click.pass_context
def watch(ctx, organization_ids, interval_minutes: Optional[int]):
    """Run the readiness monitor on an interval until interrupted."""
    from targeting.scheduler import run_scheduler

    def report_summary(report):
        logger.info(
            "Organization %s: %s", report.organization_id, json.dumps(status_counts(report), ensure_ascii=False)
        )

    run_scheduler(_service(ctx), organization_ids, interval_minutes, on_report=report_summary)


if __name__ == "__main__":  # pragma: no cover
    cli()
