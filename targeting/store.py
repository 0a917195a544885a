"""
SQLite storage for campaigns, criteria, news items and opportunities.

Implements the `Repository` contract with SQLAlchemy Core. Conditional writes
go through single UPDATE statements whose WHERE clause carries the expected
state, so the row count tells the caller whether it won.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    and_,
    create_engine,
    event,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from targeting.dedupe import merge_rescored
from targeting.errors import NotFound, RepositoryUnavailable, StaleGeneration
from targeting.models import (
    Campaign,
    CampaignSnapshot,
    CampaignStatus,
    MediaOpportunity,
    NewsItem,
    OpportunityStatus,
    ReadinessStatus,
    TargetingCriteria,
    Tier,
)
from targeting.repository import UpsertResult

logger = logging.getLogger(__name__)

metadata = MetaData()

campaigns_table = Table(
    "campaigns",
    metadata,
    Column("organization_id", String, primary_key=True),
    Column("id", String, primary_key=True),
    Column("name", String),
    Column("status", String, index=True),
    Column("min_matches_required", Integer),
    Column("readiness_status", String, nullable=True),
    Column("readiness_score", Float, nullable=True),
)

criteria_table = Table(
    "targeting_criteria",
    metadata,
    Column("organization_id", String, primary_key=True),
    Column("campaign_id", String, primary_key=True),
    Column("payload", JSON),
    Column("generation", Integer),
)

news_table = Table(
    "news_items",
    metadata,
    Column("organization_id", String, primary_key=True),
    Column("id", String, primary_key=True),
    Column("title", String),
    Column("description", String),
    Column("url", String),
    Column("source", String),
    Column("published_at", DateTime, nullable=True, index=True),
    Column("category", String),
    Column("keywords", JSON),
    Column("region", String, nullable=True),
)

opportunities_table = Table(
    "opportunities",
    metadata,
    Column("organization_id", String, primary_key=True),
    Column("id", String, primary_key=True),
    Column("campaign_id", String, index=True),
    Column("news_item_id", String),
    Column("title", String),
    Column("source", String),
    Column("url", String),
    Column("published_at", DateTime, nullable=True),
    Column("relevance", Float),
    Column("visibility", Float),
    Column("freshness", Float),
    Column("opportunity_score", Float),
    Column("tier", String),
    Column("match_reasons", JSON),
    Column("keywords", JSON),
    Column("status", String, index=True),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)


class SqlRepository:
    def __init__(self, db_path: str | Path = "targeting_data.db", engine: Optional[Engine] = None) -> None:
        if engine is None:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(f"sqlite:///{db_path}", future=True, connect_args={"timeout": 15})
        self.engine = engine
        _enable_transactions(self.engine)
        metadata.create_all(self.engine)

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                conn.execution_options(sqlite_begin="BEGIN IMMEDIATE" if write else "BEGIN")
                with conn.begin():
                    yield conn
        except IntegrityError:
            raise
        except (OperationalError, DBAPIError) as exc:
            logger.error("Repository call failed: %s", exc)
            raise RepositoryUnavailable(str(exc)) from exc

    def add_campaign(self, campaign: Campaign, criteria: Optional[TargetingCriteria] = None) -> Campaign:
        with self._transaction(write=True) as conn:
            stmt = insert(campaigns_table).values(**_campaign_to_row(campaign))
            stmt = stmt.on_conflict_do_update(
                index_elements=["organization_id", "id"],
                set_={
                    "name": stmt.excluded.name,
                    "status": stmt.excluded.status,
                    "min_matches_required": stmt.excluded.min_matches_required,
                },
            )
            conn.execute(stmt)
            if criteria is not None:
                self._write_criteria(conn, campaign.organization_id, campaign.id, criteria)
        return campaign

    def get_campaign(self, organization_id: str, campaign_id: str) -> Campaign:
        with self._transaction() as conn:
            return self._require_campaign(conn, organization_id, campaign_id)

    def list_campaigns(
        self,
        organization_id: str,
        statuses: Optional[Iterable[CampaignStatus]] = None,
        readiness: Optional[Iterable[ReadinessStatus]] = None,
    ) -> List[Campaign]:
        query = select(campaigns_table).where(campaigns_table.c.organization_id == organization_id)
        if statuses:
            query = query.where(campaigns_table.c.status.in_([s.value for s in statuses]))
        if readiness:
            query = query.where(campaigns_table.c.readiness_status.in_([r.value for r in readiness]))
        with self._transaction() as conn:
            rows = conn.execute(query.order_by(campaigns_table.c.id)).mappings().all()
        return [_row_to_campaign(row) for row in rows]

    def get_criteria(self, organization_id: str, campaign_id: str) -> Optional[TargetingCriteria]:
        with self._transaction() as conn:
            self._require_campaign(conn, organization_id, campaign_id)
            return self._read_criteria(conn, organization_id, campaign_id)

    def update_criteria(self, organization_id: str, campaign_id: str, criteria: TargetingCriteria) -> int:
        with self._transaction(write=True) as conn:
            self._require_campaign(conn, organization_id, campaign_id)
            return self._write_criteria(conn, organization_id, campaign_id, criteria)

    def criteria_generation(self, organization_id: str, campaign_id: str) -> int:
        with self._transaction() as conn:
            return self._generation(conn, organization_id, campaign_id)

    def save_news_item(self, organization_id: str, item: NewsItem) -> None:
        with self._transaction(write=True) as conn:
            stmt = insert(news_table).values(
                organization_id=organization_id,
                id=item.id,
                title=item.title,
                description=item.description,
                url=item.url,
                source=item.source,
                published_at=_to_db(item.published_at),
                category=item.category,
                keywords=sorted(item.keywords or ()),
                region=item.region,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["organization_id", "id"],
                set_={
                    "title": stmt.excluded.title,
                    "description": stmt.excluded.description,
                    "published_at": stmt.excluded.published_at,
                    "keywords": stmt.excluded.keywords,
                },
            )
            conn.execute(stmt)

    def list_news_items(self, organization_id: str, since: Optional[datetime] = None) -> List[NewsItem]:
        query = select(news_table).where(news_table.c.organization_id == organization_id)
        if since is not None:
            query = query.where(news_table.c.published_at >= _to_db(since))
        with self._transaction() as conn:
            rows = conn.execute(query.order_by(news_table.c.id)).mappings().all()
        return [_row_to_news_item(row) for row in rows]

    def get_opportunity(self, organization_id: str, opportunity_id: str) -> MediaOpportunity:
        with self._transaction() as conn:
            record = self._read_opportunity(conn, organization_id, opportunity_id)
        if record is None:
            raise NotFound(f"Opportunity {opportunity_id} not found")
        return record

    def list_opportunities(self, organization_id: str, campaign_id: str) -> List[MediaOpportunity]:
        with self._transaction() as conn:
            return self._campaign_opportunities(conn, organization_id, campaign_id)

    def upsert_opportunity(self, opportunity: MediaOpportunity, *, generation: Optional[int] = None) -> UpsertResult:
        org = opportunity.organization_id
        with self._transaction(write=True) as conn:
            self._require_campaign(conn, org, opportunity.campaign_id)
            if generation is not None:
                # The write lock is held from BEGIN IMMEDIATE, so the
                # generation cannot move before this transaction commits.
                touched = conn.execute(
                    update(criteria_table)
                    .where(
                        and_(
                            criteria_table.c.organization_id == org,
                            criteria_table.c.campaign_id == opportunity.campaign_id,
                            criteria_table.c.generation == generation,
                        )
                    )
                    .values(generation=criteria_table.c.generation)
                ).rowcount
                if touched != 1:
                    current = self._generation(conn, org, opportunity.campaign_id)
                    raise StaleGeneration(opportunity.campaign_id, generation, current)

            inserted = conn.execute(
                insert(opportunities_table)
                .values(**_opportunity_to_row(opportunity))
                .on_conflict_do_nothing(index_elements=["organization_id", "id"])
            ).rowcount
            if inserted == 1:
                return opportunity, True, False
            existing = self._read_opportunity(conn, org, opportunity.id)
            merged = merge_rescored(existing, opportunity, opportunity.updated_at)
            if merged is None:
                return existing, False, False
            row = _opportunity_to_row(merged)
            conn.execute(
                update(opportunities_table)
                .where(
                    and_(
                        opportunities_table.c.organization_id == org,
                        opportunities_table.c.id == merged.id,
                        opportunities_table.c.status == existing.status.value,
                    )
                )
                .values({k: v for k, v in row.items() if k not in ("organization_id", "id", "created_at")})
            )
            return merged, False, True

    def compare_and_set_status(self, updated: MediaOpportunity, expected: OpportunityStatus) -> bool:
        with self._transaction(write=True) as conn:
            result = conn.execute(
                update(opportunities_table)
                .where(
                    and_(
                        opportunities_table.c.organization_id == updated.organization_id,
                        opportunities_table.c.id == updated.id,
                        opportunities_table.c.status == expected.value,
                    )
                )
                .values(status=updated.status.value, updated_at=_to_db(updated.updated_at))
            )
            if result.rowcount == 1:
                return True
            if self._read_opportunity(conn, updated.organization_id, updated.id) is None:
                raise NotFound(f"Opportunity {updated.id} not found")
            return False

    def load_snapshot(self, organization_id: str, campaign_id: str) -> CampaignSnapshot:
        with self._transaction() as conn:
            campaign = self._require_campaign(conn, organization_id, campaign_id)
            return CampaignSnapshot(
                campaign=campaign,
                criteria=self._read_criteria(conn, organization_id, campaign_id),
                opportunities=self._campaign_opportunities(conn, organization_id, campaign_id),
            )

    def swap_readiness(
        self, organization_id: str, campaign_id: str, status: ReadinessStatus, score: float
    ) -> Optional[ReadinessStatus]:
        where = and_(
            campaigns_table.c.organization_id == organization_id,
            campaigns_table.c.id == campaign_id,
        )
        with self._transaction(write=True) as conn:
            touched = conn.execute(
                update(campaigns_table).where(where).values(readiness_status=campaigns_table.c.readiness_status)
            ).rowcount
            if touched != 1:
                raise NotFound(f"Campaign {campaign_id} not found for organization {organization_id}")
            previous = conn.execute(select(campaigns_table.c.readiness_status).where(where)).scalar_one_or_none()
            conn.execute(update(campaigns_table).where(where).values(readiness_status=status.value, readiness_score=score))
        return ReadinessStatus(previous) if previous else None

    def _require_campaign(self, conn: Connection, organization_id: str, campaign_id: str) -> Campaign:
        row = (
            conn.execute(
                select(campaigns_table).where(
                    and_(
                        campaigns_table.c.organization_id == organization_id,
                        campaigns_table.c.id == campaign_id,
                    )
                )
            )
            .mappings()
            .first()
        )
        if row is None:
            raise NotFound(f"Campaign {campaign_id} not found for organization {organization_id}")
        return _row_to_campaign(row)

    def _generation(self, conn: Connection, organization_id: str, campaign_id: str) -> int:
        value = conn.execute(
            select(criteria_table.c.generation).where(
                and_(
                    criteria_table.c.organization_id == organization_id,
                    criteria_table.c.campaign_id == campaign_id,
                )
            )
        ).scalar_one_or_none()
        return int(value or 0)

    def _read_criteria(self, conn: Connection, organization_id: str, campaign_id: str) -> Optional[TargetingCriteria]:
        row = (
            conn.execute(
                select(criteria_table).where(
                    and_(
                        criteria_table.c.organization_id == organization_id,
                        criteria_table.c.campaign_id == campaign_id,
                    )
                )
            )
            .mappings()
            .first()
        )
        if row is None or row["payload"] is None:
            return None
        return _payload_to_criteria(row["payload"], int(row["generation"] or 0))

    def _write_criteria(
        self, conn: Connection, organization_id: str, campaign_id: str, criteria: TargetingCriteria
    ) -> int:
        payload = _criteria_to_payload(criteria)
        bumped = conn.execute(
            update(criteria_table)
            .where(
                and_(
                    criteria_table.c.organization_id == organization_id,
                    criteria_table.c.campaign_id == campaign_id,
                )
            )
            .values(payload=payload, generation=criteria_table.c.generation + 1)
        ).rowcount
        if bumped == 0:
            conn.execute(
                insert(criteria_table).values(
                    organization_id=organization_id, campaign_id=campaign_id, payload=payload, generation=1
                )
            )
        return self._generation(conn, organization_id, campaign_id)

    def _read_opportunity(self, conn: Connection, organization_id: str, opportunity_id: str) -> Optional[MediaOpportunity]:
        row = (
            conn.execute(
                select(opportunities_table).where(
                    and_(
                        opportunities_table.c.organization_id == organization_id,
                        opportunities_table.c.id == opportunity_id,
                    )
                )
            )
            .mappings()
            .first()
        )
        return _row_to_opportunity(row) if row is not None else None

    def _campaign_opportunities(self, conn: Connection, organization_id: str, campaign_id: str) -> List[MediaOpportunity]:
        rows = (
            conn.execute(
                select(opportunities_table)
                .where(
                    and_(
                        opportunities_table.c.organization_id == organization_id,
                        opportunities_table.c.campaign_id == campaign_id,
                    )
                )
                .order_by(opportunities_table.c.id)
            )
            .mappings()
            .all()
        )
        return [_row_to_opportunity(row) for row in rows]


def _enable_transactions(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN on pysqlite connections.

    The driver otherwise defers BEGIN until the first write, so a read-only
    snapshot would see each SELECT at a different point in time. Write
    transactions start with BEGIN IMMEDIATE to take the write lock up front.
    """
    if engine.dialect.name != "sqlite" or event.contains(engine, "begin", _begin):
        return
    event.listen(engine, "connect", _disable_driver_begin)
    event.listen(engine, "begin", _begin)


def _disable_driver_begin(dbapi_connection, connection_record) -> None:
    dbapi_connection.isolation_level = None


def _begin(conn: Connection) -> None:
    conn.exec_driver_sql(conn.get_execution_options().get("sqlite_begin", "BEGIN"))


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite keeps naive timestamps; everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _campaign_to_row(campaign: Campaign) -> Dict[str, Any]:
    return {
        "organization_id": campaign.organization_id,
        "id": campaign.id,
        "name": campaign.name,
        "status": campaign.status.value,
        "min_matches_required": campaign.min_matches_required,
        "readiness_status": campaign.readiness_status.value if campaign.readiness_status else None,
        "readiness_score": campaign.readiness_score,
    }


def _row_to_campaign(row) -> Campaign:
    return Campaign(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"] or "",
        status=CampaignStatus(row["status"] or CampaignStatus.ACTIVE.value),
        min_matches_required=int(row["min_matches_required"] or 0),
        readiness_status=ReadinessStatus(row["readiness_status"]) if row["readiness_status"] else None,
        readiness_score=row["readiness_score"],
    )


def _criteria_to_payload(criteria: TargetingCriteria) -> Dict[str, Any]:
    return {
        "keywords": list(criteria.keywords),
        "topics": list(criteria.topics),
        "outlet_tiers": [tier.value for tier in criteria.outlet_tiers],
        "regions": list(criteria.regions),
        "min_relevance": criteria.min_relevance,
        "freshness_window_hours": criteria.freshness_window.total_seconds() / 3600.0,
        "min_tier_a_matches": criteria.min_tier_a_matches,
    }


def _payload_to_criteria(payload: Dict[str, Any], generation: int) -> TargetingCriteria:
    return TargetingCriteria(
        keywords=list(payload.get("keywords") or []),
        topics=list(payload.get("topics") or []),
        outlet_tiers=[Tier(value) for value in payload.get("outlet_tiers") or []],
        regions=list(payload.get("regions") or []),
        min_relevance=float(payload.get("min_relevance", 0.1)),
        freshness_window=timedelta(hours=float(payload.get("freshness_window_hours", 48.0))),
        min_tier_a_matches=int(payload.get("min_tier_a_matches", 1)),
        generation=generation,
    )


def _row_to_news_item(row) -> NewsItem:
    return NewsItem(
        id=row["id"],
        title=row["title"] or "",
        description=row["description"] or "",
        url=row["url"] or "",
        source=row["source"] or "",
        published_at=_from_db(row["published_at"]),
        category=row["category"] or "",
        keywords=frozenset(row["keywords"] or []),
        region=row["region"],
    )


def _opportunity_to_row(opportunity: MediaOpportunity) -> Dict[str, Any]:
    return {
        "organization_id": opportunity.organization_id,
        "id": opportunity.id,
        "campaign_id": opportunity.campaign_id,
        "news_item_id": opportunity.news_item_id,
        "title": opportunity.title,
        "source": opportunity.source,
        "url": opportunity.url,
        "published_at": _to_db(opportunity.published_at),
        "relevance": opportunity.relevance,
        "visibility": opportunity.visibility,
        "freshness": opportunity.freshness,
        "opportunity_score": opportunity.opportunity_score,
        "tier": opportunity.tier.value,
        "match_reasons": list(opportunity.match_reasons),
        "keywords": list(opportunity.keywords),
        "status": opportunity.status.value,
        "created_at": _to_db(opportunity.created_at),
        "updated_at": _to_db(opportunity.updated_at),
    }


def _row_to_opportunity(row) -> MediaOpportunity:
    return MediaOpportunity(
        id=row["id"],
        organization_id=row["organization_id"],
        campaign_id=row["campaign_id"],
        news_item_id=row["news_item_id"],
        title=row["title"] or "",
        source=row["source"] or "",
        url=row["url"] or "",
        published_at=_from_db(row["published_at"]),
        relevance=float(row["relevance"] or 0.0),
        visibility=float(row["visibility"] or 0.0),
        freshness=float(row["freshness"] or 0.0),
        opportunity_score=float(row["opportunity_score"] or 0.0),
        tier=Tier(row["tier"] or Tier.UNRATED.value),
        match_reasons=list(row["match_reasons"] or []),
        keywords=list(row["keywords"] or []),
        status=OpportunityStatus(row["status"]),
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
    )
